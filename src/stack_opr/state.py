"""Deployment state management for stack deployment.

Records, per resource, the physical identifier assigned by the provider,
the last-applied input snapshot and the last-observed outputs. State is
persisted to disk after every completed resource operation so that a
retry resumes from the true last-known state.
"""

import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

from config import get_state_dir
from stack_opr.values import snapshot

logger = logging.getLogger(__name__)

STATE_FILE = 'deployment.json'


@dataclass
class ResourceState:
    """Recorded state of one provisioned resource.

    Attributes:
        name: Logical resource name
        type: Resource type it was created with
        physical_id: Provider-assigned identifier
        inputs: Snapshot of the last-applied inputs (secrets digested)
        outputs: Snapshot of the last-observed outputs (secrets digested)
        dependencies: Resources it referenced when last applied
        created_at: Timestamp of creation
        updated_at: Timestamp of the last successful operation
    """
    name: str
    type: str
    physical_id: str
    inputs: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    @classmethod
    def capture(cls, name: str, type_: str, physical_id: str, inputs: dict, outputs: dict,
                dependencies: list[str], previous: Optional['ResourceState'] = None) -> 'ResourceState':
        """Build a record from live values, snapshotting inputs and outputs."""
        now = time.time()
        created_at = previous.created_at if previous is not None and previous.physical_id == physical_id else now
        return cls(
            name=name,
            type=type_,
            physical_id=physical_id,
            inputs=snapshot(inputs),
            outputs=snapshot(outputs),
            dependencies=list(dependencies),
            created_at=created_at,
            updated_at=now,
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'type': self.type,
            'physical_id': self.physical_id,
            'inputs': self.inputs,
            'outputs': self.outputs,
            'dependencies': self.dependencies,
        }
        if self.created_at is not None:
            d['created_at'] = self.created_at
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceState':
        return cls(
            name=data['name'],
            type=data['type'],
            physical_id=data['physical_id'],
            inputs=data.get('inputs', {}),
            outputs=data.get('outputs', {}),
            dependencies=data.get('dependencies', []),
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at'),
        )


class DeploymentState:
    """Stack-level deployment state with save/load.

    State is persisted to .states/{stack}/deployment.json.
    """

    def __init__(self, stack_name: str):
        self.stack_name = stack_name
        self._resources: dict[str, ResourceState] = {}
        self.outputs: dict[str, Any] = {}
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None
        self.last_operation: Optional[str] = None
        self.last_success: Optional[bool] = None

    def __contains__(self, name: str) -> bool:
        return name in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def get(self, name: str) -> ResourceState:
        """Get a resource record by name.

        Raises:
            KeyError: If no record exists
        """
        return self._resources[name]

    def find(self, name: str) -> Optional[ResourceState]:
        return self._resources.get(name)

    @property
    def resources(self) -> dict[str, ResourceState]:
        return dict(self._resources)

    @property
    def names(self) -> list[str]:
        return list(self._resources)

    def record(self, resource_state: ResourceState) -> None:
        self._resources[resource_state.name] = resource_state

    def forget(self, name: str) -> None:
        self._resources.pop(name, None)

    def dependency_map(self) -> dict[str, list[str]]:
        """name -> recorded dependencies, for delete ordering."""
        return {name: list(rs.dependencies) for name, rs in self._resources.items()}

    def start(self, operation: str) -> None:
        self.started_at = time.time()
        self.completed_at = None
        self.last_operation = operation
        self.last_success = None

    def finish(self, success: bool) -> None:
        self.completed_at = time.time()
        self.last_success = success

    def to_dict(self) -> dict:
        return {
            'stack_name': self.stack_name,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'last_operation': self.last_operation,
            'last_success': self.last_success,
            'outputs': snapshot(self.outputs),
            'resources': {name: rs.to_dict() for name, rs in self._resources.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'DeploymentState':
        state = cls(data['stack_name'])
        state.started_at = data.get('started_at')
        state.completed_at = data.get('completed_at')
        state.last_operation = data.get('last_operation')
        state.last_success = data.get('last_success')
        state.outputs = data.get('outputs', {})
        for name, rs_data in data.get('resources', {}).items():
            state._resources[name] = ResourceState.from_dict(rs_data)
        return state

    @staticmethod
    def default_path(stack_name: str) -> Path:
        return get_state_dir() / stack_name / STATE_FILE

    def save(self, path: Optional[Path] = None) -> Path:
        """Save state to JSON file.

        Writes a temporary file in the target directory and renames it
        over the previous state, so readers never see a partial file.

        Args:
            path: Optional override path. Default: .states/{stack}/deployment.json

        Returns:
            Path where state was saved
        """
        if path is None:
            path = self.default_path(self.stack_name)
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix='.deployment-', suffix='.json', dir=path.parent)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"Saved deployment state to {path}")
        return path

    @classmethod
    def load(cls, stack_name: str, path: Optional[Path] = None) -> 'DeploymentState':
        """Load state from JSON file.

        Raises:
            FileNotFoundError: If state file doesn't exist
        """
        if path is None:
            path = cls.default_path(stack_name)

        with open(path, encoding='utf-8') as f:
            data = json.load(f)

        state = cls.from_dict(data)
        logger.debug(f"Loaded deployment state from {path}")
        return state


class StateStore:
    """The single shared, mutable deployment state.

    Passed explicitly to the executor. Every mutation happens inside
    transaction(), which holds a lock and saves the record before
    releasing it.
    """

    def __init__(self, state: DeploymentState, path: Optional[Path] = None):
        self.state = state
        self.path = path or DeploymentState.default_path(state.stack_name)
        self._lock = threading.Lock()

    @classmethod
    def open(cls, stack_name: str, path: Optional[Path] = None) -> 'StateStore':
        """Load existing state, or start an empty record if none exists."""
        try:
            state = DeploymentState.load(stack_name, path)
        except FileNotFoundError:
            logger.debug(f"No deployment state for '{stack_name}', starting empty")
            state = DeploymentState(stack_name)
        return cls(state, path)

    @contextmanager
    def transaction(self) -> Iterator[DeploymentState]:
        with self._lock:
            yield self.state
            self.state.save(self.path)
