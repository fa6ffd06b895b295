"""Stack loading and validation.

A stack file declares typed resources whose properties may reference the
outputs of other resources. References use ${name.attribute} syntax and
may be nested inside lists, mappings and fn:: helpers:

    name: airflow
    config:
      dbName: airflow
    settings:
      parallel: 10
    resources:
      - name: dbsubnets
        type: aws:rds/subnetGroup
        properties:
          subnetIds: ["${subnet-a.id}", "${subnet-b.id}"]
      - name: postgresdb
        type: aws:rds/instance
        properties:
          dbSubnetGroupName: ${dbsubnets.id}
          password: {fn::secret: dbPassword}
    outputs:
      dbEndpoint: ${postgresdb.endpoint}
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from config import ConfigError, SecretStore, get_stacks_dir, parse_yaml
from stack_opr.values import Reference, collect_references, parse_value

logger = logging.getLogger(__name__)

# Default stack name when none specified
DEFAULT_STACK = 'airflow'


@dataclass
class Resource:
    """A declared resource.

    Attributes:
        name: Logical name, unique within the stack
        type: Provider resource type (e.g. aws:rds/instance)
        properties: Input property name -> value tree
        depends_on: Extra ordering dependencies with no data reference
        protect: Refuse to delete or replace this resource
    """
    name: str
    type: str
    properties: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    protect: bool = False

    @property
    def identity(self) -> tuple[str, str]:
        return (self.type, self.name)

    def references(self) -> list[Reference]:
        """Output references embedded anywhere in this resource's properties."""
        found: list[Reference] = []
        for value in self.properties.values():
            for ref in collect_references(value):
                if ref not in found:
                    found.append(ref)
        return found

    def dependency_names(self) -> list[str]:
        """Distinct resources this one depends on, in first-seen order."""
        names: list[str] = []
        for ref in self.references():
            if ref.resource not in names:
                names.append(ref.resource)
        for name in self.depends_on:
            if name not in names:
                names.append(name)
        return names

    @classmethod
    def from_dict(cls, data: dict, secrets: Optional[SecretStore] = None,
                  config: Optional[dict] = None) -> 'Resource':
        """Create Resource from a stack file entry."""
        properties = data.get('properties') or {}
        if not isinstance(properties, dict):
            raise ConfigError(f"Resource '{data['name']}' properties must be a mapping")
        return cls(
            name=data['name'],
            type=data['type'],
            properties={k: parse_value(v, secrets, config) for k, v in properties.items()},
            depends_on=list(data.get('depends_on') or []),
            protect=bool(data.get('protect', False)),
        )


@dataclass
class StackSettings:
    """Optional settings for stack execution.

    Attributes:
        parallel: Maximum concurrent resource operations (default: 10)
        refresh: Check recorded resources against the provider before apply
    """
    parallel: int = 10
    refresh: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'StackSettings':
        """Create StackSettings from dictionary."""
        if not data:
            return cls()
        parallel = data.get('parallel', 10)
        if not isinstance(parallel, int) or parallel < 1:
            raise ConfigError(f"settings.parallel must be a positive integer, got {parallel!r}")
        return cls(
            parallel=parallel,
            refresh=bool(data.get('refresh', False)),
        )


@dataclass
class Stack:
    """A set of resource declarations deployed together.

    Attributes:
        name: Stack name (also the state record key)
        resources: Declared resources in file order
        description: Optional description
        outputs: Exported name -> value tree
        settings: Execution settings
        config: Plain configuration values (fn::config)
        source_path: Path the stack was loaded from (for debugging)
    """
    name: str
    resources: list[Resource]
    description: str = ''
    outputs: dict[str, Any] = field(default_factory=dict)
    settings: StackSettings = field(default_factory=StackSettings)
    config: dict = field(default_factory=dict)
    source_path: Optional[Path] = None

    @property
    def names(self) -> list[str]:
        return [r.name for r in self.resources]

    def get(self, name: str) -> Resource:
        """Get a resource by name.

        Raises:
            KeyError: If no resource has that name
        """
        for resource in self.resources:
            if resource.name == name:
                return resource
        raise KeyError(name)

    @classmethod
    def from_dict(cls, data: dict, secrets: Optional[SecretStore] = None,
                  source_path: Optional[Path] = None) -> 'Stack':
        """Create Stack from dictionary.

        Args:
            data: Stack data dictionary
            secrets: Secret store for fn::secret values
            source_path: Optional source path for error messages

        Returns:
            Validated Stack instance

        Raises:
            ConfigError: If the stack is invalid
            DependencyCycleError: If the references form a cycle
        """
        if 'name' not in data:
            raise ConfigError("Stack missing required field: name")
        if not data.get('resources'):
            raise ConfigError(f"Stack '{data['name']}' must declare at least one resource")

        config = data.get('config') or {}
        resources = []
        for i, entry in enumerate(data['resources']):
            if not isinstance(entry, dict):
                raise ConfigError(f"Resource {i} must be a mapping")
            if 'name' not in entry:
                raise ConfigError(f"Resource {i} missing required field: name")
            if 'type' not in entry:
                raise ConfigError(f"Resource {i} ({entry['name']}) missing required field: type")
            resources.append(Resource.from_dict(entry, secrets, config))

        outputs = {k: parse_value(v, secrets, config) for k, v in (data.get('outputs') or {}).items()}

        _validate_declarations(resources, outputs)

        stack = cls(
            name=data['name'],
            description=data.get('description', ''),
            resources=resources,
            outputs=outputs,
            settings=StackSettings.from_dict(data.get('settings')),
            config=config,
            source_path=source_path,
        )

        # Raises DependencyCycleError naming the members
        from stack_opr.graph import StackGraph
        StackGraph(stack)
        return stack


def _validate_declarations(resources: list[Resource], outputs: dict) -> None:
    """Check for duplicate names and references to undeclared resources.

    Raises:
        ConfigError: If validation fails
    """
    seen: set[str] = set()
    for resource in resources:
        if resource.name in seen:
            raise ConfigError(f"Duplicate resource name: '{resource.name}'")
        seen.add(resource.name)

    for resource in resources:
        for ref in resource.references():
            if ref.resource not in seen:
                raise ConfigError(
                    f"Resource '{resource.name}' ({resource.type}) references "
                    f"undeclared resource '{ref.resource}' via {ref}"
                )
        for name in resource.depends_on:
            if name not in seen:
                raise ConfigError(
                    f"Resource '{resource.name}' ({resource.type}) depends on "
                    f"undeclared resource '{name}'"
                )

    for export, value in outputs.items():
        for ref in collect_references(value):
            if ref.resource not in seen:
                raise ConfigError(f"Output '{export}' references undeclared resource '{ref.resource}'")


class StackLoader:
    """Loads stacks from the stacks/ directory."""

    def __init__(self, stacks_path: Optional[str] = None):
        """Initialize loader with the stacks directory.

        Args:
            stacks_path: Path to stacks directory. If None, uses
                         auto-discovery (env var, then stacks/).
        """
        if stacks_path:
            self.stacks_dir = Path(stacks_path)
        else:
            self.stacks_dir = get_stacks_dir()

    def list_stacks(self) -> list[str]:
        """List available stack names."""
        if not self.stacks_dir.exists():
            return []
        return sorted([
            f.stem for f in self.stacks_dir.glob('*.yaml')
            if f.is_file() and f.name != 'secrets.yaml'
        ])

    def load(self, name: str) -> Stack:
        """Load stack by name.

        Raises:
            ConfigError: If stack not found or invalid
        """
        path = self.stacks_dir / f'{name}.yaml'
        if not path.exists():
            available = self.list_stacks()
            raise ConfigError(
                f"Stack '{name}' not found at {path}. "
                f"Available: {', '.join(available) if available else 'none'}"
            )
        return self.load_file(path)

    def load_file(self, path: Path) -> Stack:
        """Load stack from a specific file path, with secrets from beside it.

        Raises:
            ConfigError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigError(f"Stack file not found: {path}")

        data = parse_yaml(path)
        secrets = SecretStore.for_stack(path)
        stack = Stack.from_dict(data, secrets=secrets, source_path=path)
        logger.debug(f"Loaded stack '{stack.name}' ({len(stack.resources)} resources) from {path}")
        return stack


def load_stack(name: Optional[str] = None, file_path: Optional[str] = None) -> Stack:
    """Load a stack from a file path, by name, or the default.

    Priority:
    1. file_path - Specific file path
    2. name - Named stack from stacks/
    3. Default stack

    Raises:
        ConfigError: If stack not found or invalid
    """
    if file_path:
        return StackLoader().load_file(Path(file_path))
    return StackLoader().load(name or DEFAULT_STACK)
