"""Shared pytest fixtures for airstack tests."""

import sys
import threading
import time
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import OperationResult


class FakeProvider:
    """In-memory provider recording every call.

    Attributes:
        calls: (operation, name_or_physical_id) tuples in call order
        fail: Resource names whose create/update fails
        delays: Resource name -> seconds to sleep inside create
        replace: Type -> input keys forcing replacement
        required: Type -> required input keys
        unsupported: Types the provider refuses
    """

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.fail: set[str] = set()
        self.delays: dict[str, float] = {}
        self.replace: dict[str, frozenset] = {}
        self.required: dict[str, frozenset] = {}
        self.unsupported: set[str] = set()
        self.resources: dict[str, dict] = {}
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()
        self._counter = 0

    def supports(self, type_):
        return type_ not in self.unsupported

    def required_inputs(self, type_):
        return self.required.get(type_, frozenset())

    def replace_on(self, type_):
        return self.replace.get(type_, frozenset())

    def _enter(self, op, key):
        with self._lock:
            self.calls.append((op, key))
            self.active += 1
            self.max_active = max(self.max_active, self.active)

    def _leave(self):
        with self._lock:
            self.active -= 1

    def create(self, type_, name, inputs):
        self._enter('create', name)
        try:
            time.sleep(self.delays.get(name, 0))
            if name in self.fail:
                return OperationResult(success=False, message=f'{name} exploded')
            with self._lock:
                self._counter += 1
                physical_id = f'{name}-{self._counter}'
            outputs = dict(inputs)
            outputs.update({'id': physical_id, 'arn': f'arn:fake:{physical_id}'})
            self.resources[physical_id] = outputs
            return OperationResult(success=True, physical_id=physical_id, outputs=outputs, duration=0.01)
        finally:
            self._leave()

    def read(self, type_, physical_id, outputs):
        self._enter('read', physical_id)
        self._leave()
        if physical_id not in self.resources:
            return OperationResult(success=False, message='gone', not_found=True)
        return OperationResult(success=True, physical_id=physical_id,
                               outputs=self.resources[physical_id])

    def update(self, type_, physical_id, old_inputs, new_inputs):
        self._enter('update', physical_id)
        self._leave()
        if physical_id not in self.resources:
            return OperationResult(success=False, message='gone', not_found=True)
        if physical_id.rsplit('-', 1)[0] in self.fail:
            return OperationResult(success=False, message=f'{physical_id} update exploded')
        outputs = dict(new_inputs)
        outputs.update({'id': physical_id, 'arn': f'arn:fake:{physical_id}'})
        self.resources[physical_id] = outputs
        return OperationResult(success=True, physical_id=physical_id, outputs=outputs)

    def delete(self, type_, physical_id, outputs):
        self._enter('delete', physical_id)
        self._leave()
        if self.resources.pop(physical_id, None) is None:
            return OperationResult(success=False, message='gone', not_found=True)
        return OperationResult(success=True)

    def ops(self, op):
        return [key for name, key in self.calls if name == op]


@pytest.fixture
def fake_provider():
    """A fresh FakeProvider."""
    return FakeProvider()


@pytest.fixture
def stacks_dir(tmp_path, monkeypatch):
    """Temporary stacks/ and state directories wired through the environment.

    Creates:
    - stacks/demo.yaml (network -> subnet -> db, plus an independent bucket)
    - stacks/secrets.yaml (dbPassword)
    """
    stacks = tmp_path / 'stacks'
    stacks.mkdir()
    (stacks / 'demo.yaml').write_text("""
name: demo
description: Small stack for tests
config:
  dbName: app
settings:
  parallel: 4
resources:
  - name: vpc
    type: aws:ec2/defaultVpc
    properties:
      tags: {Name: demo}
  - name: subnet-a
    type: aws:ec2/subnet
    properties:
      vpcId: ${vpc.id}
      cidrBlock: 10.0.1.0/24
  - name: dbsubnets
    type: aws:rds/subnetGroup
    properties:
      subnetIds: ["${subnet-a.id}"]
  - name: db
    type: aws:rds/instance
    properties:
      engine: postgres
      instanceClass: db.t3.micro
      allocatedStorage: 20
      dbSubnetGroupName: ${dbsubnets.id}
      dbName:
        fn::config: dbName
      password:
        fn::secret: dbPassword
  - name: repo
    type: aws:ecr/repository
    properties:
      forceDelete: true
outputs:
  dbEndpoint: ${db.endpoint}
  repoUrl: ${repo.repositoryUrl}
""")
    (stacks / 'secrets.yaml').write_text("dbPassword: hunter2-very-secret\n")

    states = tmp_path / 'states'
    monkeypatch.setenv('AIRSTACK_STACKS_DIR', str(stacks))
    monkeypatch.setenv('AIRSTACK_STATE_DIR', str(states))
    return stacks
