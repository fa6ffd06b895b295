"""State differ for stack deployment.

Classifies each declared resource against its recorded state as unchanged,
to-create, to-update-in-place or to-replace, consulting the provider's
replacement policy. Recorded resources that are no longer declared are
scheduled for deletion.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from stack import Resource, Stack
from stack_opr.graph import StackGraph, reverse_order
from stack_opr.state import DeploymentState, ResourceState
from stack_opr.values import (
    UNKNOWN,
    OutputRegistry,
    contains_sealed,
    evaluate_properties,
    restore,
    snapshot,
)

logger = logging.getLogger(__name__)

SAME = 'same'
CREATE = 'create'
UPDATE = 'update'
REPLACE = 'replace'
DELETE = 'delete'

_ABSENT = object()


@dataclass
class Step:
    """One planned resource operation.

    Attributes:
        name: Logical resource name
        type: Resource type
        op: One of same, create, update, replace, delete
        inputs: Resolved inputs (None for delete)
        previous: Recorded state, if any
        changed: Input keys that differ from the recorded snapshot
        replace_keys: Changed keys that force replacement
        error: Why the operation cannot run (preview only)
    """
    name: str
    type: str
    op: str
    inputs: Optional[dict] = None
    previous: Optional[ResourceState] = None
    changed: list[str] = field(default_factory=list)
    replace_keys: list[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def is_noop(self) -> bool:
        return self.op == SAME

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'name': self.name, 'type': self.type, 'op': self.op}
        if self.changed:
            d['changed'] = self.changed
        if self.replace_keys:
            d['replace_keys'] = self.replace_keys
        if self.error:
            d['error'] = self.error
        return d


def classify(resource: Resource, inputs: dict, previous: Optional[ResourceState],
             replace_on: frozenset) -> Step:
    """Compare resolved inputs with the recorded snapshot.

    Unknown inputs (preview only) always count as changed.
    """
    if previous is None:
        return Step(resource.name, resource.type, CREATE, inputs=inputs)

    if previous.type != resource.type:
        return Step(resource.name, resource.type, REPLACE, inputs=inputs, previous=previous,
                    changed=['type'], replace_keys=['type'])

    new = snapshot(inputs)
    old = previous.inputs
    changed = sorted(
        k for k in set(new) | set(old)
        if inputs.get(k) is UNKNOWN or new.get(k, _ABSENT) != old.get(k, _ABSENT)
    )
    if not changed:
        return Step(resource.name, resource.type, SAME, inputs=inputs, previous=previous)

    replace_keys = [k for k in changed if k in replace_on]
    op = REPLACE if replace_keys else UPDATE
    return Step(resource.name, resource.type, op, inputs=inputs, previous=previous,
                changed=changed, replace_keys=replace_keys)


def sealed_inputs(step: Step) -> list[str]:
    """Input keys of a changing step that hold a secret state cannot supply.

    Unchanged resources settle their outputs from state, where secrets are
    only digests. A dependent that has to be written cannot use those.
    """
    if step.is_noop or not step.inputs:
        return []
    return sorted(k for k, v in step.inputs.items() if contains_sealed(v))


def orphan_steps(stack: Stack, state: DeploymentState) -> list[Step]:
    """Delete steps for recorded resources absent from the stack, dependents first."""
    declared = set(stack.names)
    orphans = {name: deps for name, deps in state.dependency_map().items() if name not in declared}
    if not orphans:
        return []
    return [
        Step(name, state.get(name).type, DELETE, previous=state.get(name))
        for name in reverse_order(orphans)
    ]


def plan(stack: Stack, graph: StackGraph, state: DeploymentState, provider) -> list[Step]:
    """Preview every step of an apply in execution order.

    Outputs of resources that will change are unknown until they are
    applied, so their dependents' inputs are partially unknown here.
    """
    registry = OutputRegistry()
    steps: list[Step] = []

    for node in graph.create_order():
        resource = node.resource
        previous = state.find(resource.name)
        inputs_d = evaluate_properties(resource.properties, registry, label=resource.name)

        if inputs_d.is_poisoned:
            op = CREATE if previous is None else UPDATE
            step = Step(resource.name, resource.type, op, previous=previous, error=inputs_d.reason)
        else:
            step = classify(resource, inputs_d.value, previous, provider.replace_on(resource.type))
            sealed = sealed_inputs(step)
            if sealed:
                step.error = f"Secret input(s) not recoverable from state: {', '.join(sealed)}"
        steps.append(step)

        if step.op == SAME and previous is not None:
            registry.settle_resource(resource.name, restore(previous.outputs))
        else:
            registry.settle_resource(resource.name, UNKNOWN)

    steps.extend(orphan_steps(stack, state))
    return steps


def summarize(steps: list[Step]) -> dict[str, int]:
    """Count steps per operation."""
    counts = {op: 0 for op in (CREATE, UPDATE, REPLACE, DELETE, SAME)}
    for step in steps:
        counts[step.op] += 1
    return counts
