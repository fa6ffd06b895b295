"""Deployment executor for stack deployment.

Walks the dependency graph Kahn-style: a resource becomes eligible once
every resource it references has settled, eligible resources are
dispatched to a bounded worker pool, and each completion releases its
dependents. Resources downstream of a failure are skipped, never started.

Deletion runs the same scheduler over the reversed edges, so a resource is
only deleted after everything that depends on it has been deleted.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from common import (
    CANCELLED,
    FAILED,
    MISSING,
    SKIPPED,
    SUCCEEDED,
    UNCHANGED,
    OperationResult,
    format_duration,
)
from config import ConfigError
from providers.base import ResourceProvider
from stack import Stack
from stack_opr.differ import (
    CREATE,
    DELETE,
    REPLACE,
    SAME,
    UPDATE,
    Step,
    classify,
    orphan_steps,
    plan,
    sealed_inputs,
    summarize,
)
from stack_opr.graph import StackGraph, deletion_blockers, reverse_order
from stack_opr.state import ResourceState, StateStore
from stack_opr.values import OutputRegistry, evaluate, evaluate_properties, restore

logger = logging.getLogger(__name__)

_OK = (SUCCEEDED, UNCHANGED)

# A prepared resource is either settled without a provider call (an
# outcome) or a callable to run on a worker thread.
Prepared = Union['ResourceOutcome', Callable[[], Any]]


@dataclass
class ResourceOutcome:
    """Result of one resource within a deployment.

    Attributes:
        name: Logical resource name
        type: Resource type
        op: Operation attempted (create, update, replace, delete, same, refresh)
        status: succeeded, unchanged, failed, skipped, cancelled or missing
        message: Provider message or skip/failure reason
        duration: Seconds spent in the provider operation
        physical_id: Provider identifier after the operation
    """
    name: str
    type: str
    op: str
    status: str
    message: str = ''
    duration: Optional[float] = None
    physical_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in _OK

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'name': self.name, 'type': self.type, 'status': self.status}
        if self.op:
            d['op'] = self.op
        if self.message:
            d['message'] = self.message
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.physical_id is not None:
            d['physical_id'] = self.physical_id
        return d


@dataclass
class DeploymentResult:
    """Deployment-level result listing every resource outcome."""
    operation: str
    success: bool
    outcomes: list[ResourceOutcome] = field(default_factory=list)
    outputs: dict = field(default_factory=dict)
    duration: float = 0.0
    cancelled: bool = False
    steps: list[Step] = field(default_factory=list)

    def get(self, name: str) -> ResourceOutcome:
        """Outcome for a resource.

        Raises:
            KeyError: If the resource had no outcome
        """
        for outcome in self.outcomes:
            if outcome.name == name:
                return outcome
        raise KeyError(name)

    def by_status(self, status: str) -> list[ResourceOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def mismatches(self) -> list[ResourceOutcome]:
        return self.by_status(MISSING)

    def summary(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for outcome in self.outcomes:
            counts[outcome.status] = counts.get(outcome.status, 0) + 1
        return counts


@dataclass
class DeploymentExecutor:
    """Executes apply/destroy/refresh for a stack against a provider.

    Attributes:
        stack: The declared stack
        graph: Dependency graph built from the stack
        provider: Resource provider integration
        store: Deployment state store (the only shared mutable state)
        parallel: Maximum concurrent operations (default: stack settings)
        dry_run: If True, preview operations without executing
        json_output: If True, suppress the human-readable preview
    """
    stack: Stack
    graph: StackGraph
    provider: ResourceProvider
    store: StateStore
    parallel: Optional[int] = None
    dry_run: bool = False
    json_output: bool = False
    _cancel: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.parallel is None:
            self.parallel = self.stack.settings.parallel
        if self.parallel < 1:
            raise ValueError(f"parallel must be at least 1, got {self.parallel}")

    def cancel(self) -> None:
        """Stop dispatching new operations; in-flight ones finish."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested, waiting for in-flight operations...")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def preview(self) -> list[Step]:
        """Compute the apply plan without touching the provider.

        Raises:
            ConfigError: On unsupported types or missing required inputs
        """
        self.graph.validate_types(self.provider)
        return plan(self.stack, self.graph, self.store.state, self.provider)

    def apply(self) -> DeploymentResult:
        """Bring the provider in line with the stack.

        Raises:
            ConfigError: On configuration errors, before any provider call
        """
        self.graph.validate_types(self.provider)
        start = time.time()

        if self.dry_run:
            steps = plan(self.stack, self.graph, self.store.state, self.provider)
            if not self.json_output:
                self._preview('APPLY', steps)
            return DeploymentResult('apply', True, steps=steps, duration=time.time() - start)

        if self.stack.settings.refresh:
            refreshed = self.refresh()
            if not refreshed.success:
                logger.error("Refresh found resources missing from the provider; "
                             "run 'refresh --reconcile' before applying")
                refreshed.operation = 'apply'
                return refreshed

        with self.store.transaction() as state:
            state.start('apply')

        registry = OutputRegistry()
        steps: dict[str, Step] = {}

        order = [node.name for node in self.graph.create_order()]
        blockers = {name: self.graph.dependencies(name) for name in order}
        outcomes = self._schedule(
            order,
            blockers,
            prepare=lambda name, upstream: self._prepare_apply(name, upstream, registry, steps),
            finish=lambda name, result: self._finish_apply(name, result, registry, steps),
        )

        deletes = orphan_steps(self.stack, self.store.state)
        if deletes:
            orphans = {s.name: self.store.state.get(s.name).dependencies for s in deletes}
            outcomes.extend(self._delete(orphans, held=self._surviving_dependents(orphans)))

        outputs = self._stack_outputs(registry)
        success = all(o.ok for o in outcomes) and not self.cancelled
        with self.store.transaction() as state:
            state.outputs = outputs
            state.finish(success)

        result = DeploymentResult('apply', success, outcomes, outputs,
                                  time.time() - start, cancelled=self.cancelled)
        self._log_summary(result)
        return result

    def destroy(self) -> DeploymentResult:
        """Delete every recorded resource, dependents before dependencies.

        Raises:
            ConfigError: If a recorded type is unsupported or the recorded
                dependencies form a cycle
        """
        start = time.time()
        records = self.store.state.dependency_map()
        for name in records:
            rtype = self.store.state.get(name).type
            if not self.provider.supports(rtype):
                raise ConfigError(f"Recorded resource '{name}' has unsupported type '{rtype}'")
        order = reverse_order(records)

        if self.dry_run:
            steps = [Step(name, self.store.state.get(name).type, DELETE,
                          previous=self.store.state.get(name)) for name in order]
            if not self.json_output:
                self._preview('DESTROY', steps)
            return DeploymentResult('destroy', True, steps=steps, duration=time.time() - start)

        if not records:
            logger.info(f"Nothing to destroy for stack '{self.stack.name}'")

        with self.store.transaction() as state:
            state.start('destroy')

        outcomes = self._delete(records)
        success = all(o.ok for o in outcomes) and not self.cancelled
        with self.store.transaction() as state:
            if success:
                state.outputs = {}
            state.finish(success)

        result = DeploymentResult('destroy', success, outcomes, {},
                                  time.time() - start, cancelled=self.cancelled)
        self._log_summary(result)
        return result

    def refresh(self, reconcile: bool = False) -> DeploymentResult:
        """Check every recorded resource against the provider.

        Records the provider no longer has are reported as missing. They
        are only forgotten when reconcile is True.
        """
        start = time.time()
        names = self.store.state.names
        outcomes = self._schedule(
            names,
            {name: [] for name in names},
            prepare=lambda name, upstream: self._prepare_refresh(name),
            finish=lambda name, result: self._finish_refresh(name, result, reconcile),
        )
        success = not self.cancelled and all(o.ok or (reconcile and o.status == MISSING) for o in outcomes)
        result = DeploymentResult('refresh', success, outcomes, dict(self.store.state.outputs),
                                  time.time() - start, cancelled=self.cancelled)
        self._log_summary(result)
        return result

    def _schedule(
        self,
        order: list[str],
        blockers: dict[str, list[str]],
        prepare: Callable[[str, list[str]], Prepared],
        finish: Callable[[str, Any], 'ResourceOutcome'],
    ) -> list[ResourceOutcome]:
        """Run prepare/finish for every name, respecting blockers.

        A name becomes eligible once all its blockers have an outcome;
        prepare() receives the blockers that did not succeed. Callables
        returned by prepare() run on the pool and their return value is
        handed to finish() on this thread.
        """
        outcomes: dict[str, ResourceOutcome] = {}
        waiting = {name: set(blockers[name]) for name in order}
        releases: dict[str, list[str]] = {name: [] for name in order}
        for name in order:
            for blocker in blockers[name]:
                releases[blocker].append(name)

        ready: deque[str] = deque(name for name in order if not waiting[name])
        in_flight: dict[Future, str] = {}

        def _settled(name: str, outcome: ResourceOutcome) -> None:
            outcomes[name] = outcome
            for dependent in releases[name]:
                waiting[dependent].discard(name)
                if not waiting[dependent]:
                    ready.append(dependent)

        with ThreadPoolExecutor(max_workers=self.parallel, thread_name_prefix='airstack') as pool:
            while ready or in_flight:
                while ready and len(in_flight) < self.parallel and not self.cancelled:
                    name = ready.popleft()
                    upstream = [b for b in blockers[name] if not outcomes[b].ok]
                    prepared = prepare(name, upstream)
                    if isinstance(prepared, ResourceOutcome):
                        _settled(name, prepared)
                    else:
                        in_flight[pool.submit(prepared)] = name

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    name = in_flight.pop(future)
                    _settled(name, finish(name, future.result()))

        for name in order:
            if name not in outcomes:
                outcomes[name] = ResourceOutcome(
                    name, self._type_of(name), '', CANCELLED, 'Not started: deployment cancelled')
        return [outcomes[name] for name in order]

    def _type_of(self, name: str) -> str:
        if name in self.graph:
            return self.graph.get_node(name).type
        record = self.store.state.find(name)
        return record.type if record is not None else ''

    def _prepare_apply(self, name: str, upstream: list[str], registry: OutputRegistry,
                       steps: dict[str, Step]) -> Prepared:
        resource = self.graph.get_node(name).resource
        previous = self.store.state.find(name)

        if upstream:
            reason = f"Skipped due to upstream failure: {', '.join(upstream)}"
            registry.poison_resource(name, reason)
            logger.warning(f"[skip] {name}: {reason}")
            return ResourceOutcome(name, resource.type, '', SKIPPED, reason)

        inputs_d = evaluate_properties(resource.properties, registry, label=name)
        if not inputs_d.is_resolved:
            reason = inputs_d.reason or 'inputs did not resolve'
            registry.poison_resource(name, reason)
            logger.error(f"Inputs of resource '{name}' could not be computed: {reason}")
            return ResourceOutcome(name, resource.type, '', FAILED, reason)

        step = classify(resource, inputs_d.value, previous, self.provider.replace_on(resource.type))
        if step.op == SAME:
            dependencies = self.graph.dependencies(name)
            if previous.dependencies != dependencies:
                with self.store.transaction() as state:
                    state.get(name).dependencies = list(dependencies)
            registry.settle_resource(name, restore(previous.outputs))
            logger.debug(f"[same] {name} unchanged")
            return ResourceOutcome(name, resource.type, SAME, UNCHANGED,
                                   physical_id=previous.physical_id)

        sealed = sealed_inputs(step)
        if sealed:
            reason = (f"Secret input(s) not recoverable from state: {', '.join(sealed)} "
                      f"(the producing resource is unchanged and state holds only a digest)")
            registry.poison_resource(name, reason)
            logger.error(f"[{step.op}] {name}: {reason}")
            return ResourceOutcome(name, resource.type, step.op, FAILED, reason)

        if step.op == REPLACE and resource.protect:
            reason = f"Protected resource would be replaced (changed: {', '.join(step.replace_keys)})"
            registry.poison_resource(name, reason)
            logger.error(f"[replace] {name}: {reason}")
            return ResourceOutcome(name, resource.type, REPLACE, FAILED, reason)

        steps[name] = step
        detail = f" ({', '.join(step.changed)})" if step.changed else ''
        logger.info(f"[{step.op}] {name}: {resource.type}{detail}")
        return lambda: self._run_step(step)

    def _finish_apply(self, name: str, result: tuple[OperationResult, bool],
                      registry: OutputRegistry, steps: dict[str, Step]) -> ResourceOutcome:
        op_result, old_deleted = result
        step = steps[name]

        if op_result.success:
            previous = step.previous if step.op == UPDATE else None
            physical_id = op_result.physical_id or (step.previous.physical_id if step.previous else '')
            record = ResourceState.capture(
                name, step.type, physical_id, step.inputs or {}, op_result.outputs,
                self.graph.dependencies(name), previous=previous,
            )
            with self.store.transaction() as state:
                state.record(record)
            registry.settle_resource(name, op_result.outputs)
            logger.info(f"[{step.op}] {name} done in {format_duration(op_result.duration)}")
            return ResourceOutcome(name, step.type, step.op, SUCCEEDED, op_result.message,
                                   op_result.duration, physical_id)

        if old_deleted:
            with self.store.transaction() as state:
                state.forget(name)
        registry.poison_resource(name, op_result.message)
        status = MISSING if op_result.not_found else FAILED
        logger.error(f"{step.op.capitalize()} failed for resource '{name}': {op_result.message}")
        return ResourceOutcome(name, step.type, step.op, status, op_result.message, op_result.duration)

    def _run_step(self, step: Step) -> tuple[OperationResult, bool]:
        """Run one provider operation on a worker thread.

        Returns the result and whether the previously recorded resource was
        deleted (replace and delete).
        """
        previous = step.previous
        try:
            if step.op == CREATE:
                return self.provider.create(step.type, step.name, step.inputs or {}), False

            if step.op == UPDATE:
                return self.provider.update(
                    step.type, previous.physical_id, previous.inputs, step.inputs or {}), False

            if step.op == REPLACE:
                removed = self.provider.delete(previous.type, previous.physical_id, previous.outputs)
                if not removed.success:
                    removed.message = f"replace: delete of {previous.physical_id} failed: {removed.message}"
                    return removed, False
                created = self.provider.create(step.type, step.name, step.inputs or {})
                created.duration += removed.duration
                return created, True

            if step.op == DELETE:
                removed = self.provider.delete(previous.type, previous.physical_id, previous.outputs)
                return removed, removed.success

            raise ValueError(f"Unexpected step operation '{step.op}'")
        except Exception as e:
            logger.debug("Provider raised during %s of %s", step.op, step.name, exc_info=True)
            return OperationResult(success=False, message=f"{type(e).__name__}: {e}"), False

    def _delete(self, records: dict[str, list[str]],
                held: Optional[dict[str, list[str]]] = None) -> list[ResourceOutcome]:
        """Delete recorded resources, each only after all its dependents.

        held maps a record to dependents outside records that still exist;
        such a record is skipped and kept.
        """
        steps: dict[str, Step] = {}
        held = held or {}
        order = reverse_order(records)
        return self._schedule(
            order,
            deletion_blockers(records),
            prepare=lambda name, upstream: self._prepare_delete(
                name, upstream + held.get(name, []), steps),
            finish=lambda name, result: self._finish_delete(name, result, steps),
        )

    def _surviving_dependents(self, orphans: dict[str, list[str]]) -> dict[str, list[str]]:
        """Orphan -> records outside the orphan set that still depend on it."""
        held: dict[str, list[str]] = {name: [] for name in orphans}
        for name, deps in self.store.state.dependency_map().items():
            if name in orphans:
                continue
            for dep in deps:
                if dep in held and name not in held[dep]:
                    held[dep].append(name)
        return held

    def _prepare_delete(self, name: str, upstream: list[str], steps: dict[str, Step]) -> Prepared:
        record = self.store.state.get(name)
        if upstream:
            reason = f"Skipped: dependents not deleted: {', '.join(upstream)}"
            logger.warning(f"[skip] {name}: {reason}")
            return ResourceOutcome(name, record.type, DELETE, SKIPPED, reason)

        if name in self.graph and self.graph.get_node(name).resource.protect:
            reason = "Protected resource cannot be deleted"
            logger.error(f"[delete] {name}: {reason}")
            return ResourceOutcome(name, record.type, DELETE, FAILED, reason)

        step = Step(name, record.type, DELETE, previous=record)
        steps[name] = step
        logger.info(f"[delete] {name}: {record.type} ({record.physical_id})")
        return lambda: self._run_step(step)

    def _finish_delete(self, name: str, result: tuple[OperationResult, bool],
                       steps: dict[str, Step]) -> ResourceOutcome:
        op_result, _ = result
        step = steps[name]
        if op_result.success:
            with self.store.transaction() as state:
                state.forget(name)
            logger.info(f"[delete] {name} done in {format_duration(op_result.duration)}")
            return ResourceOutcome(name, step.type, DELETE, SUCCEEDED, op_result.message,
                                   op_result.duration)

        status = MISSING if op_result.not_found else FAILED
        logger.error(f"Delete failed for resource '{name}': {op_result.message}")
        return ResourceOutcome(name, step.type, DELETE, status, op_result.message, op_result.duration)

    def _prepare_refresh(self, name: str) -> Prepared:
        record = self.store.state.get(name)

        def _read() -> OperationResult:
            try:
                return self.provider.read(record.type, record.physical_id, record.outputs)
            except Exception as e:
                return OperationResult(success=False, message=f"{type(e).__name__}: {e}")

        return _read

    def _finish_refresh(self, name: str, result: OperationResult, reconcile: bool) -> ResourceOutcome:
        record = self.store.state.get(name)
        if result.not_found:
            if reconcile:
                with self.store.transaction() as state:
                    state.forget(name)
                logger.warning(f"[refresh] {name}: {record.physical_id} no longer exists, record forgotten")
                return ResourceOutcome(name, record.type, 'refresh', MISSING,
                                       f"{result.message}; record forgotten", result.duration)
            logger.error(f"[refresh] {name}: {record.physical_id} no longer exists")
            return ResourceOutcome(name, record.type, 'refresh', MISSING, result.message, result.duration)

        if not result.success:
            logger.error(f"[refresh] {name}: {result.message}")
            return ResourceOutcome(name, record.type, 'refresh', FAILED, result.message, result.duration)

        refreshed = ResourceState.capture(
            name, record.type, record.physical_id, {}, result.outputs, record.dependencies,
            previous=record,
        )
        if refreshed.outputs == record.outputs:
            return ResourceOutcome(name, record.type, 'refresh', UNCHANGED,
                                   physical_id=record.physical_id)
        refreshed.inputs = record.inputs
        with self.store.transaction() as state:
            state.record(refreshed)
        logger.info(f"[refresh] {name}: outputs changed outside airstack")
        return ResourceOutcome(name, record.type, 'refresh', SUCCEEDED, 'outputs refreshed',
                               result.duration, record.physical_id)

    def _stack_outputs(self, registry: OutputRegistry) -> dict:
        outputs: dict[str, Any] = {}
        for export, value in self.stack.outputs.items():
            d = evaluate(value, registry)
            if d.is_resolved:
                outputs[export] = d.value
            else:
                logger.warning(f"Output '{export}' not available: {d.reason or 'unresolved'}")
        return outputs

    def _log_summary(self, result: DeploymentResult) -> None:
        counts = ', '.join(f'{n} {status}' for status, n in sorted(result.summary().items()))
        verdict = 'succeeded' if result.success else 'FAILED'
        if result.cancelled:
            verdict = 'CANCELLED'
        logger.info(f"{result.operation.capitalize()} of stack '{self.stack.name}' {verdict} "
                    f"in {format_duration(result.duration)} ({counts or 'no resources'})")

    def _preview(self, verb: str, steps: list[Step]) -> None:
        """Print the planned operations."""
        symbols = {CREATE: '+', UPDATE: '~', REPLACE: '+-', DELETE: '-', SAME: ' '}
        print("")
        print("=" * 65)
        print(f"  DRY-RUN {verb}: {self.stack.name}")
        print(f"  Resources: {len(self.graph)}  Parallel: {self.parallel}")
        print("=" * 65)
        print("")
        for step in steps:
            print(f"  {symbols[step.op]:>2} {step.name}: {step.type} [{step.op}]")
            if step.changed:
                print(f"      changed: {', '.join(step.changed)}")
            if step.replace_keys:
                print(f"      replaces on: {', '.join(step.replace_keys)}")
            if step.error:
                print(f"      error: {step.error}")
        counts = summarize(steps)
        print("")
        print(f"  {counts[CREATE]} to create, {counts[UPDATE]} to update, "
              f"{counts[REPLACE]} to replace, {counts[DELETE]} to delete, "
              f"{counts[SAME]} unchanged")
        print("")
