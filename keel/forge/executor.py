"""
Executor module for applying plans against a provider.

Steps are applied in plan order. Steps of equal depth have no ordering
constraint between them and are run in parallel, bounded by max_workers;
a step never starts before every step of a lower depth has finished.

After every completed step the state snapshot is saved, so it always
reflects exactly the steps that completed. On the first provider failure
no further step is started, in-flight calls are allowed to finish, and
PartialApplyError reports what completed and what remains. Later waves are
never started after a failure, but a step of the same wave that was already
running may still complete; with max_workers=1 the completed steps are
exactly the plan prefix before the failed one.

Re-applying the same plan after a failure is safe: steps whose effect is
already recorded in the snapshot are skipped instead of repeated.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import joblib

from ..assembly.differ import Action
from ..assembly.planner import Operation, Plan, PlanStep
from ..errors import (
    ApplyCancelledError,
    PartialApplyError,
    ProviderError,
    StalePlanError,
)
from ..providers.base import Provider
from ..resources.base import Resource, canonicalize, digest, resolve_value
from ..settings import get_settings
from ..stack import Stack
from .state import ResourceState, StateSnapshot, StateStore

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    """Outcome of a plan step."""

    APPLIED = "applied"
    SKIPPED = "skipped"      # already applied by an earlier attempt
    UNCHANGED = "unchanged"  # no-op step


@dataclass
class StepResult:
    """Result of one completed plan step."""
    step: PlanStep
    status: StepStatus
    resource_id: str | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0


@dataclass
class ApplyResult:
    """Result of a successful apply."""
    plan: Plan
    results: list[StepResult] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    snapshot: StateSnapshot | None = None
    duration: float = 0.0

    @property
    def applied(self) -> list[StepResult]:
        return [r for r in self.results if r.status == StepStatus.APPLIED]

    @property
    def skipped(self) -> list[StepResult]:
        return [r for r in self.results if r.status == StepStatus.SKIPPED]

    def summary(self) -> dict[str, int]:
        counts = {status.value: 0 for status in StepStatus}
        for result in self.results:
            counts[result.status.value] += 1
        return counts


class PlanExecutor:
    """Applies a Plan through a Provider and records state after each step.

    Args:
        provider: External API resources are materialized through
        store: Where the state snapshot is saved after every step
        max_workers: Maximum provider calls in flight (settings default)
        timeout: Timeout in seconds passed to each provider call (settings default)
    """

    def __init__(
        self,
        provider: Provider,
        store: StateStore,
        max_workers: int | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        self.provider = provider
        self.store = store
        self.max_workers = max_workers or settings.max_workers
        self.timeout = timeout if timeout is not None else settings.provider_timeout

        self._cancelled = threading.Event()
        self._halted = threading.Event()
        self._state_lock = threading.Lock()
        self._failure: ProviderError | None = None

    def cancel(self) -> None:
        """Stop starting new steps; in-flight provider calls still finish."""
        if not self._cancelled.is_set():
            logger.warning("Cancellation requested, waiting for in-flight steps")
        self._cancelled.set()
        self._halted.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def apply(
        self,
        plan: Plan,
        stack: Stack | None,
        snapshot: StateSnapshot,
    ) -> ApplyResult:
        """Apply a plan.

        Args:
            plan: Plan built from the same declarations and snapshot lineage
            stack: Declared resources and exports (None for destroy plans)
            snapshot: Current state; mutated and saved after every step

        Returns:
            ApplyResult with per-step results and resolved stack outputs

        Raises:
            StalePlanError: If the plan no longer matches declarations or state
            PartialApplyError: If a provider call failed
            ApplyCancelledError: If cancel() was called during the apply
        """
        self._failure = None
        started = time.time()
        try:
            return self._apply(plan, stack, snapshot, started)
        finally:
            # A cancel requested before apply started is honoured, then reset
            self._cancelled.clear()
            self._halted.clear()

    def _apply(
        self,
        plan: Plan,
        stack: Stack | None,
        snapshot: StateSnapshot,
        started: float,
    ) -> ApplyResult:
        resources = {r.name: r for r in stack.resources} if stack is not None else {}
        self._check_plan(plan, resources, snapshot)

        old_ids: dict[str, set[str]] = {}
        for step in plan.steps:
            if step.operation == Operation.DELETE and step.resource_id:
                old_ids.setdefault(step.name, set()).add(step.resource_id)

        logger.info(
            f"Applying plan for stack '{plan.stack}': {len(plan.steps)} steps "
            f"(max {self.max_workers} in flight)"
        )

        completed: list[StepResult] = []
        for wave in plan.waves():
            if self._halted.is_set():
                break
            # Threading backend: provider calls are I/O bound and share the snapshot
            outcomes = joblib.Parallel(
                n_jobs=min(self.max_workers, len(wave)),
                backend="threading",
                batch_size=1,
                verbose=0,
            )(
                joblib.delayed(self._run_step)(step, resources, snapshot, old_ids)
                for step in wave
            )
            completed.extend(result for result in outcomes if result is not None)

        finished = {r.step.key for r in completed}
        pending = [step for step in plan.steps if step.key not in finished]
        completed_steps = [r.step for r in completed]

        if self._failure is not None:
            raise PartialApplyError(self._failure, completed_steps, pending)
        if self._cancelled.is_set():
            logger.warning(
                f"Apply cancelled after {len(completed)} step(s), {len(pending)} not attempted"
            )
            raise ApplyCancelledError(completed_steps, pending)

        with self._state_lock:
            if plan.destroy or stack is None:
                snapshot.outputs = {}
            else:
                snapshot.outputs = stack.resolve_exports(snapshot.lookup)
            self.store.save(snapshot)

        result = ApplyResult(
            plan=plan,
            results=completed,
            outputs=dict(snapshot.outputs),
            snapshot=snapshot,
            duration=time.time() - started,
        )
        logger.info(
            f"Apply complete in {result.duration:.2f}s: "
            + ", ".join(f"{count} {status}" for status, count in result.summary().items() if count)
        )
        return result

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check_plan(
        self,
        plan: Plan,
        resources: dict[str, Resource],
        snapshot: StateSnapshot,
    ) -> None:
        """Reject a plan that no longer matches declarations or state."""
        if plan.stack != snapshot.stack:
            raise StalePlanError(
                f"Plan was made for stack '{plan.stack}', state is for '{snapshot.stack}'"
            )

        for step in plan.steps:
            if step.operation == Operation.DELETE:
                if not step.retired and step.action == Action.DELETE and step.name in resources:
                    raise StalePlanError(
                        f"Plan deletes '{step.name}' but it is declared again; re-run plan"
                    )
                continue

            resource = resources.get(step.name)
            if resource is None:
                raise StalePlanError(f"Plan step '{step.label}' has no declared resource; re-run plan")
            if resource.properties_digest() != step.properties_digest:
                raise StalePlanError(
                    f"Declaration of '{step.name}' changed since the plan was made; re-run plan"
                )

            current = snapshot.get(step.name)
            if step.operation in (Operation.UPDATE, Operation.NONE):
                if current is None or current.resource_id != step.resource_id:
                    raise StalePlanError(
                        f"State of '{step.name}' changed since the plan was made; re-run plan"
                    )

    # ------------------------------------------------------------------
    # Step execution (worker threads)
    # ------------------------------------------------------------------

    def _lookup(self, snapshot: StateSnapshot):
        def lookup(ref):
            with self._state_lock:
                return snapshot.lookup(ref)
        return lookup

    def _run_step(
        self,
        step: PlanStep,
        resources: dict[str, Resource],
        snapshot: StateSnapshot,
        old_ids: dict[str, set[str]],
    ) -> StepResult | None:
        if self._halted.is_set():
            return None

        started = time.time()
        try:
            if step.operation == Operation.DELETE:
                result = self._delete(step, snapshot)
            elif step.operation == Operation.NONE:
                result = self._refresh(step, resources[step.name], snapshot)
            else:
                result = self._materialize(step, resources[step.name], snapshot, old_ids)
        except ProviderError as e:
            logger.error(f"Step '{step.label}' failed: {e}")
            with self._state_lock:
                if self._failure is None:
                    self._failure = e
            self._halted.set()
            return None
        result.duration = time.time() - started
        return result

    def _provider_call(self, step: PlanStep, call, *args):
        try:
            return call(*args, timeout=self.timeout)
        except Exception as e:
            raise ProviderError(step.name, step.operation.value, e) from e

    def _materialize(
        self,
        step: PlanStep,
        resource: Resource,
        snapshot: StateSnapshot,
        old_ids: dict[str, set[str]],
    ) -> StepResult:
        lookup = self._lookup(snapshot)
        properties = resource.properties()
        resolved = resolve_value(properties, lookup)
        inputs_digest = digest(canonicalize(properties, resource.name, lookup))
        references = {str(ref): lookup(ref) for ref in resource.references()}

        with self._state_lock:
            current = snapshot.get(step.name)
            superseded = current is not None and current.resource_id in old_ids.get(step.name, set())

        if step.operation == Operation.CREATE and current is not None and not superseded:
            logger.info(f"Skipping {step.label}: already created as {current.resource_id}")
            return StepResult(step, StepStatus.SKIPPED, current.resource_id, dict(current.outputs))

        if (
            step.operation == Operation.UPDATE
            and current is not None
            and current.inputs_digest == inputs_digest
        ):
            logger.info(f"Skipping {step.label}: already up to date")
            return StepResult(step, StepStatus.SKIPPED, current.resource_id, dict(current.outputs))

        logger.info(f"Applying {step.label}")
        if step.operation == Operation.CREATE:
            created = self._provider_call(
                step, self.provider.create, resource.kind, resource.name, resolved
            )
            resource_id, outputs = created.resource_id, dict(created.outputs)
        else:
            resource_id = step.resource_id
            outputs = dict(self._provider_call(
                step, self.provider.update, resource.kind, resource_id, resolved
            ))
            outputs.setdefault("id", resource_id)

        with self._state_lock:
            if step.operation == Operation.CREATE and superseded:
                retired = snapshot.retire(step.name)
                logger.info(f"Retired old instance {retired.resource_id} of '{step.name}'")
            snapshot.record(ResourceState(
                name=resource.name,
                kind=resource.kind,
                resource_id=resource_id,
                properties=resource.canonical_properties(),
                properties_digest=resource.properties_digest(),
                inputs_digest=inputs_digest,
                references=references,
                outputs=outputs,
                dependencies=resource.dependency_names(),
                delete_before_replace=resource.replaces_by_delete,
            ))
            self.store.save(snapshot)

        logger.info(f"Completed {step.label} ({resource_id})")
        return StepResult(step, StepStatus.APPLIED, resource_id, outputs)

    def _delete(self, step: PlanStep, snapshot: StateSnapshot) -> StepResult:
        with self._state_lock:
            tracked = snapshot.tracks(step.name, step.resource_id)
        if not tracked:
            logger.info(f"Skipping {step.label}: {step.resource_id} already deleted")
            return StepResult(step, StepStatus.SKIPPED, step.resource_id)

        logger.info(f"Applying {step.label} ({step.resource_id})")
        self._provider_call(step, self.provider.delete, step.kind, step.resource_id)

        with self._state_lock:
            snapshot.remove(step.name, step.resource_id)
            self.store.save(snapshot)

        logger.info(f"Completed {step.label} ({step.resource_id})")
        return StepResult(step, StepStatus.APPLIED, step.resource_id)

    def _refresh(self, step: PlanStep, resource: Resource, snapshot: StateSnapshot) -> StepResult:
        """No provider call; keep recorded dependencies in line with the declaration."""
        with self._state_lock:
            current = snapshot.get(step.name)
            dependencies = resource.dependency_names()
            if (
                current.dependencies != dependencies
                or current.delete_before_replace != resource.replaces_by_delete
            ):
                current.dependencies = dependencies
                current.delete_before_replace = resource.replaces_by_delete
                self.store.save(snapshot)
            return StepResult(step, StepStatus.UNCHANGED, current.resource_id, dict(current.outputs))

