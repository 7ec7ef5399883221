"""
Planner module for converting diffs into an ordered Plan.

Each resource diff becomes one or two steps (a replace is a delete plus a
create). Steps are linked by ordering constraints and sorted into a single
total order:

- producers are created/updated before their consumers
- old instances are deleted after the old instances that depended on them
- a surviving consumer releases a producer (update) before the producer is deleted
- delete-before-replace kinds delete the old instance before creating the new one;
  the others create first and delete the old instance last
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from ..forge.state import StateSnapshot
from .differ import Action, FieldChange, ResourceDiff, compute_diff
from .graph import DependencyGraph, compute_depths

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    """What the executor does for a step."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NONE = "none"


_OPERATION_RANK = {
    Operation.DELETE: 0,
    Operation.CREATE: 1,
    Operation.UPDATE: 1,
    Operation.NONE: 2,
}


class PlanStep(BaseModel):
    """One ordered step of a plan.

    Attributes:
        name: Resource identifier
        kind: Resource kind
        action: Action decided by the differ for this resource
        operation: Provider operation performed by this step
        resource_id: Existing instance to update or delete
        depth: Ordering depth; steps of equal depth are independent
        properties_digest: Digest of the declared properties this step applies
        changes: Changed fields (canonical, secret-free)
        reason: Why the resource is replaced or deleted
        retired: Deletes a leftover instance from an earlier replacement
    """

    name: str
    kind: str
    action: Action
    operation: Operation
    resource_id: str | None = None
    depth: int = 0
    properties_digest: str | None = None
    changes: list[FieldChange] = Field(default_factory=list)
    reason: str | None = None
    retired: bool = False

    @property
    def key(self) -> str:
        return f"{self.operation.value}:{self.name}:{self.resource_id or ''}"

    @property
    def label(self) -> str:
        if self.action == Action.REPLACE:
            return f"replace ({self.operation.value}) {self.name}"
        return f"{self.action.value} {self.name}"

    @property
    def has_side_effects(self) -> bool:
        return self.operation != Operation.NONE

    def __str__(self) -> str:
        return self.label


class Plan(BaseModel):
    """Ordered, serializable plan.

    Plans never contain property values, only digests and canonical field
    changes, so saving one to disk cannot leak secrets.
    """

    stack: str = "dev"
    steps: list[PlanStep] = Field(default_factory=list)
    exports: list[str] = Field(default_factory=list)
    snapshot_serial: int = 0
    destroy: bool = False
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def has_changes(self) -> bool:
        return any(step.has_side_effects for step in self.steps)

    def summary(self) -> dict[str, int]:
        """Count resources per action (a replace counts once)."""
        seen: dict[str, str] = {}
        for step in self.steps:
            if step.retired:
                seen[f"{step.name}#{step.resource_id}"] = Action.DELETE.value
            else:
                seen.setdefault(step.name, step.action.value)
        counts = {action.value: 0 for action in Action}
        for action in seen.values():
            counts[action] += 1
        return counts

    def waves(self) -> list[list[PlanStep]]:
        """Group consecutive steps of equal depth; each group is independent."""
        waves: list[list[PlanStep]] = []
        for step in self.steps:
            if waves and waves[-1][0].depth == step.depth:
                waves[-1].append(step)
            else:
                waves.append([step])
        return waves

    def steps_for(self, name: str) -> list[PlanStep]:
        return [step for step in self.steps if step.name == name]

    def save(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        logger.debug(f"Saved plan with {len(self.steps)} steps to {path}")
        return path

    @classmethod
    def load(cls, path: Path) -> "Plan":
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


def _steps_for_diff(diff: ResourceDiff) -> list[PlanStep]:
    digest = diff.resource.properties_digest() if diff.resource is not None else None
    common: dict[str, Any] = dict(
        name=diff.name, kind=diff.kind, action=diff.action,
        changes=diff.changes, reason=diff.reason,
    )

    if diff.action == Action.CREATE:
        return [PlanStep(operation=Operation.CREATE, properties_digest=digest, **common)]
    if diff.action == Action.UPDATE:
        return [PlanStep(
            operation=Operation.UPDATE, resource_id=diff.resource_id,
            properties_digest=digest, **common,
        )]
    if diff.action == Action.NO_OP:
        return [PlanStep(
            operation=Operation.NONE, resource_id=diff.resource_id,
            properties_digest=digest, **common,
        )]
    if diff.action == Action.DELETE:
        return [PlanStep(
            operation=Operation.DELETE, resource_id=diff.resource_id,
            retired=diff.retired, **common,
        )]

    # Replace: delete + create, order fixed by edges
    delete = PlanStep(operation=Operation.DELETE, resource_id=diff.resource_id, **common)
    create = PlanStep(operation=Operation.CREATE, properties_digest=digest, **common)
    return [delete, create]


def build_plan(
    graph: DependencyGraph,
    snapshot: StateSnapshot,
    diffs: Iterable[ResourceDiff] | None = None,
    exports: Iterable[str] = (),
    destroy: bool = False,
) -> Plan:
    """Build an ordered plan from a dependency graph and a snapshot.

    Args:
        graph: Declared resources
        snapshot: Last recorded state
        diffs: Precomputed diffs (computed from graph and snapshot if omitted)
        exports: Names of the stack's exports
        destroy: Mark the plan as a destroy plan

    Returns:
        Plan whose steps are in a valid total order

    Raises:
        CyclicDependencyError: If the ordering constraints contain a cycle
    """
    diffs = list(diffs) if diffs is not None else compute_diff(graph, snapshot)

    steps: dict[str, PlanStep] = {}
    edges: dict[str, list[str]] = {}
    desired: dict[str, str] = {}            # name -> create/update/no-op step key
    deletes: dict[str, list[str]] = {}      # name -> delete step keys (old instances)
    by_key: dict[str, ResourceDiff] = {}

    def add_edge(before: str, after: str) -> None:
        if before != after and before not in edges[after]:
            edges[after].append(before)

    for diff in diffs:
        for step in _steps_for_diff(diff):
            steps[step.key] = step
            edges[step.key] = []
            by_key[step.key] = diff
            if step.operation == Operation.DELETE:
                deletes.setdefault(diff.name, []).append(step.key)
            else:
                desired[diff.name] = step.key

    for key, step in steps.items():
        diff = by_key[key]

        if step.operation != Operation.DELETE:
            # Producers before consumers
            for dep in graph.get_node(step.name).dependencies:
                add_edge(desired[dep], key)
            continue

        # Old consumers are deleted before the producers they used
        for dep in diff.old_dependencies:
            for dep_delete in deletes.get(dep, []):
                add_edge(key, dep_delete)

        if diff.action == Action.REPLACE:
            create_key = desired[step.name]
            if diff.replaces_by_delete:
                add_edge(key, create_key)
                continue
            add_edge(create_key, key)

        # Surviving consumers move off this instance before it is deleted
        for other in diffs:
            if other.name == step.name or step.name not in other.old_dependencies:
                continue
            other_key = desired.get(other.name)
            if other_key is not None and steps[other_key].operation != Operation.NONE:
                add_edge(other_key, key)

    depths = compute_depths(edges)
    for key, depth in depths.items():
        steps[key].depth = depth

    ordered = sorted(
        steps.values(),
        key=lambda s: (s.depth, _OPERATION_RANK[s.operation], s.name, s.resource_id or ""),
    )

    plan = Plan(
        stack=snapshot.stack,
        steps=ordered,
        exports=list(exports),
        snapshot_serial=snapshot.serial,
        destroy=destroy,
    )
    logger.info(
        f"Built plan with {len(ordered)} steps: "
        + ", ".join(f"{count} {action}" for action, count in plan.summary().items() if count)
    )
    return plan


def build_destroy_plan(snapshot: StateSnapshot) -> Plan:
    """Plan deletion of everything recorded in the snapshot."""
    return build_plan(DependencyGraph([]), snapshot, destroy=True)
