"""
Differ module for computing state differences.

Compares the declared resources against the last state snapshot and decides,
per resource, whether it must be created, updated in place, replaced,
deleted, or left alone.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel

from ..forge.state import ResourceState, StateSnapshot
from ..resources.base import Reference, Resource, iter_references
from .graph import DependencyGraph

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """What has to happen to a resource to reach the desired state."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NO_OP = "no-op"


class FieldChange(BaseModel):
    """A changed top-level property.

    Values are in canonical form: references as ``{"$ref": ...}`` markers and
    secrets as ``{"$secret": ...}`` digests, so a FieldChange is always safe
    to print or serialize.

    Attributes:
        field: Property name
        old: Previous canonical value (None if absent)
        new: Desired canonical value (None if removed)
        immutable: Whether the change forces replacement
        propagated: Changed because a referenced resource gets a new identity
    """

    field: str
    old: Any = None
    new: Any = None
    immutable: bool = False
    propagated: bool = False


@dataclass
class ResourceDiff:
    """
    Represents the difference between desired and recorded state of one resource.

    Attributes:
        name: Resource identifier
        kind: Resource kind (desired kind, or recorded kind for deletes)
        action: Action required
        resource: Declared resource (None for deletes)
        prior: Recorded state (None for creates and retired instances)
        changes: Field-level changes for updates and replaces
        reason: Why a replace or delete is needed
        resource_id: Provider id of the instance to update or delete
        old_dependencies: Dependencies recorded for the existing instance
        retired: True when deleting a leftover instance from an earlier replace
        delete_first: Replacement must delete the old instance first because a
            resource it depends on is itself deleted before being replaced
    """

    name: str
    kind: str
    action: Action
    resource: Resource | None = None
    prior: ResourceState | None = None
    changes: list[FieldChange] = field(default_factory=list)
    reason: str | None = None
    resource_id: str | None = None
    old_dependencies: list[str] = field(default_factory=list)
    retired: bool = False
    delete_first: bool = False

    def __post_init__(self):
        """Validate diff consistency."""
        if self.action == Action.CREATE and self.resource is None:
            raise ValueError(f"Create diff for '{self.name}' needs a resource")
        if self.action in (Action.UPDATE, Action.REPLACE, Action.DELETE) and not self.resource_id:
            raise ValueError(f"{self.action.value} diff for '{self.name}' needs a resource id")

    @property
    def replaces_by_delete(self) -> bool:
        """Whether a replace deletes the old instance before creating the new one."""
        if self.resource is None or self.delete_first:
            return True
        if self.prior is not None and self.prior.kind != self.resource.kind:
            return True
        return self.resource.replaces_by_delete

    @property
    def changed_fields(self) -> list[str]:
        return [c.field for c in self.changes]


def _references_moved(refs: list[Reference], prior: ResourceState, snapshot: StateSnapshot) -> bool:
    """Whether a referenced output now differs from the value last applied.

    This happens when a producer was replaced but applying the consumer did
    not complete, so the consumer still points at the old instance.
    """
    for ref in refs:
        key = str(ref)
        producer = snapshot.get(ref.node)
        if key not in prior.references or producer is None:
            continue
        if producer.outputs.get(ref.output) != prior.references[key]:
            return True
    return False


def _compare_properties(
    resource: Resource,
    prior: ResourceState,
    renewed: set[str],
    snapshot: StateSnapshot,
) -> list[FieldChange]:
    """Field-by-field comparison of declared vs recorded properties."""
    desired = resource.canonical_properties()
    raw = resource.properties()
    changes: list[FieldChange] = []

    for key in sorted(set(desired) | set(prior.properties)):
        old = prior.properties.get(key)
        new = desired.get(key)
        if old != new:
            changes.append(FieldChange(
                field=key, old=old, new=new,
                immutable=resource.is_immutable(key),
            ))
            continue

        # Same declaration, but the referenced resource gets (or got) a new id
        refs = list(iter_references(raw[key])) if key in raw else []
        if any(ref.node in renewed for ref in refs) or _references_moved(refs, prior, snapshot):
            changes.append(FieldChange(
                field=key, old=old, new=new,
                immutable=resource.is_immutable(key),
                propagated=True,
            ))

    return changes


def compute_diff(graph: DependencyGraph, snapshot: StateSnapshot) -> list[ResourceDiff]:
    """Compute the changes between declared resources and a state snapshot.

    Declared resources are visited in dependency order so that a producer's
    action is known before its consumers are compared: when a producer is
    created or replaced, consumer fields referencing it count as changed.

    Args:
        graph: Dependency graph of declared resources
        snapshot: Last recorded state

    Returns:
        Diffs for declared resources (dependency order), then deletes for
        resources no longer declared, then deletes of retired instances
    """
    diffs: list[ResourceDiff] = []
    renewed: set[str] = set()
    deleted_first: set[str] = set()

    for node in graph.create_order():
        resource = node.resource
        prior = snapshot.get(resource.name)

        if prior is None:
            diffs.append(ResourceDiff(
                name=resource.name, kind=resource.kind,
                action=Action.CREATE, resource=resource,
            ))
            renewed.add(resource.name)
            continue

        common = dict(
            name=resource.name, kind=resource.kind, resource=resource, prior=prior,
            resource_id=prior.resource_id, old_dependencies=list(prior.dependencies),
        )

        if prior.kind != resource.kind:
            diffs.append(ResourceDiff(
                action=Action.REPLACE,
                reason=f"kind changed from {prior.kind} to {resource.kind}",
                **common,
            ))
            renewed.add(resource.name)
            deleted_first.add(resource.name)
            continue

        changes = _compare_properties(resource, prior, renewed, snapshot)
        forcing = [c.field for c in changes if c.immutable]
        # A live consumer would block deletion of a producer that goes first
        blocking = [dep for dep in prior.dependencies if dep in deleted_first] if changes else []

        if forcing or blocking:
            action = Action.REPLACE
            if forcing:
                reason = f"immutable field(s) changed: {', '.join(forcing)}"
            else:
                reason = f"depends on {', '.join(blocking)}, which is deleted before it is replaced"
            renewed.add(resource.name)
            if blocking or resource.replaces_by_delete:
                deleted_first.add(resource.name)
        elif changes:
            action = Action.UPDATE
            reason = None
        else:
            action = Action.NO_OP
            reason = None

        diffs.append(ResourceDiff(
            action=action, changes=changes, reason=reason,
            delete_first=bool(blocking), **common,
        ))

    for name, prior in snapshot.resources.items():
        if name in graph:
            continue
        diffs.append(ResourceDiff(
            name=name, kind=prior.kind, action=Action.DELETE, prior=prior,
            reason="no longer declared", resource_id=prior.resource_id,
            old_dependencies=list(prior.dependencies),
        ))

    for retired in snapshot.retired:
        diffs.append(ResourceDiff(
            name=retired.name, kind=retired.kind, action=Action.DELETE,
            reason="superseded by replacement", resource_id=retired.resource_id,
            old_dependencies=list(retired.dependencies), retired=True,
        ))

    counts: dict[str, int] = {}
    for diff in diffs:
        counts[diff.action.value] = counts.get(diff.action.value, 0) + 1
    logger.info(f"Computed diff: {counts or 'no resources'}")
    return diffs
