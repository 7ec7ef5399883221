"""Base resource classes for Keel."""

import hashlib
import json
import logging
from collections.abc import Callable, Iterator
from enum import Enum
from typing import Any, ClassVar, Self

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

logger = logging.getLogger(__name__)

REF_MARKER = "$ref"
SECRET_MARKER = "$secret"


class Reference(BaseModel):
    """A forward pointer to another resource's output.

    References are how resources depend on each other: ``Subnet(vpc_id=vpc.id)``
    stores ``Reference(node="my-vpc", output="id")`` in the subnet's property
    bag. The graph builder enumerates them without touching the provider, and
    the executor resolves them once the target resource has been materialized.

    Attributes:
        node: Name of the resource that publishes the output
        output: Output name (e.g. "id", "endpoint", "port")
    """

    model_config = ConfigDict(frozen=True)

    node: str
    output: str = "id"

    def __str__(self) -> str:
        return f"{self.node}.{self.output}"


def to_property(value: Any) -> Any:
    """Convert a declared field value into a plain property value.

    Nested models become dicts (unset fields dropped), tuples become lists.
    References and secrets are kept as-is so later stages can find them.
    """
    if isinstance(value, (Reference, SecretStr)):
        return value
    if isinstance(value, BaseModel):
        return {
            key: to_property(getattr(value, key))
            for key in type(value).model_fields
            if getattr(value, key) is not None
        }
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: to_property(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_property(item) for item in value]
    return value


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference nested anywhere inside a property value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace references with concrete values and unwrap secrets.

    The result is what a provider receives. It contains plaintext secrets and
    must never be logged or persisted.
    """
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    if isinstance(value, dict):
        return {key: resolve_value(item, lookup) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(item, lookup) for item in value]
    return value


def secret_digest(secret: str, salt: str) -> str:
    """Salted SHA-256 of a secret, used in place of the plaintext in state."""
    digest = hashlib.sha256(f"{salt}\x00{secret}".encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


def canonicalize(
    value: Any,
    salt: str,
    lookup: Callable[[Reference], Any] | None = None,
) -> Any:
    """Render a property value in its JSON-safe, secret-free form.

    References become ``{"$ref": "node.output"}`` (or their resolved value when
    lookup is given) and secrets become ``{"$secret": "sha256:..."}``. This is
    the form stored in state snapshots and compared by the differ.

    Args:
        value: Property value
        salt: Salt for secret digests (resource name and field path)
        lookup: Optional resolver for references
    """
    if isinstance(value, Reference):
        if lookup is None:
            return {REF_MARKER: str(value)}
        return canonicalize(lookup(value), salt, lookup)
    if isinstance(value, SecretStr):
        return {SECRET_MARKER: secret_digest(value.get_secret_value(), salt)}
    if isinstance(value, dict):
        return {
            str(key): canonicalize(item, f"{salt}.{key}", lookup)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [canonicalize(item, f"{salt}[{i}]", lookup) for i, item in enumerate(value)]
    return value


def digest(value: Any) -> str:
    """Stable SHA-256 of a canonical (JSON-safe) value."""
    encoded = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class Resource(BaseModel):
    """Base resource class - all resources inherit from this.

    A resource is a typed declaration of something that should exist. Its
    pydantic fields form the property bag sent to the provider; any field may
    hold a Reference to another resource's output instead of a literal.

    Class-level metadata describes how the kind behaves during a diff:

    - immutable_fields: changing one of these forces replacement
    - output_names: outputs the provider publishes (used to validate references)
    - delete_before_replace_default: whether two live instances may coexist
      during replacement (False) or the old one must go first (True)

    Engine options (name, kind, depends_on, delete_before_replace) are not
    properties and are never sent to the provider.

    Attributes:
        name: Unique identifier of the resource within the stack
        kind: Resource kind (e.g. "network", "subnet")
        depends_on: Explicit dependencies in addition to references
        delete_before_replace: Per-resource override of the kind's replace strategy
    """

    model_config = ConfigDict(extra="forbid")

    immutable_fields: ClassVar[frozenset[str]] = frozenset()
    output_names: ClassVar[frozenset[str]] = frozenset({"id"})
    delete_before_replace_default: ClassVar[bool] = False

    engine_fields: ClassVar[frozenset[str]] = frozenset(
        {"name", "kind", "depends_on", "delete_before_replace"}
    )

    name: str = Field(..., min_length=1, description="Unique identifier within the stack")
    kind: str
    depends_on: list[str] = Field(default_factory=list)
    delete_before_replace: bool | None = None

    @field_validator("depends_on", mode="before")
    @classmethod
    def _dependency_names(cls, value: Any) -> list[str]:
        if value is None:
            return []
        names = []
        for item in value:
            names.append(item.name if isinstance(item, Resource) else item)
        return names

    def output(self, name: str = "id") -> Reference:
        """Reference one of this resource's outputs."""
        return Reference(node=self.name, output=name)

    @property
    def id(self) -> Reference:
        """Reference to the provider-assigned id of this resource."""
        return self.output("id")

    def connect(self, *resources: "Resource") -> Self:
        """Add explicit dependencies (chainable).

        Use when ordering matters but no output is referenced.
        """
        for resource in resources:
            if resource.name not in self.depends_on:
                self.depends_on.append(resource.name)
        return self

    def properties(self) -> dict[str, Any]:
        """Return the property bag (unset fields dropped)."""
        props: dict[str, Any] = {}
        for field_name in type(self).model_fields:
            if field_name in self.engine_fields:
                continue
            value = getattr(self, field_name)
            if value is None:
                continue
            props[field_name] = to_property(value)
        return props

    def references(self) -> list[Reference]:
        """All references found in the property bag, in declaration order."""
        return list(iter_references(self.properties()))

    def dependency_names(self) -> list[str]:
        """Names of every resource this one depends on (deduplicated, ordered)."""
        names: list[str] = []
        for ref in self.references():
            if ref.node not in names:
                names.append(ref.node)
        for name in self.depends_on:
            if name not in names:
                names.append(name)
        return names

    def is_immutable(self, field_name: str) -> bool:
        return field_name in self.immutable_fields

    def publishes(self, output: str) -> bool:
        """Whether the kind publishes the given output (empty set = unchecked)."""
        return not self.output_names or output in self.output_names

    @property
    def replaces_by_delete(self) -> bool:
        if self.delete_before_replace is not None:
            return self.delete_before_replace
        return self.delete_before_replace_default

    def canonical_properties(self) -> dict[str, Any]:
        """Properties in their JSON-safe, secret-free form."""
        return canonicalize(self.properties(), self.name)

    def properties_digest(self) -> str:
        return digest({"kind": self.kind, "properties": self.canonical_properties()})

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, kind={self.kind!r})"


class CustomResource(Resource):
    """Resource of an arbitrary kind with a free-form property bag.

    Example:
        >>> bucket = CustomResource(
        ...     name="logs",
        ...     kind="bucket",
        ...     inputs={"region": "us-east-1", "versioning": True},
        ...     immutable=["region"],
        ... )
    """

    inputs: dict[str, Any] = Field(default_factory=dict)
    immutable: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(
        default_factory=list,
        description="Outputs the provider publishes; empty means unchecked",
    )

    engine_fields: ClassVar[frozenset[str]] = Resource.engine_fields | {
        "inputs", "immutable", "outputs",
    }

    def properties(self) -> dict[str, Any]:
        return {
            key: to_property(value)
            for key, value in self.inputs.items()
            if value is not None
        }

    def is_immutable(self, field_name: str) -> bool:
        return field_name in self.immutable

    def publishes(self, output: str) -> bool:
        return not self.outputs or output == "id" or output in self.outputs
