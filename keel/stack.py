"""
Stack - the set of declared resources plus the outputs they export.

A project's ``main.py`` defines ``build(config: StackConfig) -> Stack``:

    def build(config):
        vpc = Vpc(name="my-vpc", cidr_block="10.0.0.0/16")
        return Stack("network").add(vpc).export("vpc_id", vpc.id)
"""

import logging
from collections.abc import Callable
from typing import Any, Self

from pydantic import SecretStr

from .errors import ConfigurationError
from .resources.base import (
    Reference,
    Resource,
    iter_references,
    resolve_value,
    to_property,
)

logger = logging.getLogger(__name__)


class Stack:
    """Declared desired state: resources in declaration order and exports."""

    def __init__(self, name: str = "stack"):
        self.name = name
        self._resources: dict[str, Resource] = {}
        self._exports: dict[str, Any] = {}

    def add(self, *resources: Resource) -> Self:
        """Add resources to the stack (chainable).

        Raises:
            ConfigurationError: If a resource name is already taken
        """
        for resource in resources:
            if not isinstance(resource, Resource):
                raise ConfigurationError(
                    f"Stack '{self.name}' can only hold resources, got {type(resource).__name__}"
                )
            if resource.name in self._resources:
                raise ConfigurationError(
                    f"Duplicate resource name '{resource.name}' in stack '{self.name}'"
                )
            self._resources[resource.name] = resource
            logger.debug(f"Added resource: {resource.name} ({resource.kind})")
        return self

    def export(self, name: str, value: Any) -> Self:
        """Declare a named stack output (chainable).

        Args:
            name: Output name
            value: A Reference, a list/dict of References, or a literal
        """
        if name in self._exports:
            raise ConfigurationError(f"Duplicate export '{name}' in stack '{self.name}'")
        self._exports[name] = to_property(value)
        return self

    @property
    def resources(self) -> list[Resource]:
        return list(self._resources.values())

    @property
    def exports(self) -> dict[str, Any]:
        return dict(self._exports)

    def get(self, name: str) -> Resource:
        """Get a resource by name.

        Raises:
            KeyError: If no resource has that name
        """
        return self._resources[name]

    def __contains__(self, name: str) -> bool:
        return name in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def export_references(self) -> list[tuple[str, Reference]]:
        """(export name, reference) pairs for every reference in the exports."""
        return [
            (name, ref)
            for name, value in self._exports.items()
            for ref in iter_references(value)
        ]

    def resolve_exports(self, lookup: Callable[[Reference], Any]) -> dict[str, Any]:
        """Resolve exports against materialized outputs.

        Secrets are never exported in plaintext; they resolve to "(sensitive)".
        """
        def _mask(value: Any) -> Any:
            if isinstance(value, SecretStr):
                return "(sensitive)"
            if isinstance(value, dict):
                return {key: _mask(item) for key, item in value.items()}
            if isinstance(value, list):
                return [_mask(item) for item in value]
            return value

        return {
            name: resolve_value(_mask(value), lookup)
            for name, value in self._exports.items()
        }

    def __repr__(self) -> str:
        return f"Stack({self.name!r}, resources={list(self._resources)})"
