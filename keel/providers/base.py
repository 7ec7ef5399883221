"""Provider protocol - the external API Keel materializes resources through."""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field


class CloudAPIError(Exception):
    """Error returned by a provider API call.

    Attributes:
        code: Provider error code (e.g. "DependencyViolation")
        message: Human-readable message
    """

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


class ProviderResult(BaseModel):
    """Result of a create call: the new id plus published outputs."""

    resource_id: str
    outputs: dict[str, Any] = Field(default_factory=dict)


class Provider(ABC):
    """Capability interface for create/update/delete/read per resource kind.

    Implementations receive fully resolved properties (references replaced by
    values, secrets unwrapped) and must treat them as sensitive. Every call is
    blocking and must give up after ``timeout`` seconds by raising
    TimeoutError.
    """

    name: str = "provider"

    @abstractmethod
    def create(
        self, kind: str, name: str, properties: dict[str, Any], timeout: float | None = None
    ) -> ProviderResult:
        """Create a resource and return its id and outputs."""

    @abstractmethod
    def update(
        self, kind: str, resource_id: str, properties: dict[str, Any], timeout: float | None = None
    ) -> dict[str, Any]:
        """Update a resource in place and return its outputs."""

    @abstractmethod
    def delete(self, kind: str, resource_id: str, timeout: float | None = None) -> None:
        """Delete a resource. Deleting a missing resource is not an error."""

    @abstractmethod
    def read(self, kind: str, resource_id: str) -> dict[str, Any] | None:
        """Return the outputs of a resource, or None if it does not exist."""

    def supports(self, kind: str) -> bool:
        """Whether this provider can manage the given kind."""
        return True
