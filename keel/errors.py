"""
Keel errors.

Validation errors (configuration, references, cycles) are raised before any
provider call is made. Apply-time errors carry enough detail to resume.
"""

from typing import Any


class KeelError(Exception):
    """Base exception for all Keel errors."""
    pass


class ConfigurationError(KeelError):
    """Errors in stack configuration or resource declarations."""
    pass


class UnknownReferenceError(KeelError):
    """A reference points at a node (or output) that is not declared."""

    def __init__(self, node: str, target: str, output: str | None = None):
        self.node = node
        self.target = target
        self.output = output
        if output is None:
            message = f"Resource '{node}' references undeclared resource '{target}'"
        else:
            message = (
                f"Resource '{node}' references unknown output '{output}' "
                f"of resource '{target}'"
            )
        super().__init__(message)


class CyclicDependencyError(KeelError):
    """Resource references form a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' → '.join(cycle)}")


class ProviderError(KeelError):
    """A provider call failed for a node."""

    def __init__(self, node: str, action: str, cause: BaseException):
        self.node = node
        self.action = action
        self.cause = cause
        super().__init__(f"{action} of '{node}' failed: {cause}")


class PartialApplyError(KeelError):
    """Apply halted after a provider failure.

    Attributes:
        error: The ProviderError that stopped the run
        completed: Steps that completed and are recorded in the state snapshot
        pending: The failed step followed by the steps never attempted
    """

    def __init__(self, error: ProviderError, completed: list[Any], pending: list[Any]):
        self.error = error
        self.completed = completed
        self.pending = pending
        super().__init__(
            f"Apply halted: {error} "
            f"({len(completed)} step(s) completed, {len(pending)} remaining)"
        )


class ApplyCancelledError(KeelError):
    """Apply was cancelled; in-flight steps finished and were recorded."""

    def __init__(self, completed: list[Any], pending: list[Any]):
        self.completed = completed
        self.pending = pending
        super().__init__(
            f"Apply cancelled ({len(completed)} step(s) completed, "
            f"{len(pending)} not attempted)"
        )


class StateLockError(KeelError):
    """The state snapshot is locked by another run."""
    pass


class StalePlanError(KeelError):
    """A saved plan no longer matches the declared resources."""
    pass
