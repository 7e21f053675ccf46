"""
stratum/errors.py

Error taxonomy shared by every stage of a run:

  - ConfigError: malformed declaration, bad variable value, unknown resource type.
  - CycleError: the dependency graph contains a cycle.
  - ReferenceError: a reference names something that is not declared.
  - ProviderError: the remote API failed (transient or permanent).
  - StateConflictError: the state store is out of sync with the run.

Config, cycle and reference errors are raised before any provider call.
Provider errors are caught by the executor and reported per resource.
"""

from __future__ import annotations

from typing import List, Optional


class StratumError(Exception):
    """Base class for all errors raised by stratum."""


class ConfigError(StratumError):
    """Represents a malformed or invalid configuration."""


class CycleError(StratumError):
    """Raised when the dependency graph contains a cycle.

    Attributes:
        cycle (List[str]): The addresses forming the cycle, first node repeated last.
    """

    def __init__(self, cycle: List[str]) -> None:
        self.cycle = cycle
        super().__init__("Dependency cycle detected: " + " -> ".join(cycle))


class ReferenceError(StratumError):
    """Raised when a reference cannot be resolved to a declared object.

    Attributes:
        reference (str): The unresolved reference text, e.g. 'aws_instance.web'.
        source (Optional[str]): The address of the object holding the reference.
    """

    def __init__(self, reference: str, source: Optional[str] = None) -> None:
        self.reference = reference
        self.source = source
        where = f" in {source}" if source else ""
        super().__init__(f"Reference to undeclared object '{reference}'{where}.")


class ProviderError(StratumError):
    """Represents a failure reported by a provider API call.

    Attributes:
        message (str): The error message.
        transient (bool): True if the call may succeed when retried (e.g. throttling).
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.transient = transient


class NotFoundError(ProviderError):
    """The provider has no object with the requested id."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=False)


class StateConflictError(StratumError):
    """Raised when the state store is locked or changed underneath a run."""


def is_transient(exc: BaseException) -> bool:
    """Return True if `exc` is a provider error worth retrying."""
    return isinstance(exc, ProviderError) and exc.transient
