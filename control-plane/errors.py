# File: errors.py
"""Error types shared by the allocator, reconciler, garbage collector and API."""

from enum import Enum
from typing import Iterable, List, Optional


class ErrorKind(Enum):
    # Worth retrying: backend hiccups, stale reads, conflicts, missing dependencies
    TRANSIENT = "transient"
    # Retrying cannot help until the object itself changes
    TERMINAL = "terminal"
    # A safety rule blocked the action, e.g. ports still attached
    INVARIANT = "invariant"


class ControlPlaneError(Exception):
    """Base exception for control plane operations."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind


class BackendError(ControlPlaneError):
    """A call to the network backend failed."""

    kind = ErrorKind.TRANSIENT


class NotFoundError(ControlPlaneError):
    """A cluster object could not be found."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, resource: str, key: str):
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} {key} not found")


class ConflictError(ControlPlaneError):
    """An update lost an optimistic concurrency race."""

    kind = ErrorKind.TRANSIENT


class InvalidSubnetSizeError(ControlPlaneError):
    kind = ErrorKind.TERMINAL

    def __init__(self, size: int, minimum: int):
        self.size = size
        super().__init__(
            f"ipv4SubnetSize {size} must be a power of 2 and not less than {minimum}"
        )


class TagOverflowError(ControlPlaneError):
    kind = ErrorKind.TERMINAL

    def __init__(self, count: int, maximum: int):
        self.count = count
        super().__init__(f"tags cannot exceed maximum size {maximum}, got {count}")


class StalePortError(ControlPlaneError):
    """A Subnet still has ports and cannot be removed yet."""

    kind = ErrorKind.INVARIANT


class AggregateError(ControlPlaneError):
    """Per-item failures collected from a batch operation."""

    def __init__(self, errors: List[Exception]):
        self.errors = list(errors)
        kinds = [error_kind(e) for e in self.errors]
        if ErrorKind.TRANSIENT in kinds or not kinds:
            kind = ErrorKind.TRANSIENT
        else:
            kind = kinds[0]
        super().__init__("; ".join(str(e) for e in self.errors), kind)


def error_kind(err: Exception) -> ErrorKind:
    """Kind of any exception; anything unrecognised is treated as transient."""
    if isinstance(err, ControlPlaneError):
        return err.kind
    return ErrorKind.TRANSIENT


def is_retryable(err: Optional[Exception]) -> bool:
    if err is None:
        return False
    # Deletion blocked by ports clears once the ports drain
    return error_kind(err) in (ErrorKind.TRANSIENT, ErrorKind.INVARIANT)


def aggregate(errors: Iterable[Exception]) -> Optional[Exception]:
    """Collapse a list of errors: None for none, the error itself for one."""
    errors = list(errors)
    if not errors:
        return None
    if len(errors) == 1:
        return errors[0]
    return AggregateError(errors)
