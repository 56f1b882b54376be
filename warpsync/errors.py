"""Exception taxonomy shared by the transfer orchestration components."""
from typing import Any, Dict, List, Optional


class WarpSyncError(Exception):
    """Base class for all warpsync errors."""
    category = "Error"

    def user_message(self) -> str:
        """Returns the message prefixed with its category for operators."""
        return f"{self.category}: {self}"


class ValidationError(WarpSyncError):
    """A malformed transfer request or configuration value.

    Attributes:
        details: Field name to problem description.
    """
    category = "Validation error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class InvalidTransitionError(ValidationError):
    """Raised when a transfer is asked to move along an undefined edge."""

    def __init__(self, transfer_id: str, current: Any, requested: Any):
        super().__init__(
            f"Invalid transition for {transfer_id}: {getattr(current, 'value', current)} -> "
            f"{getattr(requested, 'value', requested)}",
            {"current": getattr(current, 'value', current), "requested": getattr(requested, 'value', requested)},
        )
        self.transfer_id = transfer_id
        self.current = current
        self.requested = requested


class SSHConnectionError(WarpSyncError, ConnectionError):
    """SSH target unreachable, authentication failure or pool wait timeout."""
    category = "Connection error"


class TransferError(WarpSyncError):
    """The transfer process exited unsuccessfully.

    Attributes:
        exit_code: Process exit status (negative for a signal), if known.
        retryable: Whether the failure is worth another attempt.
    """
    category = "Transfer error"

    def __init__(self, message: str, exit_code: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.exit_code = exit_code
        self.retryable = retryable


class ScanTimeoutError(WarpSyncError, TimeoutError):
    """A directory scan or a stuck transfer exceeded its time bound."""
    category = "Timeout"


class ConsistencyError(WarpSyncError):
    """Durable state and live tracking disagree."""
    category = "Consistency error"

    def __init__(self, issues: List[str]):
        super().__init__(f"{len(issues)} consistency issue(s): " + "; ".join(issues))
        self.issues = list(issues)


class QueueFullError(WarpSyncError):
    """The transfer queue holds its maximum number of entries."""
    category = "Queue error"


class NotFoundError(WarpSyncError):
    category = "Not found"


class ConflictError(WarpSyncError):
    category = "Conflict"
