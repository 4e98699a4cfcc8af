class SyncUnavailable(RuntimeError):
    """Raised when a time reference cannot be reached or answers garbage."""


class ProbeTimeout(RuntimeError):
    """Raised when a latency round trip exceeds its timeout or fails outright."""


class ActionTargetMissing(RuntimeError):
    """Raised when the control that submits the form cannot be located."""


class RejectedTooEarly(RuntimeError):
    """Raised when the site answers a submission with a "too early" response."""


class RetriesExhausted(RuntimeError):
    """Raised when every retry was still rejected as premature."""

    def __init__(self, message: str, retry_count: int) -> None:
        super().__init__(message)
        self.retry_count = retry_count


class ResultUnparseable(RuntimeError):
    """Raised when no extraction strategy yields a boarding position."""


class SchedulerTimeout(RuntimeError):
    """Raised when the run would exceed its overall wall-clock ceiling."""
