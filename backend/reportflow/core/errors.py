from typing import Optional


class ScheduleValidationError(ValueError):
    """Invalid schedule configuration, rejected before it reaches the scheduler."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class ScheduleLimitError(ValueError):
    pass


class ScheduleNotFoundError(LookupError):
    pass


class ApprovalError(ValueError):
    pass


class QueryExecutionError(Exception):
    """The report query engine rejected or failed the request."""


class ExecutorUnavailableError(QueryExecutionError):
    """The report query engine could not be reached."""


class DeliveryError(Exception):
    """A single recipient could not be delivered to."""


class ExecutionCancelled(Exception):
    """Raised at a suspension point once the schedule's run has been cancelled."""

    def __init__(self, reason: str, sent: int = 0, failed: int = 0) -> None:
        super().__init__(reason)
        self.reason = reason
        self.sent = sent
        self.failed = failed
