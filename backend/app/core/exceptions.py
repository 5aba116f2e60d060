"""
Custom exceptions for the Ticketing Scheduler.
Provides meaningful error types for different failure scenarios.
"""
from typing import Any, Optional


class SchedulerException(Exception):
    """Base exception for all scheduler errors."""

    def __init__(
        self,
        message: str,
        details: Optional[dict[str, Any]] = None,
        status_code: int = 500
    ):
        self.message = message
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(SchedulerException):
    """Raised when required configuration is missing or invalid.

    Startup misconfiguration (bad schedule expression, broken threshold
    table) must surface at process start instead of being logged and skipped.
    """

    def __init__(
        self,
        message: str,
        config_key: str,
        expected_type: Optional[str] = None,
        actual_value: Optional[str] = None
    ):
        details = {
            "config_key": config_key
        }
        if expected_type:
            details["expected_type"] = expected_type
        if actual_value:
            value = str(actual_value)
            details["actual_value"] = value[:50] if len(value) > 50 else value

        super().__init__(message, details, status_code=500)


class DatabaseError(SchedulerException):
    """Raised when database operations fail or exceed their deadline."""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        operation: Optional[str] = None,
        original_error: Optional[str] = None
    ):
        details = {}
        if table:
            details["table"] = table
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = original_error

        super().__init__(message, details, status_code=500)


class SettlementError(SchedulerException):
    """Raised when the settlement system cannot be queried.

    ``permanent`` marks answers that will not change on retry (unknown
    reference, unrecognized status) as opposed to outages.
    """

    def __init__(
        self,
        message: str,
        reference: str,
        status_code: Optional[int] = None,
        original_error: Optional[str] = None,
        permanent: bool = False
    ):
        self.permanent = permanent
        details = {"reference": reference, "permanent": permanent}
        if status_code is not None:
            details["upstream_status"] = status_code
        if original_error:
            details["original_error"] = original_error

        super().__init__(message, details, status_code=502)


class NotificationError(SchedulerException):
    """Raised when a notification cannot be written."""

    def __init__(
        self,
        message: str,
        recipient_id: str,
        notification_type: str,
        original_error: Optional[str] = None
    ):
        details = {
            "recipient_id": recipient_id,
            "notification_type": notification_type,
        }
        if original_error:
            details["original_error"] = original_error

        super().__init__(message, details, status_code=500)


class EscalationFailureException(SchedulerException):
    """Raised when no responsible party exists for the next escalation level."""

    def __init__(
        self,
        message: str,
        escalation_id: str,
        escalation_level: int,
        role: Optional[str] = None
    ):
        details = {
            "escalation_id": escalation_id,
            "escalation_level": escalation_level,
            "action_required": "Assign an active user to the escalation role"
        }
        if role:
            details["role"] = role
        super().__init__(message, details, status_code=500)


class InvalidTransitionError(SchedulerException):
    """Raised when a state change is attempted on a terminal escalation case."""

    def __init__(self, message: str, escalation_id: str, current_status: str):
        details = {
            "escalation_id": escalation_id,
            "current_status": current_status,
        }
        super().__init__(message, details, status_code=409)


class TaskNotFoundError(SchedulerException):
    """Raised when an unknown task name is requested."""

    def __init__(self, task_name: str):
        super().__init__(
            f"Task not found: {task_name}",
            {"task_name": task_name},
            status_code=404
        )
