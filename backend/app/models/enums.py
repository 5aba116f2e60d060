"""
Enum types that match the PostgreSQL ENUM types in Supabase.
These must stay in sync with the database schema.
"""
from enum import Enum


class EscalationStatus(str, Enum):
    """
    Escalation case lifecycle.
    RESOLVED and CLOSED are terminal: the level is frozen once reached.
    """
    OPEN = "OPEN"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"

    @property
    def is_terminal(self) -> bool:
        return self in (EscalationStatus.RESOLVED, EscalationStatus.CLOSED)


NON_TERMINAL_ESCALATION_STATUSES = [
    EscalationStatus.OPEN.value,
    EscalationStatus.ESCALATED.value,
]


class EscalationEntityType(str, Enum):
    """Entities that can be escalated."""
    EVENT = "EVENT"
    ORGANIZER = "ORGANIZER"


class PaymentStatus(str, Enum):
    """
    Local payment status.
    Only PENDING records are polled against the settlement system.
    """
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class NotificationType(str, Enum):
    """Notification kinds written by scheduled jobs."""
    EVENT_REMINDER_H1 = "EVENT_REMINDER_H1"
    EVENT_REMINDER_H0 = "EVENT_REMINDER_H0"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_EXPIRED = "PAYMENT_EXPIRED"
    GENERAL = "GENERAL"

    @staticmethod
    def escalation_level(level: int) -> str:
        """Kind for an escalation to ``level`` (ESCALATION_LEVEL_N)."""
        return f"ESCALATION_LEVEL_{level}"


class ReminderKind(str, Enum):
    """Reminder windows relative to event start."""
    H1 = "H1"  # Calendar day before the event
    H0 = "H0"  # 60-120 minutes before the event

    @property
    def notification_type(self) -> NotificationType:
        if self is ReminderKind.H1:
            return NotificationType.EVENT_REMINDER_H1
        return NotificationType.EVENT_REMINDER_H0


class EventStatus(str, Enum):
    """Event approval status (only the values the scheduler reads)."""
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class RegistrationStatus(str, Enum):
    """Event registration status."""
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class VerificationStatus(str, Enum):
    """Organizer verification status."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
