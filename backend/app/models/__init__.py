# Data models - Enums and Pydantic Schemas
from .enums import (
    EscalationStatus,
    EscalationEntityType,
    PaymentStatus,
    NotificationType,
    ReminderKind,
)
from .schemas import (
    Event,
    Registration,
    ReminderCandidate,
    EscalationCase,
    ResponsibleParty,
    PaymentRecord,
    SettlementStatus,
    NotificationRequest,
    Notification,
)

__all__ = [
    # Enums
    "EscalationStatus",
    "EscalationEntityType",
    "PaymentStatus",
    "NotificationType",
    "ReminderKind",
    # Reminder Schemas
    "Event",
    "Registration",
    "ReminderCandidate",
    # Escalation Schemas
    "EscalationCase",
    "ResponsibleParty",
    # Payment Schemas
    "PaymentRecord",
    "SettlementStatus",
    # Notification Schemas
    "NotificationRequest",
    "Notification",
]
