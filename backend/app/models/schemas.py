"""
Pydantic schemas for the rows scheduled jobs read and write.
Covers: Events, Registrations, Escalation cases, Payments, Notifications.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Any

from pydantic import BaseModel, Field

from .enums import (
    EscalationEntityType,
    EscalationStatus,
    PaymentStatus,
    RegistrationStatus,
)


# ==========================================
# BASE SCHEMAS
# ==========================================

class TimestampMixin(BaseModel):
    """Mixin for created_at timestamp."""
    created_at: Optional[datetime] = None


# ==========================================
# EVENT / REGISTRATION SCHEMAS
# ==========================================

class Registration(BaseModel):
    """An attendee's registration for an event."""
    id: str
    event_id: str
    participant_id: str
    status: RegistrationStatus = RegistrationStatus.ACTIVE
    payment_id: Optional[str] = None


class Event(TimestampMixin):
    """Event fields needed for reminders and escalation intake."""
    id: str
    title: str
    event_date: datetime
    event_time: Optional[str] = None
    location: Optional[str] = None
    is_published: bool = False
    status: str
    created_by: Optional[str] = None


class ReminderCandidate(BaseModel):
    """An event inside a reminder window with its active registrations."""
    event: Event
    registrations: list[Registration] = Field(default_factory=list)


# ==========================================
# ESCALATION SCHEMAS
# ==========================================

class EscalationCase(TimestampMixin):
    """
    An unresolved item moving through the escalation chain.

    escalation_level starts at 0 and only increases while the case is
    OPEN or ESCALATED.
    """
    id: str
    entity_type: EscalationEntityType
    entity_id: str
    status: EscalationStatus = EscalationStatus.OPEN
    escalation_level: int = Field(0, ge=0)
    escalated_to: Optional[str] = None
    responsible_party_id: Optional[str] = None
    last_escalated_at: Optional[datetime] = None
    reason: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None

    @property
    def escalation_anchor(self) -> Optional[datetime]:
        """Timestamp elapsed time is measured from."""
        return self.last_escalated_at or self.created_at


class ResponsibleParty(BaseModel):
    """User who owns an escalation level."""
    id: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    role: str


# ==========================================
# PAYMENT SCHEMAS
# ==========================================

class PaymentRecord(TimestampMixin):
    """Local record of a payment awaiting external settlement."""
    id: str
    payment_reference: str
    user_id: Optional[str] = None
    event_id: Optional[str] = None
    amount: Decimal = Field(Decimal("0"), ge=0)
    payment_status: PaymentStatus = PaymentStatus.PENDING
    last_checked_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class SettlementStatus(BaseModel):
    """Status reported by the settlement system, mapped to local terms."""
    status: PaymentStatus
    raw_status: str
    confirmed_amount: Optional[Decimal] = None


# ==========================================
# NOTIFICATION SCHEMAS
# ==========================================

class NotificationRequest(BaseModel):
    """One (recipient, kind) delivery produced by a job."""
    recipient_id: str
    kind: str
    title: str
    body: str
    payload: dict[str, Any] = Field(default_factory=dict)
    dedup_key: Optional[str] = None


class Notification(TimestampMixin):
    """Notification row as stored in the database."""
    id: str
    user_id: str
    type: str
    title: str
    message: str
    data: Optional[dict[str, Any]] = None
    dedup_key: Optional[str] = None
    sent_at: Optional[datetime] = None
    is_read: bool = False
