"""
Candidate Fetcher for scheduled jobs.

Loads the rows a job invocation acts on, scoped by a time window and a
lifecycle predicate. Results are ordered by their time field then id so
runs are deterministic. An empty result is not an error.
"""
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Type, TypeVar

from pydantic import BaseModel, ValidationError

from app.core.database import get_supabase_client, run_query, SupabaseClient
from app.models.enums import (
    EventStatus,
    PaymentStatus,
    RegistrationStatus,
    VerificationStatus,
    NON_TERMINAL_ESCALATION_STATUSES,
)
from app.models.schemas import (
    Event,
    Registration,
    ReminderCandidate,
    EscalationCase,
    PaymentRecord,
    ResponsibleParty,
)
from app.services.windows import TimeWindow


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _parse_rows(model: Type[ModelT], rows: Optional[List[Dict[str, Any]]], label: str) -> List[ModelT]:
    """
    Parse rows one by one. A malformed row is logged with its id and
    skipped; it never aborts the batch.
    """
    parsed = []
    for row in rows or []:
        try:
            parsed.append(model(**row))
        except ValidationError as e:
            logger.error(
                f"⚠️ Skipping malformed {label} {row.get('id')}: "
                f"{e.error_count()} validation error(s): {e.errors()[0]['msg']}"
            )
    return parsed


async def fetch_reminder_candidates(
    window: TimeWindow,
    db: Optional[SupabaseClient] = None
) -> List[ReminderCandidate]:
    """
    Events starting inside ``window`` that are published and approved,
    each with its ACTIVE registrations.

    Args:
        window: Half-open interval on ``event_date``
        db: Optional client override

    Returns:
        List of ReminderCandidate ordered by event_date, id
    """
    db = db or get_supabase_client()

    response = await run_query(
        db.client.table("events").select(
            "id, title, event_date, event_time, location, is_published, status, created_at"
        ).gte(
            "event_date", window.start.isoformat()
        ).lt(
            "event_date", window.end.isoformat()
        ).eq("is_published", True).eq(
            "status", EventStatus.APPROVED.value
        ).order("event_date").order("id"),
        table="events",
        operation="select"
    )

    events = _parse_rows(Event, response.data, "event")
    if not events:
        logger.info(f"No events between {window.start.isoformat()} and {window.end.isoformat()}")
        return []

    registrations = await fetch_active_registrations([e.id for e in events], db=db)

    return [
        ReminderCandidate(event=event, registrations=registrations.get(event.id, []))
        for event in events
    ]


async def fetch_active_registrations(
    event_ids: List[str],
    db: Optional[SupabaseClient] = None
) -> Dict[str, List[Registration]]:
    """ACTIVE registrations for the given events, grouped by event id."""
    if not event_ids:
        return {}

    db = db or get_supabase_client()

    response = await run_query(
        db.client.table("event_registrations").select(
            "id, event_id, participant_id, status, payment_id"
        ).in_("event_id", event_ids).eq(
            "status", RegistrationStatus.ACTIVE.value
        ).order("id"),
        table="event_registrations",
        operation="select"
    )

    grouped: Dict[str, List[Registration]] = {}
    for registration in _parse_rows(Registration, response.data, "registration"):
        grouped.setdefault(registration.event_id, []).append(registration)
    return grouped


async def fetch_open_escalations(db: Optional[SupabaseClient] = None) -> List[EscalationCase]:
    """Escalation cases still OPEN or ESCALATED."""
    db = db or get_supabase_client()

    response = await run_query(
        db.client.table("escalations").select("*").in_(
            "status", NON_TERMINAL_ESCALATION_STATUSES
        ).order("created_at").order("id"),
        table="escalations",
        operation="select"
    )

    cases = _parse_rows(EscalationCase, response.data, "escalation case")
    if not cases:
        logger.debug("No open escalation cases")
    return cases


async def fetch_entities_with_open_cases(
    entity_ids: List[str],
    db: Optional[SupabaseClient] = None
) -> set:
    """Entity ids that already have a non-terminal escalation case."""
    if not entity_ids:
        return set()

    db = db or get_supabase_client()

    response = await run_query(
        db.client.table("escalations").select("entity_id").in_(
            "entity_id", entity_ids
        ).in_("status", NON_TERMINAL_ESCALATION_STATUSES),
        table="escalations",
        operation="select"
    )
    return {row["entity_id"] for row in (response.data or [])}


async def fetch_stale_draft_events(
    cutoff: datetime,
    db: Optional[SupabaseClient] = None
) -> List[Dict]:
    """Events still in DRAFT that were created before ``cutoff``."""
    db = db or get_supabase_client()

    response = await run_query(
        db.client.table("events").select("id, title, created_by, created_at").eq(
            "status", EventStatus.DRAFT.value
        ).lt("created_at", cutoff.isoformat()).order("created_at").order("id"),
        table="events",
        operation="select"
    )
    return response.data or []


async def fetch_stale_pending_organizers(
    cutoff: datetime,
    db: Optional[SupabaseClient] = None
) -> List[Dict]:
    """Organizers whose verification has been PENDING since before ``cutoff``."""
    db = db or get_supabase_client()

    response = await run_query(
        db.client.table("users").select("id, full_name, email, created_at").eq(
            "role", "ORGANIZER"
        ).eq(
            "verification_status", VerificationStatus.PENDING.value
        ).lt("created_at", cutoff.isoformat()).order("created_at").order("id"),
        table="users",
        operation="select"
    )
    return response.data or []


async def fetch_pending_payments(
    limit: int = 200,
    db: Optional[SupabaseClient] = None
) -> List[PaymentRecord]:
    """
    PENDING payments, least recently checked first.

    Never-checked records come first, then the oldest ``last_checked_at``,
    so a record that keeps failing rotates to the back of the queue.
    """
    db = db or get_supabase_client()

    response = await run_query(
        db.client.table("payments").select("*").eq(
            "payment_status", PaymentStatus.PENDING.value
        ).order("last_checked_at", nullsfirst=True).order(
            "created_at"
        ).order("id").limit(limit),
        table="payments",
        operation="select"
    )

    payments = _parse_rows(PaymentRecord, response.data, "payment")
    if not payments:
        logger.debug("No pending payments to check")
    return payments


async def find_responsible_party(
    role: str,
    db: Optional[SupabaseClient] = None
) -> Optional[ResponsibleParty]:
    """
    First active user holding ``role``.

    Ordered by created_at then id so the same person owns a level across runs.
    """
    db = db or get_supabase_client()

    response = await run_query(
        db.client.table("users").select("id, full_name, email, role").eq(
            "role", role
        ).eq("is_active", True).order("created_at").order("id").limit(1),
        table="users",
        operation="select"
    )

    parties = _parse_rows(ResponsibleParty, response.data, "user")
    return parties[0] if parties else None
