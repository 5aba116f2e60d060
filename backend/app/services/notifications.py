"""
Notification Service for the Ticketing Scheduler.

Writes in-app notification records for scheduled jobs. Downstream delivery
(email, push) reads these rows and is not handled here.

Provides:
- Dedup keys so a rerun for the same occurrence never notifies twice
- Per-recipient failure isolation during fan-out
- Retention cleanup
"""
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Iterable

from app.core.database import (
    get_supabase_client,
    run_query,
    is_unique_violation,
    SupabaseClient,
)
from app.core.exceptions import NotificationError
from app.models.enums import ReminderKind
from app.models.schemas import Event, Notification, NotificationRequest, ReminderCandidate, Registration
from app.services.windows import TimeWindow


# Configure logging
logger = logging.getLogger(__name__)


@dataclass
class FanOutResult:
    """Outcome of a fan-out batch."""
    created: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def merge(self, other: "FanOutResult") -> None:
        self.created += other.created
        self.skipped += other.skipped
        self.failed += other.failed
        self.errors.extend(other.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "skipped": self.skipped,
            "failed": self.failed,
        }


def build_dedup_key(
    recipient_id: str,
    kind: str,
    entity_id: str,
    window: Optional[str] = None
) -> str:
    """
    Uniqueness key for (recipient, kind, referenced entity, window).

    The notifications table carries a unique index on ``dedup_key``.
    """
    raw = "|".join([recipient_id, kind, entity_id, window or ""])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# ==========================================
# MESSAGE TEMPLATES
# ==========================================

class ReminderTemplates:
    """Reminder titles and bodies."""

    @staticmethod
    def render(kind: ReminderKind, title: str, event_time: str, location: str) -> tuple[str, str]:
        if kind is ReminderKind.H1:
            return (
                "Event Reminder - Tomorrow",
                f'Don\'t forget! "{title}" starts tomorrow at {event_time} in {location}'
            )
        return (
            "Event Starting Soon",
            f'"{title}" starts in 1 hour at {event_time} in {location}'
        )


def reminder_occurrence(kind: ReminderKind, event: Event, window: TimeWindow) -> str:
    """
    The occurrence a reminder is about, independent of when the job ran.

    H-1 is keyed on the target calendar day, H-0 on the event start, so a
    late or repeated run inside the same occurrence reuses the same key.
    """
    if kind is ReminderKind.H1:
        return window.start.date().isoformat()

    starts_at = event.event_date
    if starts_at.tzinfo is None:
        starts_at = starts_at.replace(tzinfo=timezone.utc)
    return starts_at.astimezone(timezone.utc).isoformat()


def build_reminder_requests(
    candidate: ReminderCandidate,
    kind: ReminderKind,
    window: TimeWindow
) -> List[NotificationRequest]:
    """One reminder request per active registration of the candidate event."""
    event = candidate.event
    title, body = ReminderTemplates.render(
        kind,
        event.title,
        event.event_time or "",
        event.location or ""
    )
    notification_type = kind.notification_type.value
    occurrence = reminder_occurrence(kind, event, window)

    requests = []
    for registration in candidate.registrations:
        requests.append(NotificationRequest(
            recipient_id=registration.participant_id,
            kind=notification_type,
            title=title,
            body=body,
            payload=_reminder_payload(candidate, registration),
            dedup_key=build_dedup_key(
                registration.participant_id,
                notification_type,
                event.id,
                occurrence
            )
        ))
    return requests


def _reminder_payload(candidate: ReminderCandidate, registration: Registration) -> Dict[str, Any]:
    event = candidate.event
    return {
        "eventId": event.id,
        "eventTitle": event.title,
        "eventDate": event.event_date.isoformat(),
        "eventTime": event.event_time,
        "location": event.location,
        "registrationId": registration.id,
    }


# ==========================================
# NOTIFICATION SERVICE
# ==========================================

class NotificationService:
    """
    Creates notification rows with create-or-skip semantics.

    A request carrying a dedup key is skipped when a row with the same key
    already exists, or when the insert hits the unique index.
    """

    def __init__(self, db: Optional[SupabaseClient] = None):
        self._db = db

    @property
    def db(self) -> SupabaseClient:
        if self._db is None:
            self._db = get_supabase_client()
        return self._db

    async def create_notification(
        self,
        recipient_id: str,
        kind: str,
        title: str,
        body: str,
        payload: Optional[Dict[str, Any]] = None,
        dedup_key: Optional[str] = None
    ) -> Optional[Notification]:
        """
        Create a notification for ``recipient_id``.

        Returns:
            The created Notification, or None if it was a duplicate

        Raises:
            NotificationError: if the write fails
        """
        if not recipient_id:
            raise NotificationError(
                "Notification has no recipient",
                recipient_id="",
                notification_type=kind
            )

        if dedup_key and await self._exists(dedup_key):
            logger.debug(f"Skipping duplicate {kind} for user {recipient_id}")
            return None

        now = datetime.now(timezone.utc).isoformat()
        row = {
            "user_id": recipient_id,
            "type": kind,
            "title": title,
            "message": body,
            "data": payload or {},
            "dedup_key": dedup_key,
            "sent_at": now,
            "is_read": False,
        }

        try:
            response = await run_query(
                self.db.client.table("notifications").insert(row),
                table="notifications",
                operation="insert"
            )
        except Exception as e:
            if is_unique_violation(e):
                logger.debug(f"Duplicate {kind} for user {recipient_id} rejected by unique index")
                return None
            raise NotificationError(
                f"Failed to create {kind} notification",
                recipient_id=recipient_id,
                notification_type=kind,
                original_error=str(e)
            ) from e

        logger.info(f"Notification created: {kind} for user {recipient_id}")
        created = response.data[0] if response.data else {**row, "id": ""}
        return Notification(**created)

    async def _exists(self, dedup_key: str) -> bool:
        response = await run_query(
            self.db.client.table("notifications").select("id").eq(
                "dedup_key", dedup_key
            ).limit(1),
            table="notifications",
            operation="select"
        )
        return bool(response.data)

    async def fan_out(self, requests: Iterable[NotificationRequest]) -> FanOutResult:
        """
        Create one notification per request, isolating failures.

        A failing recipient is logged and counted; the loop continues.
        """
        result = FanOutResult()

        for request in requests:
            try:
                notification = await self.create_notification(
                    recipient_id=request.recipient_id,
                    kind=request.kind,
                    title=request.title,
                    body=request.body,
                    payload=request.payload,
                    dedup_key=request.dedup_key
                )
            except Exception as e:
                logger.error(
                    f"Error creating {request.kind} for user {request.recipient_id}: {e}"
                )
                result.failed += 1
                result.errors.append({
                    "recipient_id": request.recipient_id,
                    "kind": request.kind,
                    "error": str(e),
                })
                continue

            if notification is None:
                result.skipped += 1
            else:
                result.created += 1

        return result

    async def delete_old_notifications(self, cutoff: datetime) -> int:
        """Delete notifications created before ``cutoff``. Returns the count."""
        response = await run_query(
            self.db.client.table("notifications").delete().lt(
                "created_at", cutoff.isoformat()
            ),
            table="notifications",
            operation="delete"
        )
        return len(response.data or [])
