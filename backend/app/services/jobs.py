"""
Scheduled job bodies for the Ticketing Scheduler.

Each job is a plain coroutine that takes an optional ``now`` (tests pass a
fixed instant) and returns a summary dict. Jobs raise on task-level failure;
the scheduler's runner catches, logs and counts it.

Jobs:
- h1_reminder: participants of events starting tomorrow (daily 09:00)
- h0_reminder: participants of events starting in 60-120 minutes (hourly)
- notification_cleanup: delete notifications older than 30 days (daily 02:00)
- auto_escalation: open and advance escalation cases (hourly)
- payment_monitor: reconcile pending payments (every 2 minutes)
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable, Awaitable, List

from app.core.config import Settings, settings
from app.core.database import SupabaseClient
from app.models.enums import ReminderKind
from app.services.candidates import fetch_reminder_candidates
from app.services.escalation import run_escalation_check
from app.services.notifications import (
    NotificationService,
    FanOutResult,
    build_reminder_requests,
)
from app.services.payment_monitor import run_payment_monitor
from app.services.windows import reminder_window, cleanup_cutoff


logger = logging.getLogger(__name__)


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


# ==========================================
# EVENT REMINDERS
# ==========================================

async def send_event_reminders(
    kind: ReminderKind,
    now: Optional[datetime] = None,
    db: Optional[SupabaseClient] = None,
    notifier: Optional[NotificationService] = None,
    app_settings: Optional[Settings] = None
) -> Dict[str, Any]:
    """
    Fan out reminders for every event inside the ``kind`` window.

    A rerun for the same window creates nothing new: each notification
    carries a dedup key over (participant, kind, event, window).
    """
    app_settings = app_settings or settings
    notifier = notifier or NotificationService(db)
    now = _now(now)

    window = reminder_window(
        kind,
        now,
        tz=app_settings.scheduler_timezone,
        h0_start_minutes=app_settings.h0_window_start_minutes,
        h0_end_minutes=app_settings.h0_window_end_minutes
    )
    logger.info(
        f"🔔 {kind.notification_type.value}: events in "
        f"[{window.start.isoformat()}, {window.end.isoformat()})"
    )

    candidates = await fetch_reminder_candidates(window, db=db)

    result = FanOutResult()
    for candidate in candidates:
        requests = build_reminder_requests(candidate, kind, window)
        if not requests:
            logger.debug(f"Event {candidate.event.id} has no active registrations")
            continue

        event_result = await notifier.fan_out(requests)
        result.merge(event_result)
        logger.info(
            f"Sent {event_result.created} {kind.value} reminders for event "
            f"'{candidate.event.title}' ({event_result.skipped} already sent)"
        )

    return {
        "window_start": window.start.isoformat(),
        "window_end": window.end.isoformat(),
        "events": len(candidates),
        **result.to_dict(),
    }


async def h1_reminder_job(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Reminders for events starting tomorrow."""
    return await send_event_reminders(ReminderKind.H1, now)


async def h0_reminder_job(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Reminders for events starting within the next two hours."""
    return await send_event_reminders(ReminderKind.H0, now)


# ==========================================
# CLEANUP
# ==========================================

async def cleanup_old_notifications(
    now: Optional[datetime] = None,
    days: Optional[int] = None,
    notifier: Optional[NotificationService] = None
) -> Dict[str, Any]:
    """Delete notifications older than the retention period."""
    days = days if days is not None else settings.notification_retention_days
    notifier = notifier or NotificationService()
    cutoff = cleanup_cutoff(_now(now), days=days, tz=settings.scheduler_timezone)

    deleted = await notifier.delete_old_notifications(cutoff)
    logger.info(f"🧹 Deleted {deleted} notifications older than {days} days")

    return {"deleted": deleted, "cutoff": cutoff.isoformat()}


async def notification_cleanup_job(now: Optional[datetime] = None) -> Dict[str, Any]:
    return await cleanup_old_notifications(now)


# ==========================================
# ESCALATION / PAYMENTS
# ==========================================

async def auto_escalation_job(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Open stale cases and advance overdue ones."""
    return await run_escalation_check(_now(now))


async def payment_monitor_job(now: Optional[datetime] = None) -> Dict[str, Any]:
    """Reconcile pending payments with the settlement system."""
    return await run_payment_monitor(_now(now))


# ==========================================
# REGISTRY
# ==========================================

@dataclass(frozen=True)
class JobDefinition:
    """A production job and the setting holding its schedule."""
    name: str
    schedule_setting: str
    handler: Callable[..., Awaitable[Dict[str, Any]]]
    description: str


JOB_DEFINITIONS: List[JobDefinition] = [
    JobDefinition(
        "h1_reminder",
        "h1_reminder_schedule",
        h1_reminder_job,
        "H-1 event reminders for tomorrow's events"
    ),
    JobDefinition(
        "h0_reminder",
        "h0_reminder_schedule",
        h0_reminder_job,
        "H-0 event reminders for events starting soon"
    ),
    JobDefinition(
        "notification_cleanup",
        "notification_cleanup_schedule",
        notification_cleanup_job,
        "Delete old notifications"
    ),
    JobDefinition(
        "auto_escalation",
        "auto_escalation_schedule",
        auto_escalation_job,
        "Escalate unresolved events and organizer verifications"
    ),
    JobDefinition(
        "payment_monitor",
        "payment_monitor_schedule",
        payment_monitor_job,
        "Reconcile pending payments with the settlement system"
    ),
]
