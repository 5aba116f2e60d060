"""
Escalation State Machine for the Ticketing Scheduler.

Moves unresolved cases up a leveled chain:
OPEN -> ESCALATED(1) -> ESCALATED(2) -> ... until RESOLVED or CLOSED.

Key Features:
- Threshold table is configuration (ordered (level, duration, role) rows)
- At most one level per evaluation, so a late run never skips a level
- Guarded updates: a duplicate run or a second instance cannot double-advance
- Per-case failure isolation
- Intake of stale draft events and pending organizer verifications
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Sequence

from app.core.config import Settings, EscalationLevelConfig
from app.core.database import get_supabase_client, run_query, SupabaseClient
from app.core.exceptions import (
    ConfigurationError,
    EscalationFailureException,
    InvalidTransitionError,
)
from app.models.enums import (
    EscalationEntityType,
    EscalationStatus,
    NotificationType,
    NON_TERMINAL_ESCALATION_STATUSES,
)
from app.models.schemas import EscalationCase, NotificationRequest, ResponsibleParty
from app.services.candidates import (
    fetch_open_escalations,
    fetch_entities_with_open_cases,
    fetch_stale_draft_events,
    fetch_stale_pending_organizers,
    find_responsible_party,
)
from app.services.notifications import NotificationService, build_dedup_key
from app.services.windows import stale_cutoff


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscalationLevel:
    """One step of the chain: escalate to ``role`` once ``after`` has elapsed."""
    level: int
    after: timedelta
    role: str


class EscalationPolicy:
    """
    Ordered threshold table.

    Levels must be contiguous from 1; durations must be positive and
    non-decreasing. Violations raise ConfigurationError at construction.
    """

    def __init__(self, levels: Sequence[EscalationLevel]):
        self.levels: List[EscalationLevel] = sorted(levels, key=lambda l: l.level)
        self._validate()
        self._by_level = {l.level: l for l in self.levels}

    def _validate(self) -> None:
        if not self.levels:
            raise ConfigurationError(
                "Escalation policy needs at least one level",
                config_key="escalation_levels"
            )

        previous: Optional[EscalationLevel] = None
        for expected, level in enumerate(self.levels, start=1):
            if level.level != expected:
                raise ConfigurationError(
                    f"Escalation levels must be contiguous from 1, got {level.level} at position {expected}",
                    config_key="escalation_levels",
                    actual_value=str([l.level for l in self.levels])
                )
            if level.after <= timedelta(0):
                raise ConfigurationError(
                    f"Escalation level {level.level} threshold must be positive",
                    config_key="escalation_levels"
                )
            if previous and level.after < previous.after:
                raise ConfigurationError(
                    f"Escalation level {level.level} threshold is shorter than level {previous.level}",
                    config_key="escalation_levels"
                )
            previous = level

    @classmethod
    def from_config(cls, rows: Sequence[EscalationLevelConfig]) -> "EscalationPolicy":
        return cls([
            EscalationLevel(
                level=row.level,
                after=timedelta(minutes=row.after_minutes),
                role=row.role
            )
            for row in rows
        ])

    @classmethod
    def from_settings(cls, app_settings: Settings) -> "EscalationPolicy":
        return cls.from_config(app_settings.escalation_levels)

    @property
    def max_level(self) -> int:
        return self.levels[-1].level

    def get_level(self, level: int) -> Optional[EscalationLevel]:
        """Config for ``level`` or None past the end of the chain."""
        return self._by_level.get(level)

    def threshold_for(self, level: int) -> Optional[timedelta]:
        config = self.get_level(level)
        return config.after if config else None


class EscalationAction(Enum):
    """What an evaluation decided."""
    ADVANCE = "ADVANCE"
    WAIT = "WAIT"
    MAX_LEVEL = "MAX_LEVEL"
    TERMINAL = "TERMINAL"


@dataclass(frozen=True)
class EscalationDecision:
    """Result of evaluating one case at one instant."""
    action: EscalationAction
    current_level: int
    next_level: Optional[int] = None
    elapsed: Optional[timedelta] = None
    threshold: Optional[timedelta] = None

    @property
    def should_advance(self) -> bool:
        return self.action is EscalationAction.ADVANCE


def _as_utc(moment: datetime) -> datetime:
    # Naive timestamps from the database are UTC
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def evaluate_escalation(
    case: EscalationCase,
    now: datetime,
    policy: EscalationPolicy
) -> EscalationDecision:
    """
    Decide whether ``case`` advances one level at ``now``.

    Elapsed time is measured from the last escalation, or from creation if
    the case has never escalated.

    Raises:
        ValueError: if the case has no timestamp to measure from
    """
    current = case.escalation_level

    if case.status.is_terminal:
        return EscalationDecision(EscalationAction.TERMINAL, current)

    next_level = current + 1
    threshold = policy.threshold_for(next_level)
    if threshold is None:
        return EscalationDecision(EscalationAction.MAX_LEVEL, current)

    anchor = case.escalation_anchor
    if anchor is None:
        raise ValueError(f"Escalation {case.id} has neither created_at nor last_escalated_at")

    elapsed = _as_utc(now) - _as_utc(anchor)

    if elapsed >= threshold:
        return EscalationDecision(
            EscalationAction.ADVANCE,
            current,
            next_level=next_level,
            elapsed=elapsed,
            threshold=threshold
        )

    return EscalationDecision(
        EscalationAction.WAIT,
        current,
        next_level=next_level,
        elapsed=elapsed,
        threshold=threshold
    )


class EscalationEngine:
    """
    Runs the escalation check: intake, evaluation, transition, notification.

    Collaborators are injected so tests can run without a real database.
    """

    def __init__(
        self,
        policy: EscalationPolicy,
        db: Optional[SupabaseClient] = None,
        notifier: Optional[NotificationService] = None,
        intake_age: timedelta = timedelta(hours=24)
    ):
        self.policy = policy
        self._db = db
        self.notifier = notifier or NotificationService(db)
        self.intake_age = intake_age

    @property
    def db(self) -> SupabaseClient:
        if self._db is None:
            self._db = get_supabase_client()
        return self._db

    # ==========================================
    # INTAKE
    # ==========================================

    async def open_stale_cases(self, now: datetime) -> int:
        """
        Open a case for every draft event and pending organizer older than
        the intake age that has no case in progress.

        Returns:
            Number of cases opened
        """
        cutoff = stale_cutoff(now, self.intake_age)
        hours = int(self.intake_age.total_seconds() // 3600)

        sources = [
            (
                EscalationEntityType.EVENT,
                await fetch_stale_draft_events(cutoff, db=self.db),
                f"Auto escalation: Event pending for more than {hours} hours",
            ),
            (
                EscalationEntityType.ORGANIZER,
                await fetch_stale_pending_organizers(cutoff, db=self.db),
                f"Auto escalation: Organizer verification pending for more than {hours} hours",
            ),
        ]

        opened = 0
        for entity_type, rows, reason in sources:
            if not rows:
                continue

            existing = await fetch_entities_with_open_cases([r["id"] for r in rows], db=self.db)

            for row in rows:
                if row["id"] in existing:
                    continue
                try:
                    await self._open_case(entity_type, row["id"], reason, now)
                    opened += 1
                except Exception as e:
                    logger.error(f"Failed to open escalation for {entity_type.value} {row['id']}: {e}")

        if opened:
            logger.info(f"🚨 Opened {opened} escalation cases")
        return opened

    async def _open_case(
        self,
        entity_type: EscalationEntityType,
        entity_id: str,
        reason: str,
        now: datetime
    ) -> Dict[str, Any]:
        response = await run_query(
            self.db.client.table("escalations").insert({
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "status": EscalationStatus.OPEN.value,
                "escalation_level": 0,
                "escalated_by": "SYSTEM",
                "reason": reason,
                "created_at": _as_utc(now).isoformat(),
            }),
            table="escalations",
            operation="insert"
        )
        return response.data[0] if response.data else {}

    # ==========================================
    # TRANSITIONS
    # ==========================================

    async def apply_escalation(
        self,
        case: EscalationCase,
        decision: EscalationDecision,
        now: datetime
    ) -> Optional[Dict[str, Any]]:
        """
        Advance ``case`` to ``decision.next_level``.

        The row update is guarded on the previous level and a non-terminal
        status; if another run got there first nothing is written and None
        is returned. The new responsible party is notified after the update.

        Raises:
            EscalationFailureException: if nobody holds the level's role
        """
        level = self.policy.get_level(decision.next_level)
        recipient = await find_responsible_party(level.role, db=self.db)

        if recipient is None:
            raise EscalationFailureException(
                f"No active user with role {level.role} for escalation level {level.level}",
                escalation_id=case.id,
                escalation_level=level.level,
                role=level.role
            )

        now_utc = _as_utc(now)
        response = await run_query(
            self.db.client.table("escalations").update({
                "status": EscalationStatus.ESCALATED.value,
                "escalation_level": level.level,
                "escalated_to": level.role,
                "responsible_party_id": recipient.id,
                "last_escalated_at": now_utc.isoformat(),
            }).eq("id", case.id).eq(
                "escalation_level", case.escalation_level
            ).in_("status", NON_TERMINAL_ESCALATION_STATUSES),
            table="escalations",
            operation="update"
        )

        if not response.data:
            logger.warning(
                f"Escalation {case.id} changed since it was read "
                f"(expected level {case.escalation_level}); skipping"
            )
            return None

        await run_query(
            lambda: self.db.log_activity(
                action=f"AUTO_ESCALATE_{case.entity_type.value}_{level.role}",
                entity_type="escalation",
                entity_id=case.id,
                metadata={
                    "from_level": case.escalation_level,
                    "to_level": level.level,
                    "from_party_id": case.responsible_party_id,
                    "to_party_id": recipient.id,
                    "elapsed_seconds": decision.elapsed.total_seconds() if decision.elapsed else None,
                }
            ),
            table="activity_logs",
            operation="insert"
        )

        # The transition is committed; a failed notification is logged, not retried
        try:
            await self.notifier.create_notification(
                **self._notification_for(case, level, recipient).model_dump()
            )
        except Exception as e:
            logger.error(f"Escalation {case.id} advanced but notifying {recipient.id} failed: {e}")

        logger.info(
            f"✅ Escalation {case.id} ({case.entity_type.value} {case.entity_id}) "
            f"advanced to level {level.level} -> {level.role}"
        )

        return {
            "escalation_id": case.id,
            "entity_type": case.entity_type.value,
            "entity_id": case.entity_id,
            "from_level": case.escalation_level,
            "to_level": level.level,
            "role": level.role,
            "responsible_party_id": recipient.id,
        }

    def _notification_for(
        self,
        case: EscalationCase,
        level: EscalationLevel,
        recipient: ResponsibleParty
    ) -> NotificationRequest:
        kind = NotificationType.escalation_level(level.level)
        entity = case.entity_type.value.lower()
        return NotificationRequest(
            recipient_id=recipient.id,
            kind=kind,
            title=f"Escalation level {level.level}: {entity} needs attention",
            body=case.reason or f"An {entity} has been unresolved past its escalation threshold",
            payload={
                "escalationId": case.id,
                "entityType": case.entity_type.value,
                "entityId": case.entity_id,
                "level": level.level,
                "previousLevel": case.escalation_level,
                "role": level.role,
            },
            dedup_key=build_dedup_key(recipient.id, kind, case.id, str(level.level))
        )

    # ==========================================
    # RUN
    # ==========================================

    async def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        One scheduled evaluation pass.

        Returns:
            Summary with counts and the list of transitions made
        """
        now = now or datetime.now(timezone.utc)

        opened = await self.open_stale_cases(now)
        cases = await fetch_open_escalations(db=self.db)

        escalated: List[Dict[str, Any]] = []
        waiting = 0
        at_max = 0
        failed = 0

        for case in cases:
            try:
                decision = evaluate_escalation(case, now, self.policy)

                if decision.action is EscalationAction.MAX_LEVEL:
                    at_max += 1
                    continue
                if not decision.should_advance:
                    waiting += 1
                    continue

                transition = await self.apply_escalation(case, decision, now)
                if transition:
                    escalated.append(transition)
            except Exception as e:
                failed += 1
                logger.error(f"❌ Failed to escalate {case.id} ({case.entity_type.value} {case.entity_id}): {e}")

        logger.info(
            f"Escalation check: {len(cases)} open, {len(escalated)} escalated, "
            f"{waiting} waiting, {at_max} at max level, {failed} failed"
        )

        return {
            "opened": opened,
            "evaluated": len(cases),
            "escalated_count": len(escalated),
            "escalated": escalated,
            "waiting": waiting,
            "at_max_level": at_max,
            "failed": failed,
        }

    # ==========================================
    # MANUAL RESOLUTION
    # ==========================================

    async def resolve_escalation(
        self,
        escalation_id: str,
        resolved_by: str,
        resolution: str,
        status: EscalationStatus = EscalationStatus.RESOLVED
    ) -> Dict[str, Any]:
        """
        Move a case to RESOLVED or CLOSED.

        Raises:
            ValueError: if ``status`` is not terminal or the case is missing
            InvalidTransitionError: if the case is already terminal
        """
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")

        response = await run_query(
            self.db.client.table("escalations").update({
                "status": status.value,
                "resolved_by": resolved_by,
                "resolved_at": datetime.now(timezone.utc).isoformat(),
                "resolution": resolution,
            }).eq("id", escalation_id).in_("status", NON_TERMINAL_ESCALATION_STATUSES),
            table="escalations",
            operation="update"
        )

        if response.data:
            logger.info(f"✅ Escalation {escalation_id} {status.value.lower()} by {resolved_by}")
            return response.data[0]

        existing = await run_query(
            self.db.client.table("escalations").select("id, status").eq("id", escalation_id),
            table="escalations",
            operation="select"
        )
        if not existing.data:
            raise ValueError(f"Escalation {escalation_id} not found")

        raise InvalidTransitionError(
            f"Escalation {escalation_id} is already {existing.data[0]['status']}",
            escalation_id=escalation_id,
            current_status=existing.data[0]["status"]
        )

    async def get_escalation_history(
        self,
        entity_type: EscalationEntityType,
        entity_id: str
    ) -> List[Dict[str, Any]]:
        """All cases for an entity, newest first."""
        response = await run_query(
            self.db.client.table("escalations").select("*").eq(
                "entity_type", entity_type.value
            ).eq("entity_id", entity_id).order("created_at", desc=True),
            table="escalations",
            operation="select"
        )
        return response.data or []


def build_escalation_engine(app_settings: Optional[Settings] = None) -> EscalationEngine:
    """Engine wired from configuration."""
    if app_settings is None:
        from app.core.config import settings as app_settings

    return EscalationEngine(
        policy=EscalationPolicy.from_settings(app_settings),
        intake_age=timedelta(hours=app_settings.escalation_intake_hours)
    )


async def run_escalation_check(
    now: Optional[datetime] = None,
    engine: Optional[EscalationEngine] = None
) -> Dict[str, Any]:
    """Run one escalation pass with the configured engine."""
    engine = engine or build_escalation_engine()
    return await engine.run(now)
