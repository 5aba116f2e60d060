"""
Background Job Scheduler for the Ticketing Scheduler.

Handles scheduled tasks using APScheduler:
- H-1 event reminders (daily 09:00)
- H-0 event reminders (hourly)
- Notification cleanup (daily 02:00)
- Auto escalation (hourly)
- Payment monitor (every 2 minutes)

Tasks live in an explicit registry. Registering a task never starts a
timer; ``start()`` does. The runner guarantees one in-flight execution per
task: a trigger that arrives while the task is still running is dropped.

Job failure monitoring:
- Failures are counted per task over a rolling 24h window
- At the threshold the operator is alerted; the task keeps its schedule
"""
import logging
import re
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Callable, Dict, Any, List, Awaitable, Union

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.executors.asyncio import AsyncIOExecutor

from app.core.config import Settings
from app.core.exceptions import ConfigurationError, TaskNotFoundError
from app.models.enums import NotificationType


# Configure logging
logger = logging.getLogger(__name__)


TaskHandler = Callable[[], Awaitable[Any]]

_INTERVAL_PATTERN = re.compile(r"^every\s+(\d+)\s*([smhd])$", re.IGNORECASE)
_INTERVAL_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}


# ==========================================
# SCHEDULE PARSING
# ==========================================

@dataclass(frozen=True)
class ScheduleSpec:
    """A parsed schedule: either a crontab or a fixed interval."""
    expression: str
    kind: str  # "cron" or "interval"
    trigger: BaseTrigger
    interval: Optional[timedelta] = None


def parse_schedule(expression: str, tz: str = "UTC") -> ScheduleSpec:
    """
    Parse a 5-field crontab (``"*/2 * * * *"``) or an interval shorthand
    (``"every 30s"``, ``"every 15m"``, ``"every 2h"``, ``"every 1d"``).

    Raises:
        ConfigurationError: if the expression is not valid
    """
    text = (expression or "").strip()
    if not text:
        raise ConfigurationError(
            "Empty schedule expression",
            config_key="schedule",
            expected_type="crontab or 'every <n><s|m|h|d>'"
        )

    match = _INTERVAL_PATTERN.match(text)
    if match:
        amount = int(match.group(1))
        if amount <= 0:
            raise ConfigurationError(
                f"Interval must be positive: {text}",
                config_key="schedule",
                actual_value=text
            )
        interval = timedelta(**{_INTERVAL_UNITS[match.group(2).lower()]: amount})
        return ScheduleSpec(
            expression=text,
            kind="interval",
            trigger=IntervalTrigger(seconds=int(interval.total_seconds()), timezone=tz),
            interval=interval
        )

    if len(text.split()) != 5:
        raise ConfigurationError(
            f"Invalid schedule expression: {text}",
            config_key="schedule",
            expected_type="5-field crontab or 'every <n><s|m|h|d>'",
            actual_value=text
        )

    try:
        trigger = CronTrigger.from_crontab(text, timezone=tz)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(
            f"Invalid schedule expression: {text} ({e})",
            config_key="schedule",
            expected_type="5-field crontab",
            actual_value=text
        ) from e

    return ScheduleSpec(expression=text, kind="cron", trigger=trigger)


# ==========================================
# TASK REGISTRY
# ==========================================

@dataclass
class ScheduledTask:
    """A named unit of recurring work. Mutated only by the scheduler."""
    name: str
    schedule: ScheduleSpec
    handler: TaskHandler
    description: str = ""
    enabled: bool = True
    last_run_at: Optional[datetime] = None
    last_status: Optional[str] = None  # success | failed | skipped
    last_error: Optional[str] = None
    last_duration_seconds: Optional[float] = None
    is_running: bool = False
    run_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "schedule": self.schedule.expression,
            "enabled": self.enabled,
            "is_running": self.is_running,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_status": self.last_status,
            "last_error": self.last_error,
            "last_duration_seconds": self.last_duration_seconds,
            "run_count": self.run_count,
        }


@dataclass
class JobRunResult:
    """Outcome of one ``run_task`` call."""
    task: str
    status: str  # success | failed | skipped
    started_at: datetime
    duration_seconds: float = 0.0
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": self.task,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "result": self.result,
            "error": self.error,
        }


# ==========================================
# JOB FAILURE MONITOR
# ==========================================

class JobFailureMonitor:
    """
    Monitor job failures and alert when threshold exceeded.

    Prevents silent scheduler failures (e.g. reminders not going out for
    days). Failing tasks are never paused; the alert is the only action.
    """

    def __init__(
        self,
        failure_threshold: int = 2,
        window: timedelta = timedelta(hours=24),
        notifier: Any = None,
        alert_recipient_id: Optional[str] = None
    ):
        self.failure_threshold = failure_threshold
        self.window = window
        self.notifier = notifier
        self.alert_recipient_id = alert_recipient_id
        self.failed_jobs: Dict[str, List[datetime]] = defaultdict(list)

    async def record_success(self, job_id: str) -> None:
        """Record job success - reset failure count."""
        self.failed_jobs.pop(job_id, None)

    async def record_failure(self, job_id: str, error: str) -> bool:
        """
        Record job failure and alert if threshold reached.

        Returns True if an alert was raised.
        """
        now = datetime.now(timezone.utc)

        # Keep only failures inside the rolling window
        cutoff = now - self.window
        failures = [t for t in self.failed_jobs[job_id] if t > cutoff]
        failures.append(now)
        self.failed_jobs[job_id] = failures

        if len(failures) >= self.failure_threshold:
            await self._send_critical_alert(job_id, len(failures), error)
            return True

        return False

    async def _send_critical_alert(self, job_id: str, failure_count: int, error: str) -> None:
        """Log CRITICAL and notify the operator when one is configured."""
        logger.critical(
            f"CRITICAL: Job {job_id} failed {failure_count} times in the last "
            f"{self.window}. Last error: {error}"
        )

        if not (self.notifier and self.alert_recipient_id):
            return

        try:
            await self.notifier.create_notification(
                recipient_id=self.alert_recipient_id,
                kind=NotificationType.GENERAL.value,
                title=f"🚨 Scheduler job '{job_id}' failed {failure_count} times",
                body=f"The background job '{job_id}' keeps failing. Last error: {error}",
                payload={
                    "job": job_id,
                    "failureCount": failure_count,
                    "lastError": error,
                    "time": datetime.now(timezone.utc).isoformat(),
                }
            )
        except Exception as e:
            logger.error(f"Failed to send critical alert: {e}")

    def get_status(self) -> Dict[str, Any]:
        """Get current failure status for all jobs."""
        return {
            job_id: {
                "failure_count": len(failures),
                "last_failure": failures[-1].isoformat() if failures else None,
            }
            for job_id, failures in self.failed_jobs.items()
            if failures
        }


# ==========================================
# SCHEDULER
# ==========================================

class JobScheduler:
    """
    Background job scheduler.

    Owns the task registry and, once started, an APScheduler instance that
    fires ``run_task(name)`` for each enabled task.
    """

    def __init__(
        self,
        timezone: str = "UTC",
        misfire_grace_seconds: int = 300,
        monitor: Optional[JobFailureMonitor] = None
    ):
        self.timezone = timezone
        self.misfire_grace_seconds = misfire_grace_seconds
        self.monitor = monitor or JobFailureMonitor()
        self.tasks: Dict[str, ScheduledTask] = {}
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.is_running = False

    # ------------------------------------------
    # Registry
    # ------------------------------------------

    def register(
        self,
        name: str,
        schedule: Union[str, ScheduleSpec],
        handler: TaskHandler,
        description: str = "",
        enabled: bool = True
    ) -> ScheduledTask:
        """
        Add a task to the registry.

        Raises:
            ConfigurationError: on a duplicate name or invalid schedule
        """
        if name in self.tasks:
            raise ConfigurationError(
                f"Task already registered: {name}",
                config_key="task_name",
                actual_value=name
            )

        spec = schedule if isinstance(schedule, ScheduleSpec) else parse_schedule(schedule, self.timezone)
        task = ScheduledTask(
            name=name,
            schedule=spec,
            handler=handler,
            description=description,
            enabled=enabled
        )
        self.tasks[name] = task
        logger.debug(f"Registered task {name} ({spec.expression})")
        return task

    def get_task(self, name: str) -> ScheduledTask:
        task = self.tasks.get(name)
        if task is None:
            raise TaskNotFoundError(name)
        return task

    # ------------------------------------------
    # Runner
    # ------------------------------------------

    async def run_task(self, name: str) -> JobRunResult:
        """
        Execute one task invocation.

        Never raises for handler errors: they are logged, recorded on the
        task and reported to the failure monitor.
        """
        task = self.get_task(name)
        started_at = datetime.now(timezone.utc)

        if task.is_running:
            logger.warning(
                f"⏭️ Task {name} is still running; dropping this trigger",
                extra={"task": name, "status": "skipped"}
            )
            return JobRunResult(task=name, status="skipped", started_at=started_at)

        task.is_running = True
        task.last_run_at = started_at
        task.run_count += 1
        start = time.monotonic()

        logger.info(f"▶️ Starting task {name}", extra={"task": name})

        try:
            result = await task.handler()
        except Exception as e:
            elapsed = time.monotonic() - start
            task.last_status = "failed"
            task.last_error = f"{e.__class__.__name__}: {e}"
            task.last_duration_seconds = elapsed

            logger.error(
                f"❌ Task {name} failed after {elapsed:.2f}s: {task.last_error}",
                exc_info=True,
                extra={"task": name, "status": "failed", "duration_seconds": elapsed}
            )
            await self.monitor.record_failure(name, task.last_error)

            return JobRunResult(
                task=name,
                status="failed",
                started_at=started_at,
                duration_seconds=elapsed,
                error=task.last_error
            )
        finally:
            task.is_running = False

        elapsed = time.monotonic() - start
        task.last_status = "success"
        task.last_error = None
        task.last_duration_seconds = elapsed

        logger.info(
            f"✅ Task {name} completed in {elapsed:.2f}s: {result}",
            extra={"task": name, "status": "success", "duration_seconds": elapsed}
        )
        await self.monitor.record_success(name)

        return JobRunResult(
            task=name,
            status="success",
            started_at=started_at,
            duration_seconds=elapsed,
            result=result
        )

    # ------------------------------------------
    # Lifecycle
    # ------------------------------------------

    def create_scheduler(self) -> AsyncIOScheduler:
        """Create and configure the APScheduler instance."""
        jobstores = {
            'default': MemoryJobStore()
        }

        executors = {
            'default': AsyncIOExecutor()
        }

        job_defaults = {
            'coalesce': True,  # Combine missed runs into one
            'max_instances': 1,  # Only one instance of each job at a time
            'misfire_grace_time': self.misfire_grace_seconds
        }

        return AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone=self.timezone
        )

    def _add_job(self, task: ScheduledTask) -> None:
        self.scheduler.add_job(
            self.run_task,
            task.schedule.trigger,
            args=[task.name],
            id=task.name,
            name=task.description or task.name,
            replace_existing=True
        )

    def start(self) -> None:
        """Start timers for every enabled task. Must run inside an event loop."""
        if self.is_running:
            logger.warning("Scheduler is already running")
            return

        self.scheduler = self.create_scheduler()

        for task in self.tasks.values():
            if task.enabled:
                self._add_job(task)
            else:
                logger.info(f"⏸️ Task {task.name} is disabled")

        self.scheduler.start()
        self.is_running = True
        logger.info("🚀 Job scheduler started successfully")

        for job in self.scheduler.get_jobs():
            logger.info(f"  - {job.id}: Next run at {job.next_run_time}")

    def stop(self) -> None:
        """Stop the scheduler. In-flight runs are not awaited."""
        if self.scheduler and self.is_running:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("🛑 Job scheduler stopped")

    def start_task(self, name: str) -> bool:
        """Enable (or resume) a task. Returns False if it was already active."""
        task = self.get_task(name)
        job = self.scheduler.get_job(name) if self.scheduler else None

        if task.enabled and (not self.is_running or (job and job.next_run_time)):
            logger.warning(f"Task {name} is already active")
            return False

        task.enabled = True
        if self.is_running:
            if job:
                self.scheduler.resume_job(name)
            else:
                self._add_job(task)
        logger.info(f"Started task: {name}")
        return True

    def stop_task(self, name: str) -> bool:
        """Disable a task. Returns False if it was already stopped."""
        task = self.get_task(name)
        if not task.enabled:
            logger.warning(f"Task {name} is already stopped")
            return False

        task.enabled = False
        if self.scheduler and self.scheduler.get_job(name):
            self.scheduler.pause_job(name)
        logger.info(f"Stopped task: {name}")
        return True

    async def trigger_task(self, name: str) -> JobRunResult:
        """Run a task now. Still subject to the overlap guard."""
        self.get_task(name)
        logger.info(f"Manually triggered task: {name}")
        return await self.run_task(name)

    # ------------------------------------------
    # Status
    # ------------------------------------------

    def get_jobs_status(self) -> List[Dict[str, Any]]:
        """Status of every registered task."""
        statuses = []
        for task in self.tasks.values():
            status = task.to_dict()
            job = self.scheduler.get_job(task.name) if self.scheduler else None
            status["next_run_time"] = (
                job.next_run_time.isoformat() if job and job.next_run_time else None
            )
            statuses.append(status)
        return statuses

    def get_health_status(self) -> Dict[str, Any]:
        """
        Scheduler health for monitoring.

        "degraded" when any task has failures in the current window.
        """
        failures = self.monitor.get_status()

        return {
            "status": "degraded" if failures else "healthy",
            "is_running": self.is_running,
            "jobs": self.get_jobs_status(),
            "failures": failures,
        }


# ==========================================
# STARTUP REGISTRY
# ==========================================

def build_scheduler(app_settings: Optional[Settings] = None) -> JobScheduler:
    """
    Build a scheduler with the production jobs registered from configuration.

    Raises:
        ConfigurationError: on an invalid schedule or threshold table
    """
    from app.services.escalation import EscalationPolicy
    from app.services.jobs import JOB_DEFINITIONS
    from app.services.notifications import NotificationService

    if app_settings is None:
        from app.core.config import settings as app_settings

    # Surface a broken threshold table at startup, not on the first run
    EscalationPolicy.from_settings(app_settings)

    monitor = JobFailureMonitor(
        failure_threshold=app_settings.job_failure_alert_threshold,
        notifier=NotificationService() if app_settings.ops_alert_user_id else None,
        alert_recipient_id=app_settings.ops_alert_user_id
    )

    job_scheduler = JobScheduler(
        timezone=app_settings.scheduler_timezone,
        misfire_grace_seconds=app_settings.misfire_grace_seconds,
        monitor=monitor
    )

    disabled = set(app_settings.disabled_job_list)
    for definition in JOB_DEFINITIONS:
        expression = getattr(app_settings, definition.schedule_setting)
        try:
            spec = parse_schedule(expression, app_settings.scheduler_timezone)
        except ConfigurationError as e:
            e.details["config_key"] = definition.schedule_setting
            raise

        job_scheduler.register(
            definition.name,
            spec,
            definition.handler,
            description=definition.description,
            enabled=definition.name not in disabled
        )

    return job_scheduler


# ==========================================
# GLOBAL SCHEDULER INSTANCE
# ==========================================

_scheduler: Optional[JobScheduler] = None


def get_scheduler() -> JobScheduler:
    """Get the global scheduler instance, building it on first use."""
    global _scheduler
    if _scheduler is None:
        _scheduler = build_scheduler()
    return _scheduler
