# Services - Business Logic Layer
"""
Ticketing Scheduler Services Module.

This module provides the core business logic for:
- Time windows and candidate selection
- Escalation Management
- Notification Fan-out
- Payment Monitoring
- Background Job Scheduling
"""

# Time Windows
from .windows import (
    TimeWindow,
    h1_reminder_window,
    h0_reminder_window,
    reminder_window,
    stale_cutoff,
    cleanup_cutoff,
)

# Notifications
from .notifications import (
    NotificationService,
    FanOutResult,
    build_dedup_key,
    build_reminder_requests,
    reminder_occurrence,
)

# Escalation Management
from .escalation import (
    EscalationLevel,
    EscalationPolicy,
    EscalationAction,
    EscalationDecision,
    EscalationEngine,
    evaluate_escalation,
    run_escalation_check,
)

# Payment Monitoring
from .payment_monitor import (
    SettlementClient,
    PaymentMonitor,
    map_settlement_status,
    run_payment_monitor,
)

# Background Job Scheduling
from .scheduler import (
    JobScheduler,
    ScheduledTask,
    ScheduleSpec,
    JobRunResult,
    JobFailureMonitor,
    parse_schedule,
    build_scheduler,
    get_scheduler,
)

__all__ = [
    # Time Windows
    "TimeWindow",
    "h1_reminder_window",
    "h0_reminder_window",
    "reminder_window",
    "stale_cutoff",
    "cleanup_cutoff",
    # Notifications
    "NotificationService",
    "FanOutResult",
    "build_dedup_key",
    "build_reminder_requests",
    "reminder_occurrence",
    # Escalation
    "EscalationLevel",
    "EscalationPolicy",
    "EscalationAction",
    "EscalationDecision",
    "EscalationEngine",
    "evaluate_escalation",
    "run_escalation_check",
    # Payments
    "SettlementClient",
    "PaymentMonitor",
    "map_settlement_status",
    "run_payment_monitor",
    # Scheduler
    "JobScheduler",
    "ScheduledTask",
    "ScheduleSpec",
    "JobRunResult",
    "JobFailureMonitor",
    "parse_schedule",
    "build_scheduler",
    "get_scheduler",
]
