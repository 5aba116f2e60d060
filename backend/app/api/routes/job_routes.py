"""
Job API Routes for the Ticketing Scheduler.

Operator endpoints for the background scheduler:
- List registered tasks and their last run
- Scheduler health
- Run a task now
- Start / stop a task
"""
from typing import Optional

from fastapi import APIRouter, Request, HTTPException

from app.services.scheduler import JobScheduler, get_scheduler


router = APIRouter(prefix="/api/jobs", tags=["Jobs"])


def _scheduler(request: Request) -> JobScheduler:
    """Scheduler attached to the app, or the process-wide one."""
    scheduler: Optional[JobScheduler] = getattr(request.app.state, "scheduler", None)
    return scheduler or get_scheduler()


@router.get(
    "",
    summary="List Jobs",
    description="List registered tasks with schedule, last run and next run"
)
async def list_jobs(request: Request) -> dict:
    scheduler = _scheduler(request)
    jobs = scheduler.get_jobs_status()
    return {
        "is_running": scheduler.is_running,
        "count": len(jobs),
        "jobs": jobs,
    }


@router.get(
    "/health",
    summary="Scheduler Health",
    description="Scheduler status and job failure information"
)
async def jobs_health(request: Request) -> dict:
    return _scheduler(request).get_health_status()


@router.post(
    "/{task_name}/run",
    summary="Run Job Now",
    description="Run a task immediately. Dropped if the task is already running."
)
async def run_job(task_name: str, request: Request) -> dict:
    """
    Manually run a task (admin endpoint).

    This is normally run by the scheduler but can be triggered manually.
    """
    result = await _scheduler(request).trigger_task(task_name)
    if result.status == "skipped":
        raise HTTPException(
            status_code=409,
            detail=f"Task {task_name} is already running"
        )
    return result.to_dict()


@router.post(
    "/{task_name}/start",
    summary="Start Job",
    description="Enable a task's schedule"
)
async def start_job(task_name: str, request: Request) -> dict:
    changed = _scheduler(request).start_task(task_name)
    return {"task": task_name, "enabled": True, "changed": changed}


@router.post(
    "/{task_name}/stop",
    summary="Stop Job",
    description="Disable a task's schedule without affecting other tasks"
)
async def stop_job(task_name: str, request: Request) -> dict:
    changed = _scheduler(request).stop_task(task_name)
    return {"task": task_name, "enabled": False, "changed": changed}
