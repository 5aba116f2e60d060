"""Operator command-line interface for the job scheduler, built with Typer.

    python -m app.cli list
    python -m app.cli run h1_reminder
"""
import asyncio
import json
import logging
from typing import Any

import typer

from app.core.exceptions import SchedulerException, TaskNotFoundError
from app.services.scheduler import JobScheduler, build_scheduler


SUCCESS_EXIT_CODE = 0
TASK_FAILED_EXIT_CODE = 1
CONFIG_ERROR_EXIT_CODE = 3
TASK_NOT_FOUND_EXIT_CODE = 4


app = typer.Typer(no_args_is_help=True, help="Ticketing scheduler jobs")


def _emit(data: Any, as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps(data, sort_keys=True, default=str))
        return
    if isinstance(data, dict):
        for key, value in data.items():
            typer.echo(f"{key}: {value}")
        return
    typer.echo(str(data))


def _load_scheduler(ctx: typer.Context) -> JobScheduler:
    if ctx.obj is not None:
        return ctx.obj
    try:
        return build_scheduler()
    except SchedulerException as exc:
        typer.echo(f"error: {exc.message}", err=True)
        raise typer.Exit(code=CONFIG_ERROR_EXIT_CODE) from exc


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(False, "--debug", help="Verbose logging"),
) -> None:
    """Inspect and run scheduled jobs without starting the scheduler."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@app.command("list")
def list_tasks(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
) -> None:
    """List registered tasks and their schedules."""
    scheduler = _load_scheduler(ctx)
    jobs = scheduler.get_jobs_status()

    if as_json:
        _emit(jobs, as_json=True)
        return

    for job in jobs:
        state = "enabled" if job["enabled"] else "disabled"
        typer.echo(f"{job['name']:<22} {job['schedule']:<16} {state:<9} {job['description']}")


@app.command("run")
def run_task(
    ctx: typer.Context,
    task: str = typer.Argument(..., help="Task name, e.g. h1_reminder"),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON output"),
) -> None:
    """Run one task immediately and print its result."""
    scheduler = _load_scheduler(ctx)

    try:
        result = asyncio.run(scheduler.trigger_task(task))
    except TaskNotFoundError as exc:
        typer.echo(f"error: {exc.message}", err=True)
        raise typer.Exit(code=TASK_NOT_FOUND_EXIT_CODE) from exc

    _emit(result.to_dict(), as_json)

    if result.status == "failed":
        raise typer.Exit(code=TASK_FAILED_EXIT_CODE)
    raise typer.Exit(code=SUCCESS_EXIT_CODE)


if __name__ == "__main__":
    app()
