"""CLI entrypoint for swarm-dispatch."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from swarm_dispatch import __version__
from swarm_dispatch.config import SUPPORTED_LOG_LEVELS, Settings
from swarm_dispatch.controllers import (
    DispatchCliController,
    DispatchPlanCommand,
    DispatchRunCommand,
    JobEnqueueCommand,
    JobListCommand,
    JobMutateCommand,
    ProviderAddCommand,
    ProviderToggleCommand,
)
from swarm_dispatch.coordination.models import COMPLETION_PROFILES, JobStatus

click.rich_click.USE_MARKDOWN = True
DISPATCH_CONTROLLER = DispatchCliController()

_DB_PATH_HELP = "SQLite DB path."


@click.group()
@click.version_option(version=__version__, prog_name="swarm-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(SUPPORTED_LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Overrides SWARM_DISPATCH_LOG_LEVEL.",
)
def swarm_dispatch(log_level: str | None) -> None:
    """Job dispatch across execution providers."""

    level = (log_level or Settings.from_env().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@swarm_dispatch.group()
def providers() -> None:
    """Provider registry commands."""


@providers.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--name", required=True, help="Unique provider name.")
@click.option("--type", "provider_type", required=True, help="Provider kind, e.g. claude.")
@click.option("--default", "is_default", is_flag=True, help="Prefer this provider on ties.")
@click.option("--disabled", is_flag=True, help="Register the provider disabled.")
def providers_add(
    db_path: Path | None,
    name: str,
    provider_type: str,
    is_default: bool,
    disabled: bool,
) -> None:
    """Register an execution provider."""

    _run(
        lambda: DISPATCH_CONTROLLER.add_provider(
            ProviderAddCommand(
                db_path=db_path,
                name=name,
                provider_type=provider_type,
                is_default=is_default,
                disabled=disabled,
            ),
        ),
    )


@providers.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def providers_list(db_path: Path | None) -> None:
    """List registered providers."""

    _run(lambda: DISPATCH_CONTROLLER.list_providers(db_path))


@providers.command("enable")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--provider-id", required=True, help="Provider id.")
def providers_enable(db_path: Path | None, provider_id: str) -> None:
    """Enable a provider for selection."""

    _run(
        lambda: DISPATCH_CONTROLLER.toggle_provider(
            ProviderToggleCommand(db_path=db_path, provider_id=provider_id, enabled=True),
        ),
    )


@providers.command("disable")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--provider-id", required=True, help="Provider id.")
def providers_disable(db_path: Path | None, provider_id: str) -> None:
    """Exclude a provider from selection."""

    _run(
        lambda: DISPATCH_CONTROLLER.toggle_provider(
            ProviderToggleCommand(db_path=db_path, provider_id=provider_id, enabled=False),
        ),
    )


@swarm_dispatch.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--project-id", required=True, help="Project the job belongs to.")
@click.option("--goal", "goal_prompt", required=True, help="Goal prompt for the provider.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=3,
    show_default=True,
    help="Retry budget for stalled jobs.",
)
@click.option("--provider-id", default=None, help="Preferred provider id.")
@click.option(
    "--depends-on",
    "depends_on_job_id",
    default=None,
    help="Job that must complete first.",
)
@click.option(
    "--profile",
    "completion_profile",
    type=click.Choice(COMPLETION_PROFILES, case_sensitive=False),
    default="default",
    show_default=True,
    help="Completion criteria profile.",
)
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    goal_prompt: str,
    priority: int,
    max_retries: int,
    provider_id: str | None,
    depends_on_job_id: str | None,
    completion_profile: str,
) -> None:
    """Add a job to the queue."""

    _run(
        lambda: DISPATCH_CONTROLLER.enqueue_job(
            JobEnqueueCommand(
                db_path=db_path,
                project_id=project_id,
                goal_prompt=goal_prompt,
                priority=priority,
                max_retries=max_retries,
                provider_id=provider_id,
                depends_on_job_id=depends_on_job_id,
                completion_profile=completion_profile,
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Filter by status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum rows.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _run(
        lambda: DISPATCH_CONTROLLER.list_jobs(
            JobListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with event history."""

    _run(lambda: DISPATCH_CONTROLLER.inspect_job(JobMutateCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--job-id", required=True, help="Job id.")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a waiting job or request cancellation of a running one."""

    _run(lambda: DISPATCH_CONTROLLER.cancel_job(JobMutateCommand(db_path=db_path, job_id=job_id)))


@jobs.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--job-id", required=True, help="Job id.")
def jobs_retry(db_path: Path | None, job_id: str) -> None:
    """Re-queue a failed, cancelled or stalled job."""

    _run(lambda: DISPATCH_CONTROLLER.retry_job(JobMutateCommand(db_path=db_path, job_id=job_id)))


@jobs.command("evaluate")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--job-id", required=True, help="Job id.")
def jobs_evaluate(db_path: Path | None, job_id: str) -> None:
    """Check a job against its completion criteria without changing it."""

    _run(
        lambda: DISPATCH_CONTROLLER.evaluate_job(JobMutateCommand(db_path=db_path, job_id=job_id)),
    )


@swarm_dispatch.group()
def queue() -> None:
    """Queue inspection commands."""


@queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def queue_stats(db_path: Path | None) -> None:
    """Show job counts and average wait/execution times."""

    _run(lambda: DISPATCH_CONTROLLER.queue_stats(db_path))


@swarm_dispatch.group()
def dispatch() -> None:
    """Provider assignment commands."""


@dispatch.command("plan")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Batch size; defaults to SWARM_DISPATCH_BATCH_SIZE.",
)
def dispatch_plan(db_path: Path | None, max_jobs: int | None) -> None:
    """Preview provider assignments for the next batch of pending jobs.

    The preview starts from a fresh health tracker: every provider shows as
    healthy with zero load, so it does not reflect live capacity.
    """

    _run(
        lambda: DISPATCH_CONTROLLER.plan_dispatch(
            DispatchPlanCommand(db_path=db_path, max_jobs=max_jobs),
        ),
    )


@dispatch.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Jobs per pass; defaults to SWARM_DISPATCH_BATCH_SIZE.",
)
@click.option(
    "--max-passes",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many passes; by default run until the queue is idle.",
)
def dispatch_run(db_path: Path | None, max_jobs: int | None, max_passes: int | None) -> None:
    """Assign pending jobs and execute them with the local echo executor."""

    _run(
        lambda: DISPATCH_CONTROLLER.run_dispatch(
            DispatchRunCommand(db_path=db_path, max_jobs=max_jobs, max_passes=max_passes),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (RuntimeError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    swarm_dispatch()
