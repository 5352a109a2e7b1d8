"""CLI entrypoint for prompt-visibility."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from prompt_visibility import __version__
from prompt_visibility.batch.controllers import (
    BatchCliController,
    BatchCreateCommand,
    BatchDailyCommand,
    BatchJobCommand,
    BatchListCommand,
    BatchReconcileCommand,
    CatalogOrgCommand,
    CatalogPromptCommand,
    CatalogPromptStatusCommand,
    CatalogProviderCommand,
)
from prompt_visibility.batch.entitlements import KNOWN_PROVIDERS, PlanTier
from prompt_visibility.batch.errors import BatchError

click.rich_click.USE_MARKDOWN = True
BATCH_CONTROLLER = BatchCliController()

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="prompt-visibility")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logging level.",
)
def prompt_visibility(log_level: str) -> None:
    """Brand visibility batch runs across LLM providers."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@prompt_visibility.group()
def catalog() -> None:
    """Seed organizations, prompts and providers."""


@catalog.command("org")
@_db_path_option
@click.option("--org-id", required=True, help="Organization id.")
@click.option("--name", required=True, help="Display name; also the default brand name.")
@click.option(
    "--tier",
    type=click.Choice([tier.value for tier in PlanTier], case_sensitive=False),
    default=PlanTier.FREE.value,
    show_default=True,
    help="Subscription tier.",
)
@click.option("--brand", "brands", multiple=True, help="Brand name to detect. Repeatable.")
@click.option(
    "--competitor",
    "competitors",
    multiple=True,
    help="Competitor name to detect. Repeatable.",
)
def catalog_org(  # noqa: PLR0913
    db_path: Path | None,
    org_id: str,
    name: str,
    tier: str,
    brands: tuple[str, ...],
    competitors: tuple[str, ...],
) -> None:
    """Create or update an organization."""

    _emit(
        lambda: BATCH_CONTROLLER.upsert_org(
            CatalogOrgCommand(
                db_path=db_path,
                org_id=org_id,
                name=name,
                tier=tier,
                brands=brands,
                competitors=competitors,
            ),
        ),
    )


@catalog.command("prompt")
@_db_path_option
@click.option("--org-id", required=True, help="Organization id.")
@click.option("--text", required=True, help="Prompt text sent to every provider.")
@click.option("--prompt-id", default=None, help="Optional explicit prompt id.")
def catalog_prompt(db_path: Path | None, org_id: str, text: str, prompt_id: str | None) -> None:
    """Add an active prompt to an organization."""

    _emit(
        lambda: BATCH_CONTROLLER.add_prompt(
            CatalogPromptCommand(db_path=db_path, org_id=org_id, text=text, prompt_id=prompt_id),
        ),
    )


@catalog.command("prompt-status")
@_db_path_option
@click.argument("prompt_id")
@click.option("--active/--inactive", default=True, show_default=True, help="Prompt switch.")
def catalog_prompt_status(db_path: Path | None, prompt_id: str, active: bool) -> None:
    """Activate or deactivate a prompt for future fan-outs."""

    _emit(
        lambda: BATCH_CONTROLLER.set_prompt_status(
            CatalogPromptStatusCommand(db_path=db_path, prompt_id=prompt_id, active=active),
        ),
    )


@catalog.command("provider")
@_db_path_option
@click.argument("name", type=click.Choice(list(KNOWN_PROVIDERS)))
@click.option("--enable/--disable", default=True, show_default=True, help="Provider switch.")
def catalog_provider(db_path: Path | None, name: str, enable: bool) -> None:
    """Enable or disable a provider globally."""

    _emit(
        lambda: BATCH_CONTROLLER.set_provider(
            CatalogProviderCommand(db_path=db_path, name=name, enabled=enable),
        ),
    )


@prompt_visibility.group()
def batch() -> None:
    """Batch job commands."""


@batch.command("create")
@_db_path_option
@click.option("--org-id", required=True, help="Organization id.")
@click.option(
    "--replace/--no-replace",
    default=False,
    show_default=True,
    help="Cancel live jobs of the org before creating a new one.",
)
def batch_create(db_path: Path | None, org_id: str, replace: bool) -> None:
    """Fan out active prompts x entitled providers into a new job."""

    _emit(
        lambda: BATCH_CONTROLLER.create_job(
            BatchCreateCommand(db_path=db_path, org_id=org_id, replace=replace),
        ),
    )


@batch.command("run")
@_db_path_option
@click.option("--job-id", required=True, help="Job id.")
def batch_run(db_path: Path | None, job_id: str) -> None:
    """Run one time-boxed executor invocation."""

    _emit(lambda: BATCH_CONTROLLER.run_job(BatchJobCommand(db_path=db_path, job_id=job_id)))


@batch.command("drive")
@_db_path_option
@click.option("--job-id", required=True, help="Job id.")
def batch_drive(db_path: Path | None, job_id: str) -> None:
    """Re-invoke the executor until the job is terminal or stalls."""

    _emit(lambda: BATCH_CONTROLLER.drive_job(BatchJobCommand(db_path=db_path, job_id=job_id)))


@batch.command("cancel")
@_db_path_option
@click.option("--job-id", required=True, help="Job id.")
def batch_cancel(db_path: Path | None, job_id: str) -> None:
    """Request cancellation of a job."""

    _emit(lambda: BATCH_CONTROLLER.cancel_job(BatchJobCommand(db_path=db_path, job_id=job_id)))


@batch.command("show")
@_db_path_option
@click.option("--job-id", required=True, help="Job id.")
def batch_show(db_path: Path | None, job_id: str) -> None:
    """Show job progress, task counts and event history."""

    _emit(lambda: BATCH_CONTROLLER.show_job(BatchJobCommand(db_path=db_path, job_id=job_id)))


@batch.command("list")
@_db_path_option
@click.option("--org-id", default=None, help="Optional org filter.")
@click.option(
    "--status",
    type=click.Choice(["pending", "processing", "completed", "failed", "cancelled"]),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def batch_list(db_path: Path | None, org_id: str | None, status: str | None, limit: int) -> None:
    """List recent jobs."""

    _emit(
        lambda: BATCH_CONTROLLER.list_jobs(
            BatchListCommand(db_path=db_path, org_id=org_id, status=status, limit=limit),
        ),
    )


@batch.command("reconcile")
@_db_path_option
def batch_reconcile(db_path: Path | None) -> None:
    """Finalize or resume jobs with a stale heartbeat."""

    _emit(lambda: BATCH_CONTROLLER.reconcile(BatchReconcileCommand(db_path=db_path)))


@batch.command("daily")
@_db_path_option
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="Ignore the execution window and an already completed run.",
)
def batch_daily(db_path: Path | None, force: bool) -> None:
    """Run the daily batch for every org with active prompts."""

    _emit(lambda: BATCH_CONTROLLER.daily(BatchDailyCommand(db_path=db_path, force=force)))


@prompt_visibility.command("serve")
@_db_path_option
@click.option("--host", default=None, help="Bind host (defaults to PROMPT_VISIBILITY_API_HOST).")
@click.option("--port", type=int, default=None, help="Bind port (defaults to PROMPT_VISIBILITY_API_PORT).")
def serve(db_path: Path | None, host: str | None, port: int | None) -> None:
    """Serve the HTTP API with uvicorn."""

    import uvicorn  # noqa: PLC0415

    from prompt_visibility.api.app import create_app  # noqa: PLC0415
    from prompt_visibility.config import Settings  # noqa: PLC0415

    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    uvicorn.run(
        create_app(settings),
        host=host or settings.api.host,
        port=port or settings.api.port,
    )


def _emit(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except (BatchError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    prompt_visibility()
