"""Controllers for batch and catalog CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from prompt_visibility.batch.entitlements import KNOWN_PROVIDERS, parse_tier
from prompt_visibility.batch.errors import JobNotFoundError, ValidationError
from prompt_visibility.batch.fanout import CreateBatchJob
from prompt_visibility.batch.models import BatchJobStatus, BatchJobView
from prompt_visibility.batch.providers import build_provider_clients
from prompt_visibility.batch.runtime import ClientsFactory, open_repository, open_runtime
from prompt_visibility.config import Settings


@dataclass(slots=True)
class CatalogOrgCommand:
    """CLI input for organization upsert."""

    db_path: Path | None
    org_id: str
    name: str
    tier: str
    brands: tuple[str, ...]
    competitors: tuple[str, ...]


@dataclass(slots=True)
class CatalogPromptCommand:
    db_path: Path | None
    org_id: str
    text: str
    prompt_id: str | None = None


@dataclass(slots=True)
class CatalogPromptStatusCommand:
    db_path: Path | None
    prompt_id: str
    active: bool


@dataclass(slots=True)
class CatalogProviderCommand:
    db_path: Path | None
    name: str
    enabled: bool


@dataclass(slots=True)
class BatchCreateCommand:
    """CLI input for fan-out."""

    db_path: Path | None
    org_id: str
    replace: bool
    trigger_source: str = "cli"


@dataclass(slots=True)
class BatchJobCommand:
    """CLI input for single-job operations (run, drive, cancel, show)."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class BatchListCommand:
    db_path: Path | None
    org_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class BatchReconcileCommand:
    db_path: Path | None


@dataclass(slots=True)
class BatchDailyCommand:
    db_path: Path | None
    force: bool


class BatchCliController:
    """Coordinates catalog seeding, fan-out, execution and inspection CLI operations."""

    def __init__(self, *, clients_factory: ClientsFactory = build_provider_clients) -> None:
        self.clients_factory = clients_factory

    def upsert_org(self, command: CatalogOrgCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        tier = parse_tier(command.tier)
        with open_repository(settings) as repository:
            org = repository.upsert_organization(
                org_id=command.org_id,
                name=command.name,
                subscription_tier=tier.value,
                brand_names=list(command.brands),
                competitor_names=list(command.competitors),
            )
        return [
            f"Organization saved: org_id={org.org_id} name={org.name} "
            f"tier={org.subscription_tier}",
            f"Brands: {', '.join(org.brand_names) or '-'}",
            f"Competitors: {', '.join(org.competitor_names) or '-'}",
        ]

    def add_prompt(self, command: CatalogPromptCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings) as repository:
            prompt = repository.add_prompt(
                org_id=command.org_id,
                text=command.text,
                prompt_id=command.prompt_id,
            )
        return [f"Prompt added: prompt_id={prompt.prompt_id} org_id={prompt.org_id}"]

    def set_prompt_status(self, command: CatalogPromptStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings) as repository:
            updated = repository.set_prompt_active(
                prompt_id=command.prompt_id,
                active=command.active,
            )
        if not updated:
            raise ValidationError(f"Prompt not found: {command.prompt_id}")
        state = "active" if command.active else "inactive"
        return [f"Prompt {command.prompt_id} {state}."]

    def set_provider(self, command: CatalogProviderCommand) -> list[str]:
        if command.name not in KNOWN_PROVIDERS:
            raise ValidationError(
                f"Unknown provider {command.name!r}; expected one of {', '.join(KNOWN_PROVIDERS)}",
            )
        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings) as repository:
            repository.set_provider_enabled(name=command.name, enabled=command.enabled)
        state = "enabled" if command.enabled else "disabled"
        return [f"Provider {command.name} {state}."]

    def create_job(self, command: BatchCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with open_runtime(settings, clients_factory=self.clients_factory) as runtime:
            result = runtime.fanout.create_job(
                CreateBatchJob(
                    org_id=command.org_id,
                    replace=command.replace,
                    trigger_source=command.trigger_source,
                ),
            )
        lines = [
            f"Job {result.action.value}: job_id={result.job.job_id} "
            f"status={result.job.status.value} total_tasks={result.job.total_tasks}",
            f"Prompts: {result.prompts} Providers: {', '.join(result.providers)}",
        ]
        if result.cancelled_previous:
            lines.append(f"Cancelled previous live jobs: {result.cancelled_previous}")
        return lines

    def run_job(self, command: BatchJobCommand) -> list[str]:
        """Run one executor invocation (one time budget)."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with open_runtime(settings, clients_factory=self.clients_factory) as runtime:
            result = runtime.executor.run(command.job_id)
        return [
            f"Run result: action={result.action.value} status={result.status.value} "
            f"completed={result.completed} failed={result.failed} total={result.total} "
            f"remaining={result.remaining}",
            f"This run: processed={result.processed_this_run} failed={result.failed_this_run} "
            f"elapsed_ms={result.elapsed_ms}",
        ]

    def drive_job(self, command: BatchJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with open_runtime(settings, clients_factory=self.clients_factory) as runtime:
            if runtime.repository.get_job(command.job_id) is None:
                raise JobNotFoundError(command.job_id)
            outcome = runtime.driver().drive(command.job_id)
        lines = [
            f"Drive result: status={outcome.status.value} iterations={outcome.iterations} "
            f"elapsed={outcome.elapsed_seconds:.1f}s",
        ]
        if outcome.last_result is not None:
            last = outcome.last_result
            lines.append(
                f"Job: completed={last.completed} failed={last.failed} total={last.total} "
                f"remaining={last.remaining}",
            )
        if outcome.error:
            lines.append(f"Error: {outcome.error}")
        return lines

    def cancel_job(self, command: BatchJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings) as repository:
            job = repository.request_cancellation(command.job_id)
        return [
            f"Cancellation requested: job_id={job.job_id} status={job.status.value} "
            f"cancellation_requested={job.cancellation_requested}",
        ]

    def show_job(self, command: BatchJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_repository(settings) as repository:
            details = repository.get_job_details(command.job_id)
        if details is None:
            raise JobNotFoundError(command.job_id)

        lines = _job_lines(details.job)
        lines.append(
            "Tasks: " + " ".join(f"{status}={count}" for status, count in details.task_counts.items()),
        )
        lines.append("Events:")
        for event in details.events:
            transition = ""
            if event.status_from is not None or event.status_to is not None:
                status_from = event.status_from.value if event.status_from else "-"
                status_to = event.status_to.value if event.status_to else "-"
                transition = f" {status_from}->{status_to}"
            suffix = f" {json.dumps(event.details, sort_keys=True)}" if event.details else ""
            lines.append(
                f"- {event.created_at.isoformat()} {event.event_type}{transition}{suffix}",
            )
        return lines

    def list_jobs(self, command: BatchListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = BatchJobStatus(command.status.strip().lower()) if command.status else None
        with open_repository(settings) as repository:
            jobs = repository.list_jobs(org_id=command.org_id, status=status, limit=command.limit)
        if not jobs:
            return ["No jobs found."]
        return [
            f"{job.job_id} org={job.org_id} status={job.status.value} "
            f"{job.processed_tasks}/{job.total_tasks} date={job.business_date.isoformat()} "
            f"created={job.created_at.isoformat()}"
            for job in jobs
        ]

    def reconcile(self, command: BatchReconcileCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with open_runtime(settings, clients_factory=self.clients_factory) as runtime:
            summary = runtime.reconciler.sweep()
        lines = [
            f"Reconcile summary: processed={summary.processed} finalized={summary.finalized} "
            f"resumed={summary.resumed} errors={summary.errors}",
        ]
        for result in summary.results:
            message = f" ({result.message})" if result.message else ""
            lines.append(f"- {result.job_id} {result.action.value} status={result.status}{message}")
        return lines

    def daily(self, command: BatchDailyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with open_runtime(settings, clients_factory=self.clients_factory) as runtime:
            summary = runtime.scheduler().run(force=command.force, trigger_source="cli")
        lines = [
            f"Daily run {summary.run_key}: status={summary.status} "
            f"succeeded={summary.succeeded} failed={summary.failed}",
        ]
        if summary.message:
            lines.append(summary.message)
        for org in summary.orgs:
            detail = f" error={org.error}" if org.error else ""
            lines.append(
                f"- {org.org_id} action={org.action} job_id={org.job_id or '-'} "
                f"drive={org.drive_status or '-'}{detail}",
            )
        return lines


def _job_lines(job: BatchJobView) -> list[str]:
    return [
        f"Job: {job.job_id}",
        f"Org: {job.org_id}",
        f"Status: {job.status.value}"
        + (" (cancellation requested)" if job.cancellation_requested else ""),
        f"Progress: completed={job.completed_tasks} failed={job.failed_tasks} "
        f"total={job.total_tasks} remaining={job.remaining_tasks}",
        f"Business date: {job.business_date.isoformat()}",
        f"Heartbeat: {job.last_heartbeat_at.isoformat() if job.last_heartbeat_at else '-'}",
        f"Runner: {job.runner_id or '-'}",
        f"Error: {job.error_summary or '-'}",
    ]
