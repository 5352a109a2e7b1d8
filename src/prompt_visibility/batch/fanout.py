"""Task fan-out: one job per org run, one task per (prompt, provider)."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from uuid import uuid4
from zoneinfo import ZoneInfo

from prompt_visibility.batch.entitlements import entitlement_for, filter_entitled_providers
from prompt_visibility.batch.errors import (
    LiveJobExistsError,
    NoActivePromptsError,
    NoEntitledProvidersError,
    ValidationError,
)
from prompt_visibility.batch.models import BatchJobCreate, BatchJobView, ExecutionAction
from prompt_visibility.batch.repository import BatchRepository
from prompt_visibility.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CreateBatchJob:
    """High-level command to fan out one org's active prompts."""

    org_id: str
    replace: bool = False
    trigger_source: str = "manual"
    correlation_id: str | None = None


@dataclass(slots=True)
class FanoutResult:
    action: ExecutionAction
    job: BatchJobView
    prompts: int
    providers: list[str] = field(default_factory=list)
    cancelled_previous: int = 0


def business_date_for(moment: datetime, timezone_name: str) -> date:
    """Calendar day of ``moment`` in the business timezone."""

    return moment.astimezone(ZoneInfo(timezone_name)).date()


class FanoutService:
    """Validates entitlements and persists a job with its task matrix."""

    def __init__(
        self,
        *,
        repository: BatchRepository,
        configured_providers: tuple[str, ...],
        business_timezone: str = "America/New_York",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.configured_providers = configured_providers
        self.business_timezone = business_timezone
        self._clock = clock

    def create_job(self, command: CreateBatchJob) -> FanoutResult:
        org_id = command.org_id.strip() if command.org_id else ""
        if not org_id:
            raise ValidationError("org_id is required.")
        org = self.repository.get_organization(org_id)
        if org is None:
            raise ValidationError(f"Organization not found: {org_id}")

        entitlement = entitlement_for(org.subscription_tier)
        prompts = self.repository.list_active_prompts(org_id)[: entitlement.prompt_limit]
        if not prompts:
            raise NoActivePromptsError(org_id)
        providers = filter_entitled_providers(
            tier=entitlement.tier,
            enabled=self.repository.list_enabled_providers(),
            configured=self.configured_providers,
        )
        if not providers:
            raise NoEntitledProvidersError(org_id, entitlement.tier.value)

        business_date = business_date_for(self._clock(), self.business_timezone)
        cancelled_previous = 0
        if command.replace:
            cancelled_previous = self.repository.cancel_active_jobs(org_id, reason="replaced")
            if cancelled_previous:
                logger.info("Cancelled %d live job(s) for org %s", cancelled_previous, org_id)
        else:
            existing = self._existing_job(org_id=org_id, business_date=business_date)
            if existing is not None:
                logger.info(
                    "Reusing job %s for org %s (%s)",
                    existing.job_id,
                    org_id,
                    existing.status.value,
                )
                return FanoutResult(
                    action=ExecutionAction.EXISTING,
                    job=existing,
                    prompts=len(prompts),
                    providers=providers,
                )

        correlation_id = command.correlation_id or str(uuid4())
        payload = BatchJobCreate(
            org_id=org_id,
            prompt_ids=[prompt.prompt_id for prompt in prompts],
            providers=providers,
            business_date=business_date,
            metadata={
                "correlation_id": correlation_id,
                "trigger_source": command.trigger_source,
                "providers": providers,
                "prompt_ids": [prompt.prompt_id for prompt in prompts],
                "tier": entitlement.tier.value,
                "resume_count": 0,
            },
        )
        try:
            job = self.repository.create_job(payload)
        except LiveJobExistsError:
            live = self.repository.find_active_jobs(org_id)
            if not live:
                raise
            logger.info("Lost create race for org %s; returning job %s", org_id, live[0].job_id)
            return FanoutResult(
                action=ExecutionAction.EXISTING,
                job=live[0],
                prompts=len(prompts),
                providers=providers,
            )

        logger.info(
            "Created job %s for org %s: %d prompts x %d providers = %d tasks (correlation=%s)",
            job.job_id,
            org_id,
            len(prompts),
            len(providers),
            job.total_tasks,
            correlation_id,
        )
        return FanoutResult(
            action=ExecutionAction.CREATED,
            job=job,
            prompts=len(prompts),
            providers=providers,
            cancelled_previous=cancelled_previous,
        )

    def _existing_job(self, *, org_id: str, business_date: date) -> BatchJobView | None:
        live = self.repository.find_active_jobs(org_id)
        if live:
            return live[0]
        return self.repository.find_daily_job(org_id, business_date)
