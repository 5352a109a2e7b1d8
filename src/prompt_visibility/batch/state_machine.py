"""Single transition table for batch job status.

Every entry point (fan-out, executor, reconciler, cancel handler) moves a job
through ``next_status`` so the lifecycle stays
``pending -> processing -> {completed | failed | cancelled}`` with no exits
from terminal states.
"""

from __future__ import annotations

from enum import Enum

from prompt_visibility.batch.errors import InvalidTransitionError
from prompt_visibility.batch.models import BatchJobStatus


class JobEvent(str, Enum):
    START = "start"
    COMPLETE = "complete"
    FAIL = "fail"
    CANCEL = "cancel"


_TRANSITIONS: dict[tuple[BatchJobStatus, JobEvent], BatchJobStatus] = {
    (BatchJobStatus.PENDING, JobEvent.START): BatchJobStatus.PROCESSING,
    (BatchJobStatus.PENDING, JobEvent.CANCEL): BatchJobStatus.CANCELLED,
    (BatchJobStatus.PENDING, JobEvent.FAIL): BatchJobStatus.FAILED,
    (BatchJobStatus.PROCESSING, JobEvent.COMPLETE): BatchJobStatus.COMPLETED,
    (BatchJobStatus.PROCESSING, JobEvent.FAIL): BatchJobStatus.FAILED,
    (BatchJobStatus.PROCESSING, JobEvent.CANCEL): BatchJobStatus.CANCELLED,
}


def next_status(current: BatchJobStatus, event: JobEvent) -> BatchJobStatus:
    """Return the status reached from ``current`` on ``event``."""

    try:
        return _TRANSITIONS[(current, event)]
    except KeyError:
        raise InvalidTransitionError(current, event.value) from None


def finalize_event(*, cancellation_requested: bool) -> JobEvent:
    """Pick the terminal event for a job whose tasks are all terminal.

    Task failures never fail the job: once every task is terminal the job is
    complete, with the failures counted in ``failed_tasks``.
    """

    if cancellation_requested:
        return JobEvent.CANCEL
    return JobEvent.COMPLETE
