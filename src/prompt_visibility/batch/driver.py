"""Driver loop: re-invokes the executor until a job reaches a terminal state."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from prompt_visibility.batch.errors import BatchError
from prompt_visibility.batch.executor import ExecutionResult
from prompt_visibility.batch.models import ExecutionAction
from prompt_visibility.config import DriverSettings

logger = logging.getLogger(__name__)

StepFn = Callable[[str], ExecutionResult]


class DriveStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ERROR = "error"
    STALLED = "stalled"
    MAX_ITERATIONS = "max_iterations"
    TIMEOUT = "timeout"
    STOPPED = "stopped"


_TERMINAL_DRIVE_STATUSES = {
    ExecutionAction.COMPLETED: DriveStatus.COMPLETED,
    ExecutionAction.FAILED: DriveStatus.FAILED,
    ExecutionAction.CANCELLED: DriveStatus.CANCELLED,
}


@dataclass(slots=True)
class DriveOutcome:
    job_id: str
    status: DriveStatus
    iterations: int
    elapsed_seconds: float
    last_result: ExecutionResult | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == DriveStatus.COMPLETED

    def to_dict(self) -> dict[str, object]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "iterations": self.iterations,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "last_result": self.last_result.to_dict() if self.last_result is not None else None,
            "error": self.error,
        }


class DriverLoop:
    """Calls ``step(job_id)`` every interval until done, stalled or out of limits.

    A stalled job is left for the reconciler.
    """

    def __init__(
        self,
        *,
        step: StepFn,
        settings: DriverSettings,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.step = step
        self.settings = settings
        self._sleep = sleep
        self._clock = clock
        self._stop_requested = False

    def drive(self, job_id: str) -> DriveOutcome:
        started = self._clock()
        iterations = 0
        no_progress = 0
        last_processed: int | None = None
        last_result: ExecutionResult | None = None

        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return self._outcome(job_id, DriveStatus.STOPPED, iterations, started, last_result)
                if iterations >= self.settings.max_iterations:
                    logger.warning("Driver hit max iterations (%d) for job %s", iterations, job_id)
                    return self._outcome(
                        job_id,
                        DriveStatus.MAX_ITERATIONS,
                        iterations,
                        started,
                        last_result,
                    )
                if self._clock() - started >= self.settings.max_wall_seconds:
                    logger.warning("Driver wall-clock limit reached for job %s", job_id)
                    return self._outcome(job_id, DriveStatus.TIMEOUT, iterations, started, last_result)

                iterations += 1
                try:
                    result = self.step(job_id)
                except (BatchError, SQLAlchemyError) as error:
                    logger.error("Driver step %d for job %s failed: %s", iterations, job_id, error)
                    return self._outcome(
                        job_id,
                        DriveStatus.ERROR,
                        iterations,
                        started,
                        last_result,
                        error=str(error),
                    )
                last_result = result
                logger.info(
                    "Driver iteration %d for job %s: %s (%d/%d processed)",
                    iterations,
                    job_id,
                    result.action.value,
                    result.processed,
                    result.total,
                )

                terminal = _TERMINAL_DRIVE_STATUSES.get(result.action)
                if terminal is not None:
                    return self._outcome(job_id, terminal, iterations, started, result)
                if result.action == ExecutionAction.ERROR:
                    return self._outcome(job_id, DriveStatus.ERROR, iterations, started, result)

                if last_processed is not None and result.processed <= last_processed:
                    no_progress += 1
                else:
                    no_progress = 0
                last_processed = result.processed
                if no_progress >= self.settings.stall_iterations:
                    logger.warning(
                        "Job %s stalled for %d iteration(s); leaving it to the reconciler",
                        job_id,
                        no_progress,
                    )
                    return self._outcome(job_id, DriveStatus.STALLED, iterations, started, result)

                self._sleep_with_stop(self.settings.interval_seconds)

    def request_stop(self) -> None:
        self._stop_requested = True

    def _outcome(  # noqa: PLR0913
        self,
        job_id: str,
        status: DriveStatus,
        iterations: int,
        started: float,
        last_result: ExecutionResult | None,
        *,
        error: str | None = None,
    ) -> DriveOutcome:
        return DriveOutcome(
            job_id=job_id,
            status=status,
            iterations=iterations,
            elapsed_seconds=max(0.0, self._clock() - started),
            last_result=last_result,
            error=error,
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        if seconds <= 0 or self._stop_requested:
            return
        self._sleep(seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Driver received signal %s; stopping after current step", signum)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
