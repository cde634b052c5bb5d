"""In-process non-overlap guard for scheduled jobs."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_RUNNING = "running"

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


@dataclass(frozen=True)
class JobOutcome:
    state: str  # completed | failed | skipped
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Any = None
    error: Optional[BaseException] = None

    @property
    def skipped(self) -> bool:
        return self.state == OUTCOME_SKIPPED


class JobGuard:
    """
    Idle/running state machine for one job.

    A trigger that arrives while the job is running is skipped, never queued.
    The check-and-set happens without yielding to the event loop, so two
    triggers on the same loop cannot both start the job.

    Features:
    - Injectable clock for deterministic timestamps
    - Run and skip counters
    - Last start/finish/result tracking for the status endpoint
    """

    def __init__(self, name: str, clock: Callable[[], datetime] = datetime.utcnow):
        self.name = name
        self.clock = clock
        self.state = STATE_IDLE
        self.runs = 0
        self.skips = 0
        self.last_started_at: Optional[datetime] = None
        self.last_finished_at: Optional[datetime] = None
        self.last_result: Any = None
        self.last_outcome: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.state == STATE_RUNNING

    async def run(self, fn: Callable[[], Awaitable[Any]]) -> JobOutcome:
        """
        Run ``fn`` unless this job is already running.

        Errors raised by ``fn`` are logged and returned in the outcome
        rather than propagated, so the scheduler keeps firing.
        """
        if self.state == STATE_RUNNING:
            self.skips += 1
            logger.info(f"Job '{self.name}' already running; skipping trigger")
            return JobOutcome(state=OUTCOME_SKIPPED)

        self.state = STATE_RUNNING
        started_at = self.clock()
        self.last_started_at = started_at
        self.runs += 1

        try:
            result = await fn()
        except Exception as e:
            finished_at = self.clock()
            logger.error(f"Job '{self.name}' failed: {e}", exc_info=True)
            self.last_result = None
            return self._finish(
                JobOutcome(OUTCOME_FAILED, started_at, finished_at, error=e)
            )
        finally:
            # Cancellation must not leave the job stuck in running
            self.state = STATE_IDLE

        finished_at = self.clock()
        self.last_result = result
        return self._finish(JobOutcome(OUTCOME_COMPLETED, started_at, finished_at, result))

    def _finish(self, outcome: JobOutcome) -> JobOutcome:
        self.state = STATE_IDLE
        self.last_finished_at = outcome.finished_at
        self.last_outcome = outcome.state
        return outcome

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state,
            "runs": self.runs,
            "skips": self.skips,
            "last_started_at": self.last_started_at,
            "last_finished_at": self.last_finished_at,
            "last_outcome": self.last_outcome,
            "last_result": self.last_result,
        }
