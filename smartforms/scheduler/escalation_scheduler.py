"""Escalation Scheduler - Caller-side periodic ticks for scheduled rules

The engines never read the clock or run timers. This scheduler owns the
interval: each tick loads in-flight submissions through a caller-supplied
loader, runs the template's scheduled rules (escalate actions check
overdue approvals) with the tick's timestamp, and hands the results to a
caller-supplied sink for persistence and dispatch.
"""
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config.settings import Settings, get_settings
from ..domain.models import FormTemplate, RuleExecutionResult, SubmissionSnapshot
from ..services.submission_service import SubmissionService
from ..utils.idgen import generate_correlation_id
from ..utils.logger import get_logger, set_correlation_id
from ..utils.time import utc_now

logger = get_logger(__name__)

SubmissionLoader = Callable[[], Iterable[Tuple[FormTemplate, SubmissionSnapshot]]]
ResultSink = Callable[[SubmissionSnapshot, List[RuleExecutionResult]], None]


class EscalationScheduler:
    """
    APScheduler wrapper emitting `scheduled` rule ticks

    Responsibilities:
    - Run scheduled business rules for every in-flight submission
    - Supply `now` to the engines
    - Keep one failing submission from stopping the tick
    """

    def __init__(
        self,
        loader: SubmissionLoader,
        sink: ResultSink,
        service: Optional[SubmissionService] = None,
        settings: Optional[Settings] = None
    ):
        self.loader = loader
        self.sink = sink
        self.settings = settings or get_settings()
        self.service = service or SubmissionService(self.settings)
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._is_running = False

    def start(self) -> None:
        """Start the scheduler (requires a running asyncio event loop)"""
        if self._is_running:
            logger.warning("Escalation scheduler already running")
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self.settings.escalation_check_interval_seconds),
            id="scheduled_rules",
            name="Run scheduled business rules",
            replace_existing=True
        )
        self.scheduler.start()
        self._is_running = True
        logger.info(
            f"Escalation scheduler started (every {self.settings.escalation_check_interval_seconds}s)"
        )

    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown()
            self._is_running = False
            logger.info("Escalation scheduler stopped")

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running"""
        return self._is_running

    async def _tick(self) -> None:
        self.run_tick(utc_now())

    def run_tick(self, now: datetime) -> int:
        """
        Run one tick

        Args:
            now: Tick timestamp handed to the engines

        Returns:
            Number of submissions for which at least one rule ran
        """
        correlation_id = generate_correlation_id()
        set_correlation_id(correlation_id)
        logger.debug("Running scheduled rules tick")

        processed = 0
        for template, submission in self.loader():
            try:
                results = self.service.run_scheduled(template, submission, now)
            except Exception as e:
                logger.error(
                    f"Error running scheduled rules: {e}",
                    extra={"submission_id": submission.submission_id},
                    exc_info=True
                )
                continue
            if not results:
                continue
            processed += 1
            self.sink(submission, results)

        if processed:
            logger.info(f"Scheduled rules ran for {processed} submission(s)")
        return processed
