"""Automation Scheduler - periodic automatic transitions and SLA sweeps

Runs inside the API process using APScheduler. Jobs hand the blocking engine
calls to a worker thread so the event loop keeps serving requests.
Handles:
- Automatic transitions (the external trigger for is_automatic transitions)
- SLA breach flags and pre-breach warnings
"""
import asyncio
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pymongo.errors import PyMongoError

from ..config.settings import settings
from ..domain.errors import DomainError
from ..engine.engine import WorkflowEngine, get_engine
from ..utils.logger import get_logger, set_correlation_id
from ..utils.idgen import generate_correlation_id

logger = get_logger(__name__)


class AutomationScheduler:
    """
    Scheduler driving the engine's time-based work

    Jobs never overlap with themselves (max_instances=1); a run that finds
    nothing to do returns quietly.
    """

    def __init__(self, engine: Optional[WorkflowEngine] = None):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self._engine = engine
        self._is_running = False

    @property
    def engine(self) -> WorkflowEngine:
        return self._engine or get_engine()

    def start(self) -> None:
        """Start the scheduler"""
        if self._is_running:
            logger.warning("Scheduler already running")
            return

        self.scheduler = AsyncIOScheduler()

        self.scheduler.add_job(
            self._run_automatic_transitions,
            trigger=IntervalTrigger(seconds=settings.automatic_transition_interval_seconds),
            id="automatic_transitions",
            name="Execute automatic transitions",
            max_instances=1,
            replace_existing=True
        )

        self.scheduler.add_job(
            self._check_sla,
            trigger=IntervalTrigger(seconds=settings.sla_check_interval_seconds),
            id="check_sla",
            name="Check SLA breaches and warnings",
            max_instances=1,
            replace_existing=True
        )

        self.scheduler.start()
        self._is_running = True
        logger.info(
            "Automation scheduler started",
            extra={
                "automatic_interval": settings.automatic_transition_interval_seconds,
                "sla_interval": settings.sla_check_interval_seconds
            }
        )

    def stop(self) -> None:
        """Stop the scheduler"""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self._is_running = False
            logger.info("Automation scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def _run_automatic_transitions(self) -> None:
        set_correlation_id(generate_correlation_id())
        try:
            executed = await asyncio.to_thread(self.engine.run_automatic_transitions)
            if executed:
                logger.info(f"Automatic transition cycle executed {executed} transition(s)")
        except (DomainError, PyMongoError) as e:
            logger.error(f"Automatic transition cycle failed: {e}", exc_info=True)

    async def _check_sla(self) -> None:
        set_correlation_id(generate_correlation_id())
        try:
            result = await asyncio.to_thread(self.engine.check_sla_breaches)
            if result.get("breached") or result.get("warned"):
                logger.info(f"SLA sweep marked {result.get('breached', 0)} breach(es), sent {result.get('warned', 0)} warning(s)")
        except (DomainError, PyMongoError) as e:
            logger.error(f"SLA sweep failed: {e}", exc_info=True)


# Global scheduler instance
_scheduler: Optional[AutomationScheduler] = None


def get_scheduler() -> AutomationScheduler:
    """Get or create scheduler instance"""
    global _scheduler
    if _scheduler is None:
        _scheduler = AutomationScheduler()
    return _scheduler


def scheduler_running() -> bool:
    return _scheduler is not None and _scheduler.is_running


def start_scheduler() -> None:
    """Start the global scheduler"""
    get_scheduler().start()


def stop_scheduler() -> None:
    """Stop the global scheduler"""
    global _scheduler
    if _scheduler:
        _scheduler.stop()
        _scheduler = None
