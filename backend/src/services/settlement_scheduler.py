"""
Scheduler for the settlement pipeline's periodic jobs.

This scheduler runs:
1. Report ingestion every few minutes (bounded batch from the report producer)
2. Payout status sync every minute (processing payments only)
3. Submission of pending payouts, when AUTO_SUBMIT_PAYOUTS is enabled

Each run uses a fresh database session and is offloaded to a worker thread.
Manual triggers from the admin API call the same service operations.
"""

import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore

from core.config import (
    AUTO_SUBMIT_PAYOUTS,
    INGESTION_BATCH_SIZE,
    INGESTION_INTERVAL_MINUTES,
    PAYOUT_SYNC_INTERVAL_MINUTES,
)
from core.constants import PAYOUT_SUBMIT_BATCH_SIZE, SCHEDULER_MAX_INSTANCES
from core.database import get_db_context
from services.payout_gateway import PayoutGateway
from services.report_ingestion_service import ReportIngestionService, ReportProducer
from services.report_matcher import ReportMatcher
from utils.datetime_utils import MOSCOW_TZ

logger = logging.getLogger(__name__)

# Global singleton instance
_settlement_scheduler: Optional['SettlementScheduler'] = None


class SettlementScheduler:
    """
    Scheduler for report ingestion and payout jobs.

    Collaborators are injected by the application lifespan so the jobs use the
    same provider client, notifier and producer as the admin API.
    """

    def __init__(
        self,
        gateway: PayoutGateway,
        producer: ReportProducer,
        matcher: Optional[ReportMatcher] = None,
        auto_submit_payouts: bool = AUTO_SUBMIT_PAYOUTS,
    ):
        """
        Initialize the settlement scheduler.

        Note: Database sessions are created fresh for each scheduler run
        to avoid stale session issues.
        """
        self.scheduler = AsyncIOScheduler(timezone=MOSCOW_TZ)
        self.gateway = gateway
        self.producer = producer
        self.matcher = matcher or ReportMatcher()
        self.auto_submit_payouts = auto_submit_payouts
        self._is_started = False

    async def start_scheduler(self) -> None:
        """
        Start the background scheduler.

        This should be called during application startup.
        """
        if self._is_started:
            logger.warning("Settlement scheduler is already started")
            return

        self.scheduler.add_job(  # type: ignore
            self._run_ingestion,
            IntervalTrigger(minutes=INGESTION_INTERVAL_MINUTES),
            id="report_ingestion",
            name="Clinic report ingestion",
            replace_existing=True,
            max_instances=SCHEDULER_MAX_INSTANCES,
            coalesce=True,
        )
        self.scheduler.add_job(  # type: ignore
            self._run_status_sync,
            IntervalTrigger(minutes=PAYOUT_SYNC_INTERVAL_MINUTES),
            id="payout_status_sync",
            name="Payout status sync",
            replace_existing=True,
            max_instances=SCHEDULER_MAX_INSTANCES,
            coalesce=True,
        )
        if self.auto_submit_payouts:
            self.scheduler.add_job(  # type: ignore
                self._run_payout_submission,
                IntervalTrigger(minutes=PAYOUT_SYNC_INTERVAL_MINUTES),
                id="payout_submission",
                name="Pending payout submission",
                replace_existing=True,
                max_instances=SCHEDULER_MAX_INSTANCES,
                coalesce=True,
            )

        self.scheduler.start()
        self._is_started = True
        logger.info(
            f"Settlement scheduler started (ingestion every {INGESTION_INTERVAL_MINUTES} min, "
            f"status sync every {PAYOUT_SYNC_INTERVAL_MINUTES} min, "
            f"auto submit {'on' if self.auto_submit_payouts else 'off'})"
        )

    async def stop_scheduler(self) -> None:
        """
        Stop the background scheduler.

        This should be called during application shutdown.
        """
        if self._is_started:
            self.scheduler.shutdown(wait=True)
            self._is_started = False
            logger.info("Settlement scheduler stopped")

    async def _run_ingestion(self) -> None:
        await asyncio.to_thread(self._execute_ingestion_logic)

    async def _run_status_sync(self) -> None:
        await asyncio.to_thread(self._execute_status_sync_logic)

    async def _run_payout_submission(self) -> None:
        await asyncio.to_thread(self._execute_payout_submission_logic)

    def _execute_ingestion_logic(self) -> None:
        """Fetch and ingest one batch. Runs in a worker thread."""
        with get_db_context() as db:
            try:
                result = ReportIngestionService.run_ingestion(
                    db, self.producer, self.matcher, INGESTION_BATCH_SIZE
                )
                if result.created or result.errors:
                    logger.info(f"✅ Scheduled ingestion: {result.to_dict()}")
            except Exception as e:
                logger.exception(f"❌ Error during scheduled ingestion: {e}")
                # Don't re-raise - allow scheduler to continue

    def _execute_status_sync_logic(self) -> None:
        """Sync processing payouts with the provider. Runs in a worker thread."""
        if not self.gateway.client.is_configured:
            return
        with get_db_context() as db:
            try:
                self.gateway.sync_processing_payments(db)
            except Exception as e:
                logger.exception(f"❌ Error during payout status sync: {e}")

    def _execute_payout_submission_logic(self) -> None:
        """Submit pending payouts. Runs in a worker thread."""
        if not self.gateway.client.is_configured:
            return
        with get_db_context() as db:
            try:
                results = self.gateway.submit_pending_payments(db, PAYOUT_SUBMIT_BATCH_SIZE)
                failed = [r for r in results if not r.success]
                if results:
                    logger.info(f"Pending payout submission: {len(results) - len(failed)} sent, {len(failed)} failed")
            except Exception as e:
                logger.exception(f"❌ Error during pending payout submission: {e}")


def get_settlement_scheduler() -> Optional[SettlementScheduler]:
    """Get the global settlement scheduler instance, if one was started."""
    return _settlement_scheduler


async def start_settlement_scheduler(
    gateway: PayoutGateway,
    producer: ReportProducer,
    matcher: Optional[ReportMatcher] = None,
) -> SettlementScheduler:
    """
    Create and start the global settlement scheduler.

    This should be called during application startup.
    """
    global _settlement_scheduler
    if _settlement_scheduler is None:
        _settlement_scheduler = SettlementScheduler(gateway, producer, matcher)
    await _settlement_scheduler.start_scheduler()
    return _settlement_scheduler


async def stop_settlement_scheduler() -> None:
    """
    Stop the global settlement scheduler.

    This should be called during application shutdown.
    """
    global _settlement_scheduler
    if _settlement_scheduler:
        await _settlement_scheduler.stop_scheduler()
        _settlement_scheduler = None
