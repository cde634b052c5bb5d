"""Background sync tasks: listing and ownership reconciliation runs."""

import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import async_sessionmaker

from nft_tracker import metrics
from nft_tracker.config import settings as default_settings
from nft_tracker.db.models import SyncRun
from nft_tracker.db.session import AsyncSessionLocal
from nft_tracker.db.store import SyncStore
from nft_tracker.errors import ConfigurationError
from nft_tracker.ingest.marketplace_client import MarketplaceClient
from nft_tracker.ingest.ownership_client import OwnershipClient
from nft_tracker.logging_config import get_logger
from nft_tracker.sync.listing_reconciler import ListingReconciler
from nft_tracker.sync.ownership_reconciler import OwnershipReconciler
from nft_tracker.worker.job_guard import OUTCOME_SKIPPED, JobGuard, JobOutcome
from nft_tracker.worker.retry import RetryPolicy

logger = logging.getLogger(__name__)

JOB_LISTINGS = "listings"
JOB_OWNERSHIP = "ownership"

# (summary dict, error count, per-outcome counts for metrics)
PassResult = tuple[dict[str, Any], int, dict[str, int]]


class SyncTaskRunner:
    """
    Runner for the two reconciliation jobs.

    Each job has its own JobGuard: a job never overlaps itself, but the
    listing and ownership jobs may run at the same time.
    """

    def __init__(
        self,
        settings=None,
        session_factory: Optional[async_sessionmaker] = None,
        marketplace_client: Optional[MarketplaceClient] = None,
        ownership_client: Optional[OwnershipClient] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.settings = settings or default_settings
        self.clock = clock
        retry_policy = RetryPolicy.from_settings(self.settings)
        self.store = SyncStore(session_factory or AsyncSessionLocal, retry_policy)
        self.marketplace_client = marketplace_client or MarketplaceClient(self.settings, retry_policy)
        self.ownership_client = ownership_client or OwnershipClient(self.settings, retry_policy)
        self.guards = {
            JOB_LISTINGS: JobGuard(JOB_LISTINGS, clock),
            JOB_OWNERSHIP: JobGuard(JOB_OWNERSHIP, clock),
        }

    async def close(self):
        """Clean up resources."""
        await self.marketplace_client.close()
        await self.ownership_client.close()

    def status(self) -> dict[str, Any]:
        return {name: guard.status() for name, guard in self.guards.items()}

    async def run_listing_sync(self, trigger: str = "scheduled") -> JobOutcome:
        """Reconcile listings; skipped if a listing sync is already running."""
        return await self._run_guarded(JOB_LISTINGS, trigger, self._listing_pass)

    async def run_ownership_sync(self, trigger: str = "scheduled") -> JobOutcome:
        """Reconcile token ownership; skipped if an ownership sync is already running."""
        return await self._run_guarded(JOB_OWNERSHIP, trigger, self._ownership_pass)

    async def sync_token_listing(self, token_id: int) -> str:
        """Reconcile one token's listing outside the scheduled pass; returns the outcome."""
        self._validate_config(JOB_LISTINGS)
        reconciler = ListingReconciler(self.store, self.marketplace_client, self.settings)
        outcome = await reconciler.reconcile_token(token_id)
        metrics.record_sync_outcomes(JOB_LISTINGS, {outcome: 1})
        return outcome

    async def _run_guarded(
        self,
        job_type: str,
        trigger: str,
        pass_fn: Callable[[], Awaitable[PassResult]],
    ) -> JobOutcome:
        if not self.settings.sync_enabled:
            logger.info(f"Sync disabled; not running {job_type} sync ({trigger})")
            return JobOutcome(state=OUTCOME_SKIPPED)

        outcome = await self.guards[job_type].run(
            lambda: self._execute(job_type, trigger, pass_fn)
        )
        if outcome.skipped:
            metrics.record_sync_skipped(job_type)
        return outcome

    def _validate_config(self, job_type: str):
        if not self.settings.database_url:
            raise ConfigurationError("database_url is not configured")
        if job_type == JOB_LISTINGS:
            self.marketplace_client.validate_config()
        else:
            self.ownership_client.validate_config()

    async def _execute(
        self,
        job_type: str,
        trigger: str,
        pass_fn: Callable[[], Awaitable[PassResult]],
    ) -> dict[str, Any]:
        """
        Validate configuration, then record a SyncRun row around one pass.

        A configuration error aborts before any write, including the SyncRun row.
        """
        run_id = uuid4().hex
        start = time.monotonic()
        log = get_logger(__name__, job_type=job_type, run_id=run_id[:16])

        try:
            self._validate_config(job_type)
        except ConfigurationError:
            metrics.record_sync_run(job_type, success=False, duration=time.monotonic() - start)
            raise

        log.info(f"Starting {job_type} sync (trigger: {trigger})")
        sync_run_id = await self._create_run(run_id, job_type, trigger)

        try:
            summary, error_count, outcomes = await pass_fn()
        except Exception as e:
            duration = time.monotonic() - start
            metrics.record_sync_run(job_type, success=False, duration=duration)
            await self._finish_run(sync_run_id, "failed", error_message=str(e)[:500])
            raise

        duration = time.monotonic() - start
        metrics.record_sync_run(job_type, success=error_count == 0, duration=duration)
        metrics.record_sync_outcomes(job_type, outcomes)
        await self._finish_run(sync_run_id, "completed", summary=summary, error_count=error_count)

        log.info(f"{job_type.capitalize()} sync finished in {duration:.1f}s: {summary}")
        return summary

    async def _create_run(self, run_id: str, job_type: str, trigger: str) -> int:
        async def write(session) -> int:
            sync_run = SyncRun(
                run_id=run_id,
                job_type=job_type,
                trigger=trigger,
                status="running",
                started_at=self.clock(),
            )
            session.add(sync_run)
            await session.flush()
            return sync_run.id

        return await self.store.transaction(write, operation="create_sync_run")

    async def _finish_run(
        self,
        sync_run_id: int,
        status: str,
        summary: Optional[dict[str, Any]] = None,
        error_count: int = 0,
        error_message: Optional[str] = None,
    ):
        async def write(session):
            sync_run = await session.get(SyncRun, sync_run_id)
            if sync_run:
                sync_run.status = status
                sync_run.completed_at = self.clock()
                sync_run.summary = summary
                sync_run.error_count = error_count
                sync_run.error_message = error_message

        try:
            await self.store.transaction(write, operation="finish_sync_run")
        except Exception as e:
            # Bookkeeping only; the run result stands
            logger.error(f"Could not update SyncRun {sync_run_id}: {e}")

    async def _listing_pass(self) -> PassResult:
        reconciler = ListingReconciler(self.store, self.marketplace_client, self.settings)
        summary = await reconciler.reconcile()
        metrics.active_listings.set(summary.final_count)

        result = summary.as_dict()
        sample_size = self.settings.listing_verification_sample_size
        if sample_size > 0 and summary.errors == 0:
            report = await reconciler.verify_sample(sample_size)
            result["verification"] = report.as_dict()

        outcomes = {
            "added": summary.added,
            "updated": summary.updated,
            "removed": summary.removed,
            "no_change": summary.no_change,
            "error": summary.errors,
        }
        return result, summary.errors, outcomes

    async def _ownership_pass(self) -> PassResult:
        reconciler = OwnershipReconciler(self.store, self.ownership_client, self.settings)
        summary = await reconciler.reconcile()
        metrics.collection_holders.set(summary.total_holders)

        outcomes = {
            "added": summary.added_holders,
            "updated": summary.updated_holders,
            "error": summary.errors,
        }
        return summary.as_dict(), summary.errors, outcomes


task_runner = SyncTaskRunner()
