"""Reconciliation Scheduler - periodically sweeps every active tenant.

Each run, per tenant:
- expires holds whose TTL has passed
- audits counters and references
- files or refreshes alerts for what it found

Tenants are swept one after another; a failure in one tenant is logged and
does not stop the others.
"""

import asyncio
import logging

from sqlalchemy import select

from src.core.clock import Clock
from src.core.config import get_inventory_config
from src.core.database.database_session import get_db_session
from src.core.database.models import Tenant
from src.core.schemas import SweepResult
from src.core.tenant_context import open_job_context
from src.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

JOB_NAME = "reconciliation"


def sweep_tenant(tenant_id: str, clock: Clock | None = None) -> SweepResult:
    """Run one sweep for one tenant in its own session."""
    with open_job_context(tenant_id, JOB_NAME, clock) as ctx:
        return ReconciliationService(ctx).sweep()


def sweep_all_tenants(clock: Clock | None = None) -> dict[str, SweepResult]:
    """Sweep every active tenant. Returns the results of the tenants that succeeded."""
    with get_db_session() as session:
        tenant_ids = list(
            session.scalars(select(Tenant.tenant_id).where(Tenant.is_active.is_(True)).order_by(Tenant.tenant_id))
        )

    results = {}
    for tenant_id in tenant_ids:
        try:
            results[tenant_id] = sweep_tenant(tenant_id, clock)
        except Exception as e:
            logger.error(f"Reconciliation sweep failed for tenant {tenant_id}: {e}", exc_info=True)
    return results


class ReconciliationScheduler:
    """Scheduler running the reconciliation sweep on a fixed cadence."""

    def __init__(self, interval_seconds: int | None = None, clock: Clock | None = None) -> None:
        self.interval_seconds = interval_seconds or get_inventory_config().reconciliation_interval_seconds
        self.clock = clock
        self.is_running = False
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Start the scheduler background task."""
        async with self._lock:
            if self.is_running:
                logger.warning("Reconciliation scheduler is already running")
                return

            self.is_running = True
            self._task = asyncio.create_task(self._run_scheduler())
            logger.info(f"Reconciliation scheduler started (sweeping every {self.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop the scheduler background task."""
        async with self._lock:
            if not self.is_running:
                return

            self.is_running = False
            if self._task:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            logger.info("Reconciliation scheduler stopped")

    async def run_once(self) -> dict[str, SweepResult]:
        """Sweep all tenants once, off the event loop."""
        results = await asyncio.to_thread(sweep_all_tenants, self.clock)
        expired = sum(len(r.expired) for r in results.values())
        created = sum(len(r.alerts_created) for r in results.values())
        if expired or created:
            logger.info(f"Reconciliation: expired {expired} hold(s), created {created} alert(s)")
        return results

    async def _run_scheduler(self) -> None:
        """Main scheduler loop - runs on a fixed cadence."""
        while self.is_running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in reconciliation scheduler: {e}", exc_info=True)

            # Wait before next sweep
            try:
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                break


# Global singleton instance
_scheduler: ReconciliationScheduler | None = None


def get_reconciliation_scheduler() -> ReconciliationScheduler:
    """Get or create the global reconciliation scheduler instance."""
    global _scheduler
    if _scheduler is None:
        _scheduler = ReconciliationScheduler()
    return _scheduler


async def start_reconciliation_scheduler() -> None:
    """Start the global reconciliation scheduler."""
    scheduler = get_reconciliation_scheduler()
    await scheduler.start()


async def stop_reconciliation_scheduler() -> None:
    """Stop the global reconciliation scheduler."""
    scheduler = get_reconciliation_scheduler()
    await scheduler.stop()
