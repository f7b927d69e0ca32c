"""Wallet synchronization jobs and the periodic sync scheduler"""
import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from ledgerkeep.config import Settings, get_settings
from ledgerkeep.errors import SettlementTimeout, redact_error_message
from ledgerkeep.models.transaction import Direction, PaymentType, Transaction
from ledgerkeep.schemas.backup import ReportJobStatusPayload, ReportStatus, ReportType
from ledgerkeep.services.backup_client import BackupDirectoryClient
from ledgerkeep.services.job_guard import JobBusyError, JobSupervisor, supervisor as default_supervisor
from ledgerkeep.services.ledger_store import LedgerStore
from ledgerkeep.services.reconcile import LedgerReconciler, ReconcileStats
from ledgerkeep.services.wallet import WalletBridge

logger = structlog.get_logger()


async def await_settlement(
    check: Callable[[], Awaitable[bool]],
    max_attempts: int = 20,
    interval_seconds: float = 1.0,
) -> int:
    """
    Poll check() until it reports settlement.

    Errors from check() count as "not yet". Returns the attempt that
    succeeded; raises SettlementTimeout once attempts are exhausted.
    """
    last_error: Optional[str] = None
    for attempt in range(1, max_attempts + 1):
        try:
            if await check():
                return attempt
        except Exception as e:
            last_error = str(e)
        logger.debug("Settlement not ready", attempt=attempt, max_attempts=max_attempts, error=last_error)
        if attempt < max_attempts:
            await asyncio.sleep(interval_seconds)

    message = f"Not settled after {max_attempts} attempts"
    if last_error:
        message = f"{message}: {last_error}"
    raise SettlementTimeout(message)


class WalletSync:
    """Sync jobs over one wallet session"""

    def __init__(
        self,
        wallet: WalletBridge,
        store: LedgerStore,
        reconciler: LedgerReconciler,
        client: BackupDirectoryClient,
        supervisor: Optional[JobSupervisor] = None,
        settings: Optional[Settings] = None,
    ):
        self.wallet = wallet
        self.store = store
        self.reconciler = reconciler
        self.client = client
        self.supervisor = supervisor or default_supervisor
        self.settings = settings or get_settings()

    async def sync_wallet(self) -> ReconcileStats:
        """Run every wallet sync step concurrently, then reconcile local history"""
        steps = {
            "sync": self.wallet.sync(),
            "onchain_sync": self.wallet.onchain_sync(),
            "register_boards": self.wallet.register_all_confirmed_boards(),
            "claim_ln_receives": self.wallet.check_and_claim_all_open_ln_receives(),
        }
        results = await asyncio.gather(*steps.values(), return_exceptions=True)
        for name, result in zip(steps, results):
            if isinstance(result, Exception):
                logger.warning("Wallet sync step failed", step=name, error=str(result))

        return await self.reconciler.reconcile()

    async def report_job_status(
        self,
        report_type: ReportType,
        status: ReportStatus,
        error_message: Optional[str] = None,
    ) -> None:
        """Tell the server how a background job went; failures are only logged"""
        payload = ReportJobStatusPayload(
            report_type=report_type,
            status=status,
            error_message=error_message,
        )
        try:
            await self.client.report_job_status(payload)
        except Exception as e:
            logger.warning("Failed to report job status", report_type=report_type.value, error=redact_error_message(e))

    async def run_background_sync(self) -> Optional[ReconcileStats]:
        """
        Sync as a background job holding the wallet session.

        Returns None when another background job already holds it.
        """
        stats: Optional[ReconcileStats] = None
        error: Optional[str] = None
        try:
            async with self.supervisor.background_job("background_sync"):
                await self.wallet.load_wallet_if_needed()
                stats = await self.sync_wallet()
        except JobBusyError:
            logger.info("Background sync skipped, job already running", owner=self.supervisor.owner)
            return None
        except Exception as e:
            error = redact_error_message(e)
            logger.error("Background sync failed", error=error)

        if stats is not None and stats.get("error"):
            error = redact_error_message(stats["error"])
        status = ReportStatus.FAILURE if error else ReportStatus.SUCCESS
        await self.report_job_status(ReportType.MAINTENANCE, status, error)
        return stats

    async def sync_in_foreground(self) -> ReconcileStats:
        """User-initiated sync; waits (bounded) for a background job to finish first"""
        return await self.supervisor.run_when_ready(
            self.sync_wallet,
            max_wait=self.settings.foreground_wait_seconds,
        )

    async def claim_lightning_receive(
        self,
        payment_hash: str,
        amount_sat: int,
        description: str = "",
    ) -> Transaction:
        """
        Claim an incoming lightning payment, retrying until it settles.

        On success the receive is filed locally and history is reconciled.
        Raises SettlementTimeout when the payment never settles.
        """
        attempts = await await_settlement(
            lambda: self.wallet.check_and_claim_ln_receive(payment_hash),
            max_attempts=self.settings.settlement_max_attempts,
            interval_seconds=self.settings.settlement_interval_seconds,
        )
        logger.info("Lightning receive claimed", attempts=attempts, amount_sat=amount_sat)

        transaction = await self.store.add_transaction(
            Transaction(
                id=str(uuid.uuid4()),
                type=PaymentType.BOLT11.value,
                direction=Direction.INCOMING.value,
                amount=amount_sat,
                date=datetime.now(timezone.utc).isoformat(),
                description=description,
                destination="",
            )
        )
        await self.reconciler.reconcile()
        return transaction


class SyncScheduler:
    """
    Periodic sync while the app is in the foreground.

    Backgrounding pauses the loop; returning to the foreground runs a sync
    immediately and resumes the interval.
    """

    def __init__(self, job: Callable[[], Awaitable[Any]], interval_seconds: int = 30):
        self.interval_seconds = interval_seconds
        self._job = job
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self.app_state = "active"
        self.last_run_at: Optional[datetime] = None
        self.last_result: Any = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self.app_state != "active"

    async def start(self):
        """Start the background sync loop."""
        if self._running:
            logger.warning("Sync scheduler already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Sync scheduler started", interval_seconds=self.interval_seconds)

    async def stop(self):
        """Stop the background sync loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Sync scheduler stopped")

    def set_app_state(self, state: str) -> None:
        """Lifecycle hook: "active" or "background" """
        if state not in ("active", "background"):
            raise ValueError(f"Unknown app state: {state}")
        previous, self.app_state = self.app_state, state
        if previous != state:
            logger.info("App state changed", app_state=state)
        if state == "active" and previous != "active":
            self._wake.set()

    def trigger(self) -> None:
        """Run the job now instead of waiting for the interval"""
        self._wake.set()

    async def run_once(self) -> Any:
        try:
            self.last_result = await self._job()
            self.last_error = None
        except Exception as e:
            self.last_error = redact_error_message(e)
            logger.error("Error in sync scheduler", error=self.last_error)
        self.last_run_at = datetime.now(timezone.utc)
        return self.last_result

    async def _run_loop(self):
        """Main scheduler loop."""
        while self._running:
            self._wake.clear()
            if not self.is_paused:
                await self.run_once()

            timeout = None if self.is_paused else self.interval_seconds
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "app_state": self.app_state,
            "interval_seconds": self.interval_seconds,
            "last_run_at": self.last_run_at,
            "last_error": self.last_error,
        }


# Singleton instance
_scheduler: Optional[SyncScheduler] = None


def get_sync_scheduler() -> Optional[SyncScheduler]:
    return _scheduler


async def start_sync_scheduler(job: Callable[[], Awaitable[Any]], interval_seconds: int = 30) -> SyncScheduler:
    """Create and start the sync scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = SyncScheduler(job, interval_seconds=interval_seconds)
    await _scheduler.start()
    return _scheduler


async def stop_sync_scheduler():
    """Stop the sync scheduler."""
    global _scheduler
    if _scheduler:
        await _scheduler.stop()
        _scheduler = None
