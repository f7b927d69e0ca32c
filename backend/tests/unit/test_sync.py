"""Unit tests for wallet sync jobs and the sync scheduler"""
import asyncio

import pytest

from fakes import make_movement
from ledgerkeep.errors import SettlementTimeout
from ledgerkeep.services.sync import SyncScheduler, await_settlement


class TestAwaitSettlement:
    """Tests for the bounded settlement retry"""

    @pytest.mark.asyncio
    async def test_returns_successful_attempt(self):
        calls = []

        async def check():
            calls.append(1)
            return len(calls) == 3

        assert await await_settlement(check, max_attempts=5, interval_seconds=0) == 3

    @pytest.mark.asyncio
    async def test_errors_count_as_not_settled(self):
        async def check():
            raise RuntimeError("not found")

        with pytest.raises(SettlementTimeout) as exc_info:
            await await_settlement(check, max_attempts=3, interval_seconds=0)
        assert "not found" in str(exc_info.value)


class TestWalletSync:
    """Tests for sync jobs"""

    @pytest.mark.asyncio
    async def test_sync_runs_all_steps_then_reconciles(self, wallet_sync, wallet, store):
        wallet.step_errors["onchain_sync"] = RuntimeError("esplora down")
        wallet.movements = [
            make_movement(1, "bark.arkoor", "receive", output_vtxos=["v1"], effective_balance_sat=5000),
        ]

        stats = await wallet_sync.sync_wallet()

        assert set(wallet.steps_run) == {"sync", "onchain_sync", "register_boards", "claim_ln_receives"}
        assert stats["created"] == 1

    @pytest.mark.asyncio
    async def test_background_sync_reports_success(self, wallet_sync, backup_server, job_supervisor, wallet):
        stats = await wallet_sync.run_background_sync()

        assert stats is not None
        assert wallet.loads == 1
        assert not job_supervisor.is_running
        assert backup_server.reports == [
            {"report_type": "maintenance", "status": "success", "error_message": None}
        ]

    @pytest.mark.asyncio
    async def test_background_sync_reports_failure(self, wallet_sync, backup_server, wallet):
        wallet.history_error = RuntimeError("fetch failed at https://ark.example/history")

        await wallet_sync.run_background_sync()

        [report] = backup_server.reports
        assert report["status"] == "failure"
        assert "https://" not in report["error_message"]

    @pytest.mark.asyncio
    async def test_background_sync_skips_when_busy(self, wallet_sync, job_supervisor, backup_server):
        job_supervisor.try_acquire("other")
        assert await wallet_sync.run_background_sync() is None
        assert backup_server.reports == []
        assert job_supervisor.owner == "other"

    @pytest.mark.asyncio
    async def test_report_failure_is_swallowed(self, wallet_sync, backup_server):
        backup_server.fail["/report_job_status"] = 500
        stats = await wallet_sync.run_background_sync()
        assert stats is not None

    @pytest.mark.asyncio
    async def test_foreground_sync_waits_for_background_job(self, wallet_sync, job_supervisor):
        job_supervisor.try_acquire("background_sync")

        async def finish():
            await asyncio.sleep(0.05)
            job_supervisor.release()

        task = asyncio.create_task(finish())
        stats = await wallet_sync.sync_in_foreground()
        await task
        assert "created" in stats

    @pytest.mark.asyncio
    async def test_claim_lightning_receive(self, wallet_sync, wallet, store):
        wallet.settle_after = 3

        transaction = await wallet_sync.claim_lightning_receive("hash-1", 2100, "coffee")

        assert wallet.claim_checks == 3
        assert transaction.type == "Bolt11"
        assert transaction.direction == "incoming"
        stored = await store.get_transaction(transaction.id)
        assert stored.amount == 2100
        assert stored.description == "coffee"

    @pytest.mark.asyncio
    async def test_claim_gives_up(self, wallet_sync, wallet, store, settings):
        wallet.settle_after = 1_000

        with pytest.raises(SettlementTimeout):
            await wallet_sync.claim_lightning_receive("hash-1", 2100)

        assert wallet.claim_checks == settings.settlement_max_attempts
        assert (await store.list_transactions())[1] == 0


class TestSyncScheduler:
    """Tests for the periodic sync loop"""

    @pytest.mark.asyncio
    async def test_runs_immediately_and_on_interval(self):
        runs = []

        async def job():
            runs.append(1)

        scheduler = SyncScheduler(job, interval_seconds=0.02)
        await scheduler.start()
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert len(runs) >= 2
        assert scheduler.last_run_at is not None

    @pytest.mark.asyncio
    async def test_background_pauses_and_foreground_fires(self):
        runs = []

        async def job():
            runs.append(1)

        scheduler = SyncScheduler(job, interval_seconds=60)
        await scheduler.start()
        await asyncio.sleep(0.02)
        assert len(runs) == 1

        scheduler.set_app_state("background")
        scheduler.trigger()
        await asyncio.sleep(0.02)
        assert len(runs) == 1

        scheduler.set_app_state("active")
        await asyncio.sleep(0.02)
        assert len(runs) == 2
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_job_errors_do_not_stop_loop(self):
        runs = []

        async def job():
            runs.append(1)
            raise RuntimeError("boom")

        scheduler = SyncScheduler(job, interval_seconds=0.01)
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        assert len(runs) >= 2
        assert scheduler.last_error == "boom"

    def test_rejects_unknown_state(self):
        scheduler = SyncScheduler(lambda: None)
        with pytest.raises(ValueError):
            scheduler.set_app_state("sleeping")
