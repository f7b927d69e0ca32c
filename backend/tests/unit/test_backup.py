"""Unit tests for the backup pipeline coordinator"""
import asyncio
import io
import tarfile
from datetime import datetime, timedelta, timezone

import pytest

from fakes import MNEMONIC, OTHER_MNEMONIC, make_movement
from ledgerkeep.errors import NetworkError
from ledgerkeep.migrations import MIGRATIONS, run_migrations
from ledgerkeep.models.database import create_store_engine
from ledgerkeep.schemas.backup import BackupInfo, BackupState, BackupStatus
from ledgerkeep.services.backup import (
    BackupCoordinator,
    BackupStateStore,
    BackupStep,
    choose_backup_version,
    create_snapshot,
    unpack_snapshot,
)
from ledgerkeep.services.sealing import seal


def info(version: int, created_at: str) -> BackupInfo:
    return BackupInfo(backup_version=version, created_at=created_at, backup_size=10)


def snapshot_files(path):
    return {
        p.relative_to(path).as_posix(): p.read_bytes()
        for p in sorted(path.rglob("*"))
        if p.is_file()
    }


class TestVersionSelection:
    """Tests for rotating backup slots"""

    def test_first_free_slot(self):
        assert choose_backup_version([], 2) == 1
        assert choose_backup_version([info(1, "2025-01-01")], 2) == 2
        assert choose_backup_version([info(2, "2025-01-01")], 2) == 1

    def test_oldest_slot_when_full(self):
        existing = [info(1, "2025-01-03T00:00:00Z"), info(2, "2025-01-02T00:00:00Z")]
        assert choose_backup_version(existing, 2) == 2

    def test_oldest_slot_compares_instants_not_strings(self):
        # 01:00+02:00 on the 2nd is 23:00Z on the 1st, earlier than slot 2
        existing = [info(1, "2025-01-02T01:00:00+02:00"), info(2, "2025-01-01T23:30:00.500Z")]
        assert choose_backup_version(existing, 2) == 1

    def test_unreadable_timestamp_counts_as_oldest(self):
        existing = [info(1, "2025-01-01T00:00:00Z"), info(2, "yesterday")]
        assert choose_backup_version(existing, 2) == 2

    def test_out_of_range_versions_ignored(self):
        existing = [info(1, "2025-01-03"), info(7, "2020-01-01")]
        assert choose_backup_version(existing, 2) == 2


class TestSnapshot:
    def test_snapshot_round_trip(self, wallet_data, tmp_path):
        archive = create_snapshot(wallet_data)
        extracted = unpack_snapshot(archive, tmp_path / "staging", wallet_data.name)
        assert snapshot_files(extracted) == snapshot_files(wallet_data)

    def test_archive_without_wallet_directory_rejected(self, tmp_path):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
            data = b"x"
            member = tarfile.TarInfo("something-else/file")
            member.size = len(data)
            tar.addfile(member, io.BytesIO(data))

        from ledgerkeep.errors import ValidationError
        with pytest.raises(ValidationError):
            unpack_snapshot(buffer.getvalue(), tmp_path / "staging", "noah-data-signet")


class TestBackupStateStore:
    def test_missing_file_gives_defaults(self, tmp_path):
        state = BackupStateStore(tmp_path / "state.json").load()
        assert state.last_backup_status == BackupStatus.IDLE
        assert state.backup_enabled

    def test_round_trip(self, tmp_path):
        store = BackupStateStore(tmp_path / "state.json")
        now = datetime.now(timezone.utc)
        store.save(BackupState(last_backup_at=now, last_backup_status=BackupStatus.SUCCESS, last_backup_version=2))
        loaded = store.load()
        assert loaded.last_backup_at == now
        assert loaded.last_backup_version == 2

    def test_corrupt_file_gives_defaults(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{broken")
        assert BackupStateStore(path).load() == BackupState()


class TestPerformBackup:
    """Tests for backup runs"""

    @pytest.mark.asyncio
    async def test_backup_uploads_into_first_slot(self, coordinator, wallet_data, backup_server, events):
        outcome = await coordinator.perform_backup()

        assert outcome.success
        assert outcome.version == 1
        assert backup_server.backups[1]["backup_size"] == outcome.size
        assert coordinator.state.last_backup_status == BackupStatus.SUCCESS
        assert coordinator.state.last_backup_version == 1
        assert coordinator.state.last_backup_at is not None
        assert coordinator.step == BackupStep.IDLE
        assert events.on("backup")

    @pytest.mark.asyncio
    async def test_uploaded_blob_opens_with_phrase(self, coordinator, wallet_data, backup_server, settings, tmp_path):
        await coordinator.perform_backup()
        blob = backup_server.objects[backup_server.backups[1]["s3_key"]]

        archive = coordinator.codec.open(blob, MNEMONIC)
        extracted = unpack_snapshot(archive, tmp_path / "check", wallet_data.name)
        assert snapshot_files(extracted) == snapshot_files(wallet_data)

    @pytest.mark.asyncio
    async def test_rotation_never_exceeds_slot_count(self, coordinator, wallet_data, backup_server):
        versions = []
        for _ in range(5):
            outcome = await coordinator.perform_backup()
            versions.append(outcome.version)

        assert versions == [1, 2, 1, 2, 1]
        assert set(backup_server.backups) == {1, 2}

    @pytest.mark.asyncio
    async def test_concurrent_trigger_is_skipped(self, coordinator, wallet_data, backup_server, monkeypatch):
        release = asyncio.Event()
        original_put = coordinator.client.put_object

        async def slow_put(url, data):
            await release.wait()
            await original_put(url, data)

        monkeypatch.setattr(coordinator.client, "put_object", slow_put)

        first = asyncio.create_task(coordinator.perform_backup())
        while coordinator.step != BackupStep.UPLOADING:
            await asyncio.sleep(0.01)

        second = await coordinator.perform_backup()
        assert second.skipped
        assert not second.success

        release.set()
        assert (await first).success
        assert len(backup_server.backups) == 1

    @pytest.mark.asyncio
    async def test_failed_upload_keeps_previous_slot(self, coordinator, wallet_data, backup_server):
        backup_server.add_backup(1, b"previous", created_at="2025-01-01T00:00:00Z")
        backup_server.add_backup(2, b"newer", created_at="2025-01-02T00:00:00Z")
        previous = dict(backup_server.backups[1])

        backup_server.fail["/backup/complete_upload"] = 500
        outcome = await coordinator.perform_backup()

        assert not outcome.success
        assert outcome.version == 1
        assert outcome.step == BackupStep.COMPLETING
        assert outcome.error_kind == "NetworkError"
        assert backup_server.backups[1] == previous
        assert coordinator.state.last_backup_status == BackupStatus.FAILED
        assert coordinator.state.last_backup_error

    @pytest.mark.asyncio
    async def test_failure_message_is_redacted(self, coordinator, wallet_data, monkeypatch):
        async def failing_put(url, data):
            raise NetworkError(f"Upload failed for {url}")

        monkeypatch.setattr(coordinator.client, "put_object", failing_put)
        outcome = await coordinator.perform_backup()

        assert not outcome.success
        assert "https://" not in outcome.error
        assert "https://" not in coordinator.state.last_backup_error

    @pytest.mark.asyncio
    async def test_missing_phrase_fails(self, coordinator, wallet_data, credentials):
        credentials.secrets.clear()
        outcome = await coordinator.perform_backup()
        assert not outcome.success
        assert outcome.error_kind == "AuthenticationError"

    @pytest.mark.asyncio
    async def test_missing_data_directory_fails(self, coordinator):
        outcome = await coordinator.perform_backup()
        assert not outcome.success
        assert outcome.step == BackupStep.SNAPSHOTTING
        assert outcome.error_kind == "StorageError"

    @pytest.mark.asyncio
    async def test_state_survives_restart(self, coordinator, wallet_data, backup_client, authenticator, wallet, credentials, settings):
        await coordinator.perform_backup()
        reloaded = BackupCoordinator(backup_client, authenticator, wallet, credentials, settings)
        assert reloaded.state.last_backup_status == BackupStatus.SUCCESS
        assert reloaded.state.last_backup_version == 1


class TestAutoBackup:
    """Tests for lifecycle-triggered backups"""

    @pytest.fixture
    def now(self):
        return datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.fixture
    def timed(self, coordinator, now):
        coordinator._clock = lambda: now
        return coordinator

    @pytest.mark.asyncio
    async def test_runs_when_never_backed_up(self, timed, wallet_data):
        outcome = await timed.trigger_auto_backup("app_open")
        assert outcome.success

    @pytest.mark.asyncio
    async def test_skips_when_fresh(self, timed, now, wallet_data):
        timed.state = BackupState(last_backup_at=now - timedelta(hours=2), last_backup_status=BackupStatus.SUCCESS)
        outcome = await timed.trigger_auto_backup("app_open")
        assert outcome.skipped
        assert outcome.reason == "fresh"

    @pytest.mark.asyncio
    async def test_skips_within_min_interval(self, timed, now, wallet_data):
        timed.state = BackupState(
            last_backup_attempt_at=now - timedelta(minutes=10),
            last_backup_status=BackupStatus.FAILED,
        )
        outcome = await timed.trigger_auto_backup("app_open")
        assert outcome.reason == "too_soon"

    @pytest.mark.asyncio
    async def test_skips_when_disabled_unless_forced(self, timed, wallet_data):
        timed.state = BackupState(backup_enabled=False)
        assert (await timed.trigger_auto_backup("app_open")).reason == "disabled"
        assert (await timed.trigger_auto_backup("wallet_created", force=True)).success

    @pytest.mark.asyncio
    async def test_skips_when_wallet_suspended(self, timed, wallet, wallet_data):
        wallet.suspended = True
        outcome = await timed.trigger_auto_backup("app_open", force=True)
        assert outcome.reason == "wallet_suspended"

    @pytest.mark.asyncio
    async def test_stale_in_progress_becomes_failure(self, timed, now, wallet_data):
        timed.state = BackupState(
            last_backup_attempt_at=now - timedelta(hours=3),
            last_backup_status=BackupStatus.IN_PROGRESS,
        )
        outcome = await timed.trigger_auto_backup("app_open")
        assert outcome.success

    @pytest.mark.asyncio
    async def test_recent_in_progress_blocks(self, timed, now, wallet_data):
        timed.state = BackupState(
            last_backup_attempt_at=now - timedelta(minutes=1),
            last_backup_status=BackupStatus.IN_PROGRESS,
        )
        outcome = await timed.trigger_auto_backup("app_open", force=True)
        assert outcome.reason == "already_running"


class TestBackupManagement:
    @pytest.mark.asyncio
    async def test_list_and_delete(self, coordinator, backup_server):
        backup_server.add_backup(1, b"one")
        backup_server.add_backup(2, b"two")
        assert [b.backup_version for b in await coordinator.list_backups()] == [1, 2]

        await coordinator.delete_backup(1)
        assert [b.backup_version for b in coordinator.backups] == [2]
        assert 1 not in backup_server.backups

    @pytest.mark.asyncio
    async def test_settings_toggle(self, coordinator, backup_server):
        state = await coordinator.set_backup_enabled(False)
        assert state.backup_enabled is False
        assert backup_server.backup_enabled is False

    @pytest.mark.asyncio
    async def test_settings_reverted_on_failure(self, coordinator, backup_server):
        backup_server.fail["/backup/settings"] = 500
        with pytest.raises(NetworkError):
            await coordinator.set_backup_enabled(False)
        assert coordinator.state.backup_enabled is True
        assert coordinator.state_store.load().backup_enabled is True


class TestRestore:
    """Tests for restoring wallet data from a backup"""

    @pytest.fixture
    def sealed_backup(self, wallet_data, backup_server, settings):
        """A valid backup of the current wallet data in slot 1"""
        blob = seal(create_snapshot(wallet_data), MNEMONIC, settings.kdf_iterations)
        backup_server.add_backup(1, blob.encode("ascii"))
        return snapshot_files(wallet_data)

    @pytest.mark.asyncio
    async def test_restore_replaces_wallet_data(self, coordinator, sealed_backup, wallet_data, credentials, wallet, settings, events):
        credentials.secrets.clear()
        (wallet_data / "config.toml").write_text("corrupted")
        (wallet_data / "stray.tmp").write_text("leftover")

        outcome = await coordinator.restore(MNEMONIC)

        assert outcome.success
        assert snapshot_files(wallet_data) == sealed_backup
        assert credentials.secrets[settings.credential_service] == MNEMONIC
        assert wallet.loads == 1
        assert coordinator.restore_progress is None

        percents = [data["percent"] for channel, kind, data in events.on("restore") if kind == "progress"]
        assert percents == sorted(percents)
        assert percents[-1] == 100
        assert events.on("restore")[-1][1] == "cleared"

    @pytest.mark.asyncio
    async def test_wrong_phrase_writes_nothing(self, coordinator, sealed_backup, wallet_data, credentials, settings):
        (wallet_data / "config.toml").write_text("local change")
        before = snapshot_files(wallet_data)

        outcome = await coordinator.restore(OTHER_MNEMONIC)

        assert not outcome.success
        assert outcome.error_kind == "AuthenticationError"
        assert snapshot_files(wallet_data) == before
        assert credentials.secrets[settings.credential_service] == MNEMONIC
        assert coordinator.restore_progress is None

    @pytest.mark.asyncio
    async def test_missing_version(self, coordinator, sealed_backup):
        outcome = await coordinator.restore(MNEMONIC, version=2)
        assert not outcome.success
        assert outcome.error_kind == "NotFoundError"

    @pytest.mark.asyncio
    async def test_restore_onto_fresh_device(self, coordinator, sealed_backup, wallet_data, settings):
        import shutil
        shutil.rmtree(wallet_data)

        outcome = await coordinator.restore(MNEMONIC, version=1)

        assert outcome.success
        assert snapshot_files(settings.wallet_data_path) == sealed_backup

    @pytest.mark.asyncio
    async def test_backup_then_restore(self, coordinator, wallet_data):
        original = snapshot_files(wallet_data)
        assert (await coordinator.perform_backup()).success
        (wallet_data / "config.toml").write_text("changed after backup")

        outcome = await coordinator.restore(MNEMONIC)

        assert outcome.success
        assert snapshot_files(wallet_data) == original

    @pytest.mark.asyncio
    async def test_restored_older_schema_is_migrated(self, coordinator, reconciler, store, wallet, wallet_data, backup_server, settings, tmp_path):
        legacy = tmp_path / "legacy" / wallet_data.name
        legacy.mkdir(parents=True)
        engine = create_store_engine(f"sqlite+aiosqlite:///{legacy / settings.database_filename}")
        try:
            async with engine.begin() as conn:
                assert await conn.run_sync(run_migrations, MIGRATIONS[:5]) == 5
        finally:
            await engine.dispose()
        blob = seal(create_snapshot(legacy), MNEMONIC, settings.kdf_iterations)
        backup_server.add_backup(1, blob.encode("ascii"))

        outcome = await coordinator.restore(MNEMONIC)
        assert outcome.success

        wallet.movements = [
            make_movement(1, "bark.arkoor", "receive", output_vtxos=["v1"], effective_balance_sat=5000),
        ]
        stats = await reconciler.reconcile()

        assert stats["errors"] == 0
        assert stats["created"] == 1
        transactions, _ = await store.list_transactions()
        assert transactions[0].movement_id == 1


class TestBackgroundJobDeferral:
    """Foreground backups wait for a background job holding the wallet"""

    @pytest.mark.asyncio
    async def test_auto_backup_starts_after_release(self, coordinator, job_supervisor, wallet_data, backup_server):
        assert job_supervisor.try_acquire("background_sync")
        task = asyncio.create_task(coordinator.trigger_auto_backup("app_open"))

        await asyncio.sleep(0.05)
        assert backup_server.backups == {}
        assert coordinator.state.last_backup_status == BackupStatus.IDLE

        job_supervisor.release()
        outcome = await task
        assert outcome.success
        assert list(backup_server.backups) == [1]

    @pytest.mark.asyncio
    async def test_wait_is_bounded(self, coordinator, job_supervisor, wallet_data, backup_server, settings):
        assert job_supervisor.try_acquire("background_sync")

        outcome = await asyncio.wait_for(coordinator.backup_when_ready(), timeout=5)

        assert outcome.success
        assert job_supervisor.owner == "background_sync"
        assert list(backup_server.backups) == [1]
