"""
Backup pipeline.

Snapshots the wallet data directory, seals it under the wallet phrase and
publishes it into one of a fixed number of rotating remote slots. Restore
runs the pipeline in reverse on a fresh device with only the phrase.
"""
import asyncio
import io
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import structlog
from pydantic import ValidationError as SchemaError

from ledgerkeep.config import Settings, get_settings
from ledgerkeep.errors import StorageError, ValidationError, redact_error_message
from ledgerkeep.models.database import close_store, is_store_open, open_store
from ledgerkeep.schemas.backup import BackupInfo, BackupState, BackupStatus, RestoreProgress
from ledgerkeep.services.auth import ChallengeAuthenticator
from ledgerkeep.services.backup_client import BackupDirectoryClient
from ledgerkeep.services.feed import EventFeed, feed as default_feed
from ledgerkeep.services.job_guard import JobSupervisor, SingleFlight, supervisor as default_supervisor
from ledgerkeep.services.sealing import SealingCodec
from ledgerkeep.services.wallet import CredentialStore, WalletBridge, get_mnemonic, set_mnemonic

logger = structlog.get_logger()


class BackupStep(str, Enum):
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    ENCRYPTING = "encrypting"
    REQUESTING_SLOT = "requesting_slot"
    UPLOADING = "uploading"
    COMPLETING = "completing"
    FAILED = "failed"


@dataclass
class BackupOutcome:
    success: bool
    skipped: bool = False
    version: Optional[int] = None
    size: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    reason: Optional[str] = None
    step: BackupStep = BackupStep.IDLE


@dataclass
class RestoreOutcome:
    success: bool
    version: Optional[int] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None


RESTORE_STEPS = {
    "authenticating": 10,
    "locating": 20,
    "downloading": 40,
    "decrypting": 60,
    "unpacking": 75,
    "installing": 85,
    "initializing": 95,
    "complete": 100,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def backup_created_at(backup: BackupInfo) -> datetime:
    """Server timestamp as aware UTC; unreadable values sort as oldest"""
    value = backup.created_at.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning("Unparseable backup timestamp", version=backup.backup_version, created_at=backup.created_at)
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def choose_backup_version(existing: List[BackupInfo], slot_count: int) -> int:
    """
    Slot for the next upload.

    First free slot in 1..slot_count, otherwise the slot holding the oldest
    backup. Versions outside the range are ignored.
    """
    in_range = [b for b in existing if 1 <= b.backup_version <= slot_count]
    used = {b.backup_version for b in in_range}
    for version in range(1, slot_count + 1):
        if version not in used:
            return version
    return min(in_range, key=backup_created_at).backup_version


def create_snapshot(source: Path) -> bytes:
    """gzip'd tar of the wallet data directory, rooted at its own name"""
    if not source.exists():
        raise StorageError(f"Wallet data directory not found: {source}")

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        tar.add(str(source), arcname=source.name)
    return buffer.getvalue()


def unpack_snapshot(archive: bytes, staging_root: Path, name: str) -> Path:
    """Extract an archive under staging_root and return the wallet directory in it"""
    staging_root.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix="restore-", dir=staging_root))
    try:
        with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
            tar.extractall(path=staging, filter="data")
    except (tarfile.TarError, OSError) as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise ValidationError(f"Backup archive is unreadable: {e}") from e

    extracted = staging / name
    if not extracted.is_dir():
        shutil.rmtree(staging, ignore_errors=True)
        raise ValidationError(f"Backup archive does not contain {name}")
    return extracted


def swap_into_place(staged: Path, target: Path) -> None:
    """Replace target with staged; the previous contents are kept until the move succeeds"""
    previous = target.with_name(target.name + ".previous")
    if previous.exists():
        shutil.rmtree(previous)

    target.parent.mkdir(parents=True, exist_ok=True)
    if target.exists():
        target.rename(previous)
    try:
        shutil.move(str(staged), str(target))
    except OSError:
        if previous.exists():
            shutil.rmtree(target, ignore_errors=True)
            previous.rename(target)
        raise
    shutil.rmtree(previous, ignore_errors=True)


class BackupStateStore:
    """JSON document holding the persisted backup status"""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> BackupState:
        if not self.path.exists():
            return BackupState()
        try:
            return BackupState.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, SchemaError) as e:
            logger.warning("Discarding unreadable backup state", path=str(self.path), error=str(e))
            return BackupState()

    def save(self, state: BackupState) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(state.model_dump_json(indent=2), encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            raise StorageError(f"Failed to persist backup state: {e}") from e


class BackupCoordinator:
    """
    Drives backup and restore runs.

    Runs are single-flight per account. Expected failures end the run with
    an outcome carrying a redacted message; they are never raised.
    """

    def __init__(
        self,
        client: BackupDirectoryClient,
        authenticator: ChallengeAuthenticator,
        wallet: WalletBridge,
        credentials: CredentialStore,
        settings: Optional[Settings] = None,
        feed: Optional[EventFeed] = None,
        state_store: Optional[BackupStateStore] = None,
        flights: Optional[SingleFlight] = None,
        supervisor: Optional[JobSupervisor] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.client = client
        self.authenticator = authenticator
        self.wallet = wallet
        self.credentials = credentials
        self.settings = settings or get_settings()
        self.feed = feed or default_feed
        self.state_store = state_store or BackupStateStore(self.settings.data_dir / "backup_state.json")
        self.codec = SealingCodec(self.settings.kdf_iterations)
        self.flights = flights or SingleFlight()
        self.supervisor = supervisor or default_supervisor
        self._clock = clock
        self.state = self.state_store.load()
        self.step = BackupStep.IDLE
        self.backups: List[BackupInfo] = []
        self.restore_progress: Optional[RestoreProgress] = None

    @property
    def account_key(self) -> str:
        return self.settings.credential_service

    @property
    def is_running(self) -> bool:
        return self.flights.is_running(self.account_key)

    async def _record(self, **changes) -> None:
        self.state = self.state.model_copy(update=changes)
        self.state_store.save(self.state)
        await self.feed.publish("backup", "status", self.state.model_dump(mode="json"))

    # Backup

    async def perform_backup(self) -> BackupOutcome:
        """One backup run: snapshot, seal, pick a slot, upload, publish"""
        if not self.flights.try_acquire(self.account_key):
            logger.info("Backup already in progress, skipping")
            return BackupOutcome(success=False, skipped=True, reason="already_running")

        version: Optional[int] = None
        size: Optional[int] = None
        try:
            await self._record(
                last_backup_status=BackupStatus.IN_PROGRESS,
                last_backup_attempt_at=self._clock(),
                last_backup_error=None,
            )

            self.step = BackupStep.SNAPSHOTTING
            mnemonic = await get_mnemonic(self.credentials, self.settings)
            archive = await asyncio.to_thread(create_snapshot, self.settings.wallet_data_path)

            self.step = BackupStep.ENCRYPTING
            blob = await asyncio.to_thread(self.codec.seal, archive, mnemonic)
            data = blob.encode("ascii")
            size = len(data)

            self.step = BackupStep.REQUESTING_SLOT
            self.backups = await self.client.list_backups()
            version = choose_backup_version(self.backups, self.settings.backup_slot_count)
            slot = await self.client.get_upload_url(version, size)

            self.step = BackupStep.UPLOADING
            await self.client.put_object(slot.upload_url, data)

            self.step = BackupStep.COMPLETING
            await self.client.complete_upload(slot.s3_key, version, size)
        except Exception as e:
            failed_step = self.step
            error = redact_error_message(e)
            logger.warning("Backup failed", step=failed_step.value, error=error)
            self.step = BackupStep.FAILED
            await self._record(last_backup_status=BackupStatus.FAILED, last_backup_error=error)
            return BackupOutcome(
                success=False,
                version=version,
                size=size,
                error=error,
                error_kind=type(e).__name__,
                step=failed_step,
            )
        finally:
            self.flights.release(self.account_key)
            if self.step != BackupStep.FAILED:
                self.step = BackupStep.IDLE

        await self._record(
            last_backup_status=BackupStatus.SUCCESS,
            last_backup_at=self._clock(),
            last_backup_version=version,
        )
        logger.info("Backup completed", version=version, size=size)
        return BackupOutcome(success=True, version=version, size=size)

    async def backup_when_ready(self) -> BackupOutcome:
        """Foreground backup: defers (bounded) behind a background job holding the wallet"""
        return await self.supervisor.run_when_ready(
            self.perform_backup,
            max_wait=self.settings.foreground_wait_seconds,
        )

    async def expire_stale_in_progress(self) -> bool:
        """Turn an in-progress status left behind by a dead run into a failure"""
        if self.state.last_backup_status != BackupStatus.IN_PROGRESS or self.is_running:
            return False
        started = self.state.last_backup_attempt_at
        age = (self._clock() - started).total_seconds() if started else None
        if age is not None and age < self.settings.backup_in_progress_timeout_seconds:
            return False
        logger.warning("Clearing stale in-progress backup status", age_seconds=age)
        await self._record(last_backup_status=BackupStatus.FAILED, last_backup_error="Backup timed out")
        return True

    def auto_backup_skip_reason(self, force: bool = False) -> Optional[str]:
        """Why an automatic backup should not run now, or None"""
        if self.wallet.is_suspended():
            return "wallet_suspended"
        if self.is_running or self.state.last_backup_status == BackupStatus.IN_PROGRESS:
            return "already_running"
        if force:
            return None
        if not self.state.backup_enabled:
            return "disabled"

        now = self._clock()
        last_success = self.state.last_backup_at
        if last_success and (now - last_success).total_seconds() < self.settings.auto_backup_freshness_seconds:
            return "fresh"
        last_attempt = self.state.last_backup_attempt_at
        if last_attempt and (now - last_attempt).total_seconds() < self.settings.auto_backup_min_interval_seconds:
            return "too_soon"
        return None

    async def trigger_auto_backup(self, reason: str, force: bool = False) -> BackupOutcome:
        """Back up on a lifecycle event (wallet created, app open) unless recently done"""
        await self.expire_stale_in_progress()
        skip = self.auto_backup_skip_reason(force)
        if skip is not None:
            logger.debug("Skipping auto-backup", trigger=reason, skip=skip)
            return BackupOutcome(success=False, skipped=True, reason=skip)

        logger.info("Auto-backup starting", trigger=reason)
        outcome = await self.backup_when_ready()
        if outcome.success:
            logger.debug("Auto-backup completed", trigger=reason)
        elif not outcome.skipped:
            logger.warning("Auto-backup failed", trigger=reason, error=outcome.error)
        return outcome

    # Management

    async def list_backups(self) -> List[BackupInfo]:
        self.backups = await self.client.list_backups()
        return self.backups

    async def delete_backup(self, version: int) -> None:
        await self.client.delete_backup(version)
        self.backups = [b for b in self.backups if b.backup_version != version]
        logger.info("Backup deleted", version=version)

    async def set_backup_enabled(self, enabled: bool) -> BackupState:
        """Toggle backups remotely; the local flag is reverted if the server call fails"""
        previous = self.state.backup_enabled
        await self._record(backup_enabled=enabled)
        try:
            await self.client.update_settings(enabled)
        except Exception:
            logger.warning("Failed to update backup settings, reverting", enabled=enabled)
            await self._record(backup_enabled=previous)
            raise
        return self.state

    # Restore

    async def _progress(self, step: str) -> None:
        percent = RESTORE_STEPS[step]
        if self.restore_progress is not None:
            percent = max(percent, self.restore_progress.percent)
        self.restore_progress = RestoreProgress(step=step, percent=percent)
        await self.feed.publish("restore", "progress", self.restore_progress.model_dump())

    async def _install(self, staged: Path, target: Path) -> None:
        """
        Swap the staged wallet data in.

        The ledger database lives inside the wallet data directory, so an open
        store is closed around the swap and reopened on the restored file,
        which brings a backup written under an older schema up to date.
        """
        reopen = is_store_open()
        await close_store()
        try:
            await asyncio.to_thread(swap_into_place, staged, target)
        finally:
            if reopen:
                await open_store(self.settings.database_url)

    async def restore(self, mnemonic: str, version: Optional[int] = None) -> RestoreOutcome:
        """
        Restore wallet data from a backup using only the phrase.

        Nothing is written into the wallet data directory until the blob has
        been opened and unpacked, so a wrong phrase leaves it untouched.
        """
        if not self.flights.try_acquire(self.account_key):
            return RestoreOutcome(success=False, version=version, error="Backup or restore already in progress")

        target = self.settings.wallet_data_path
        staged: Optional[Path] = None
        try:
            await self._progress("authenticating")
            credentials = await self.authenticator.authenticate_with_phrase(mnemonic)

            await self._progress("locating")
            location = await self.client.get_download_url(version, credentials=credentials)

            await self._progress("downloading")
            blob = await self.client.download_object(location.download_url)

            await self._progress("decrypting")
            archive = await asyncio.to_thread(self.codec.open, blob, mnemonic)

            await self._progress("unpacking")
            staged = await asyncio.to_thread(
                unpack_snapshot, archive, self.settings.cache_dir / "restore", target.name
            )

            await self._progress("installing")
            await self._install(staged, target)
            await set_mnemonic(self.credentials, mnemonic, self.settings)

            await self._progress("initializing")
            await self.wallet.load_wallet_if_needed()
            await self._progress("complete")
        except Exception as e:
            error = redact_error_message(e)
            logger.warning("Restore failed", version=version, error=error)
            return RestoreOutcome(success=False, version=version, error=error, error_kind=type(e).__name__)
        finally:
            if staged is not None:
                shutil.rmtree(staged.parent, ignore_errors=True)
            self.restore_progress = None
            self.flights.release(self.account_key)
            await self.feed.publish("restore", "cleared", {})

        logger.info("Restore completed", version=version)
        return RestoreOutcome(success=True, version=version)
