"""Pytest configuration and fixtures for LedgerKeep tests"""
from pathlib import Path
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from fakes import SERVER, MNEMONIC, FakeBackupServer, FakeCredentials, FakePrices, FakeWallet, FeedRecorder
from ledgerkeep.config import Settings
from ledgerkeep.models.database import close_store, open_store
from ledgerkeep.services.auth import ChallengeAuthenticator
from ledgerkeep.services.backup import BackupCoordinator
from ledgerkeep.services.backup_client import BackupDirectoryClient
from ledgerkeep.services.feed import EventFeed
from ledgerkeep.services.job_guard import JobSupervisor
from ledgerkeep.services.ledger_store import LedgerStore
from ledgerkeep.services.reconcile import LedgerReconciler
from ledgerkeep.services.sync import WalletSync


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a temporary data directory with a cheap KDF"""
    return Settings(
        data_dir=tmp_path / "data",
        cache_dir=tmp_path / "cache",
        server_endpoint=SERVER,
        kdf_iterations=1_000,
        backup_slot_count=2,
        settlement_max_attempts=5,
        settlement_interval_seconds=0,
        foreground_wait_seconds=0.2,
    )


@pytest.fixture
def wallet_data(settings: Settings) -> Path:
    """Wallet data directory with a few files"""
    path = settings.wallet_data_path
    (path / "db").mkdir(parents=True)
    (path / "config.toml").write_text("network = 'signet'\n")
    (path / "db" / "vtxos.bin").write_bytes(bytes(range(256)) * 4)
    return path


@pytest_asyncio.fixture
async def store(settings: Settings) -> AsyncGenerator[LedgerStore, None]:
    """Ledger store on a fresh temporary database"""
    await close_store()
    await open_store(settings.database_url)
    try:
        yield LedgerStore()
    finally:
        await close_store()


@pytest.fixture
def backup_server() -> FakeBackupServer:
    return FakeBackupServer()


@pytest_asyncio.fixture
async def http(backup_server: FakeBackupServer) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(backup_server.handle)) as client:
        yield client


@pytest.fixture
def wallet() -> FakeWallet:
    return FakeWallet()


@pytest.fixture
def credentials(settings: Settings) -> FakeCredentials:
    return FakeCredentials({settings.credential_service: MNEMONIC})


@pytest.fixture
def prices() -> FakePrices:
    return FakePrices()


@pytest.fixture
def event_feed() -> EventFeed:
    return EventFeed()


@pytest.fixture
def events(event_feed: EventFeed) -> FeedRecorder:
    return FeedRecorder(event_feed)


@pytest.fixture
def authenticator(http, wallet, settings) -> ChallengeAuthenticator:
    return ChallengeAuthenticator(http, wallet, settings)


@pytest.fixture
def backup_client(http, authenticator, settings) -> BackupDirectoryClient:
    return BackupDirectoryClient(http, authenticator, settings)


@pytest.fixture
def coordinator(backup_client, authenticator, wallet, credentials, settings, event_feed, job_supervisor) -> BackupCoordinator:
    return BackupCoordinator(
        backup_client,
        authenticator,
        wallet,
        credentials,
        settings,
        feed=event_feed,
        supervisor=job_supervisor,
    )


@pytest.fixture
def reconciler(store, wallet, prices, settings, event_feed) -> LedgerReconciler:
    return LedgerReconciler(store, wallet, prices, settings, feed=event_feed)


@pytest.fixture
def job_supervisor() -> JobSupervisor:
    return JobSupervisor(stale_after=60)


@pytest.fixture
def wallet_sync(wallet, store, reconciler, backup_client, job_supervisor, settings) -> WalletSync:
    return WalletSync(wallet, store, reconciler, backup_client, job_supervisor, settings)


@pytest_asyncio.fixture
async def client(
    store,
    http,
    wallet,
    credentials,
    prices,
    settings,
) -> AsyncGenerator[AsyncClient, None]:
    """API client over a runtime wired to the fakes"""
    from ledgerkeep.main import app
    from ledgerkeep.services.runtime import build_runtime, set_runtime
    from ledgerkeep.services.wallet import ServiceRegistry

    registry = ServiceRegistry()
    registry.register(wallet=wallet, credentials=credentials, prices=prices)
    runtime = await build_runtime(registry, settings, http=http)
    set_runtime(runtime)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    set_runtime(None)

