"""Process-wide wiring of the services over the registered collaborators"""
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from ledgerkeep.config import Settings, get_settings
from ledgerkeep.models.database import open_store
from ledgerkeep.services.auth import ChallengeAuthenticator
from ledgerkeep.services.backup import BackupCoordinator
from ledgerkeep.services.backup_client import BackupDirectoryClient
from ledgerkeep.services.job_guard import supervisor
from ledgerkeep.services.ledger_store import LedgerStore
from ledgerkeep.services.reconcile import LedgerReconciler
from ledgerkeep.services.sync import WalletSync
from ledgerkeep.services.wallet import MempoolPriceOracle, ServiceRegistry, registry as default_registry

logger = structlog.get_logger()


class RuntimeNotReady(RuntimeError):
    """No wallet collaborators have been registered yet"""


@dataclass
class Runtime:
    http: httpx.AsyncClient
    store: LedgerStore
    authenticator: ChallengeAuthenticator
    backup_client: BackupDirectoryClient
    reconciler: LedgerReconciler
    backups: BackupCoordinator
    wallet_sync: WalletSync


_runtime: Optional[Runtime] = None


async def build_runtime(
    registry: ServiceRegistry,
    settings: Optional[Settings] = None,
    http: Optional[httpx.AsyncClient] = None,
) -> Runtime:
    settings = settings or get_settings()
    if not registry.ready:
        raise RuntimeNotReady("Wallet and credential store must be registered")

    await open_store(settings.database_url)
    http = http or httpx.AsyncClient(timeout=settings.http_timeout)
    store = LedgerStore()
    prices = registry.prices or MempoolPriceOracle(http, settings.price_endpoint)
    authenticator = ChallengeAuthenticator(http, registry.wallet, settings)
    backup_client = BackupDirectoryClient(http, authenticator, settings)
    reconciler = LedgerReconciler(store, registry.wallet, prices, settings)
    backups = BackupCoordinator(
        backup_client,
        authenticator,
        registry.wallet,
        registry.credentials,
        settings,
        supervisor=supervisor,
    )
    wallet_sync = WalletSync(registry.wallet, store, reconciler, backup_client, supervisor, settings)
    return Runtime(
        http=http,
        store=store,
        authenticator=authenticator,
        backup_client=backup_client,
        reconciler=reconciler,
        backups=backups,
        wallet_sync=wallet_sync,
    )


async def get_runtime() -> Runtime:
    """Runtime over the global registry, built on first use"""
    global _runtime
    if _runtime is None:
        _runtime = await build_runtime(default_registry)
        logger.info("Runtime initialized")
    return _runtime


def set_runtime(runtime: Optional[Runtime]) -> None:
    global _runtime
    _runtime = runtime


async def close_runtime() -> None:
    global _runtime
    if _runtime is not None:
        await _runtime.http.aclose()
        _runtime = None
