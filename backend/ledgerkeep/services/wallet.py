"""Boundaries to the collaborators LedgerKeep drives but does not implement.

The wallet's signing/derivation/settlement engine, the platform credential
store and market data are supplied by the host application. They are
described here as protocols; ``ServiceRegistry`` holds the instances the host
registers at startup.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Sequence, runtime_checkable

import httpx
import structlog

from ledgerkeep.config import Settings, get_settings
from ledgerkeep.errors import AuthenticationError, NetworkError, ValidationError
from ledgerkeep.schemas.movement import Movement

logger = structlog.get_logger()

# Account index whose key authenticates against the backup service
AUTH_KEY_INDEX = 0


@dataclass(frozen=True)
class KeyPair:
    public_key: str


@runtime_checkable
class WalletBridge(Protocol):
    """Native wallet/ledger library"""

    def is_suspended(self) -> bool: ...

    async def load_wallet_if_needed(self) -> None: ...

    async def peek_key_pair(self, index: int) -> KeyPair: ...

    async def sign_message(self, message: str, index: int) -> str: ...

    async def derive_key_pair_from_mnemonic(self, mnemonic: str, variant: str, index: int) -> KeyPair: ...

    async def sign_message_with_mnemonic(self, message: str, mnemonic: str, variant: str, index: int) -> str: ...

    async def history(self, limit: int) -> Sequence[Movement]: ...

    async def sync(self) -> None: ...

    async def onchain_sync(self) -> None: ...

    async def register_all_confirmed_boards(self) -> None: ...

    async def check_and_claim_all_open_ln_receives(self) -> None: ...

    async def check_and_claim_ln_receive(self, payment_hash: str) -> bool: ...


@runtime_checkable
class CredentialStore(Protocol):
    """Platform secure-credential storage, keyed by service name"""

    async def get_secret(self, service: str) -> Optional[str]: ...

    async def set_secret(self, service: str, secret: str) -> None: ...


@runtime_checkable
class PriceOracle(Protocol):
    """Historical market data"""

    async def historical_btc_usd(self, at: datetime) -> float: ...


async def get_mnemonic(credentials: CredentialStore, settings: Optional[Settings] = None) -> str:
    """Wallet phrase for the configured network variant"""
    settings = settings or get_settings()
    mnemonic = await credentials.get_secret(settings.credential_service)
    if not mnemonic:
        raise AuthenticationError("No wallet found. Please create a wallet first.")
    return mnemonic


async def set_mnemonic(credentials: CredentialStore, mnemonic: str, settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    await credentials.set_secret(settings.credential_service, mnemonic)


class MempoolPriceOracle:
    """BTC/USD prices from a mempool.space compatible endpoint"""

    def __init__(self, http: httpx.AsyncClient, endpoint: Optional[str] = None):
        self._http = http
        self.endpoint = endpoint or get_settings().price_endpoint

    async def historical_btc_usd(self, at: datetime) -> float:
        params = {"currency": "USD", "timestamp": int(at.timestamp())}
        try:
            response = await self._http.get(self.endpoint, params=params)
        except httpx.HTTPError as e:
            raise NetworkError(f"Price lookup failed: {e}") from e

        if response.status_code >= 400:
            raise NetworkError("Price lookup failed", status=response.status_code, body=response.text)

        try:
            prices = response.json().get("prices") or []
            return float(prices[0]["USD"])
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            raise ValidationError(f"No historical price available for {at.isoformat()}") from e


class ServiceRegistry:
    """Collaborators registered by the host application"""

    def __init__(self):
        self.wallet: Optional[WalletBridge] = None
        self.credentials: Optional[CredentialStore] = None
        self.prices: Optional[PriceOracle] = None

    def register(
        self,
        wallet: Optional[WalletBridge] = None,
        credentials: Optional[CredentialStore] = None,
        prices: Optional[PriceOracle] = None,
    ) -> None:
        if wallet is not None:
            self.wallet = wallet
        if credentials is not None:
            self.credentials = credentials
        if prices is not None:
            self.prices = prices
        logger.info(
            "Collaborators registered",
            wallet=self.wallet is not None,
            credentials=self.credentials is not None,
            prices=self.prices is not None,
        )

    @property
    def ready(self) -> bool:
        return self.wallet is not None and self.credentials is not None

    def clear(self) -> None:
        self.wallet = None
        self.credentials = None
        self.prices = None


registry = ServiceRegistry()
