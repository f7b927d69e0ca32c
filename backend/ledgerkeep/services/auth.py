"""Challenge/response authentication against the backup service"""
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
import structlog

from ledgerkeep.config import Settings, get_settings
from ledgerkeep.errors import AuthenticationError
from ledgerkeep.services.wallet import AUTH_KEY_INDEX, WalletBridge

logger = structlog.get_logger()


@dataclass(frozen=True)
class AuthCredentials:
    """Signed single-use challenge"""
    key: str
    signature: str
    challenge: str

    def headers(self) -> Dict[str, str]:
        return {
            "x-auth-k1": self.challenge,
            "x-auth-sig": self.signature,
            "x-auth-key": self.key,
        }


class ChallengeAuthenticator:
    """
    Signs a fresh server challenge (k1) with the wallet key at a fixed index.

    Every call fetches its own challenge; challenges are never reused.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        wallet: WalletBridge,
        settings: Optional[Settings] = None,
    ):
        self._http = http
        self._wallet = wallet
        self.settings = settings or get_settings()

    @property
    def challenge_url(self) -> str:
        return f"{self.settings.server_endpoint.rstrip('/')}/v0/getk1"

    async def get_challenge(self) -> str:
        """Fetch a single-use challenge (unauthenticated)"""
        try:
            response = await self._http.get(self.challenge_url)
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Failed to get k1 for authentication: {e}") from e

        if response.status_code >= 400:
            raise AuthenticationError(
                f"Failed to get k1 for authentication: {response.status_code} {response.text}"
            )

        try:
            k1 = response.json().get("k1")
        except (ValueError, AttributeError) as e:
            raise AuthenticationError("Failed to get k1 for authentication: malformed response") from e

        if not k1 or not isinstance(k1, str):
            raise AuthenticationError("Failed to get k1 for authentication: empty challenge")
        return k1

    async def authenticate(self) -> AuthCredentials:
        """Sign a fresh challenge with the loaded wallet"""
        challenge = await self.get_challenge()
        try:
            await self._wallet.load_wallet_if_needed()
            key_pair = await self._wallet.peek_key_pair(AUTH_KEY_INDEX)
            signature = await self._wallet.sign_message(challenge, AUTH_KEY_INDEX)
        except AuthenticationError:
            raise
        except Exception as e:
            logger.warning("Failed to sign authentication challenge", error=str(e))
            raise AuthenticationError(f"Failed to sign challenge: {e}") from e

        return AuthCredentials(key=key_pair.public_key, signature=signature, challenge=challenge)

    async def authenticate_with_phrase(self, mnemonic: str) -> AuthCredentials:
        """Sign a fresh challenge with keys derived from the phrase; no wallet session needed"""
        challenge = await self.get_challenge()
        variant = self.settings.app_variant
        try:
            signature = await self._wallet.sign_message_with_mnemonic(
                challenge, mnemonic, variant, AUTH_KEY_INDEX
            )
            key_pair = await self._wallet.derive_key_pair_from_mnemonic(
                mnemonic, variant, AUTH_KEY_INDEX
            )
        except Exception as e:
            logger.warning("Failed to sign challenge with phrase-derived key", error=type(e).__name__)
            raise AuthenticationError("Failed to sign challenge with the supplied phrase") from e

        return AuthCredentials(key=key_pair.public_key, signature=signature, challenge=challenge)
