"""Sealing codec for wallet backups.

Derives a symmetric key from the wallet phrase and seals/opens backup blobs
with AES-256-GCM.

Blob layout before base64 transport encoding:
    nonce (12) | ciphertext (n) | tag (16)

The PBKDF2 salt is the first 16 bytes of SHA-256(phrase). It is
deterministic so that a fresh device can restore with the phrase alone; the
backup server never stores salt metadata.
"""
import base64
import binascii
import hashlib
import os
from typing import Union

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ledgerkeep.errors import AuthenticationError

logger = structlog.get_logger()

KDF_ITERATIONS = 600_000
KEY_LENGTH = 32
SALT_LENGTH = 16
NONCE_LENGTH = 12
TAG_LENGTH = 16


def derive_salt(phrase: str) -> bytes:
    """Fixed-length hash prefix of the phrase"""
    return hashlib.sha256(phrase.encode("utf-8")).digest()[:SALT_LENGTH]


def derive_key(phrase: str, iterations: int = KDF_ITERATIONS) -> bytes:
    """PBKDF2-HMAC-SHA256 key for the phrase"""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=derive_salt(phrase),
        iterations=iterations,
    )
    return kdf.derive(phrase.encode("utf-8"))


def seal(plaintext: bytes, phrase: str, iterations: int = KDF_ITERATIONS) -> str:
    """Encrypt plaintext under the phrase and return the base64 blob"""
    key = derive_key(phrase, iterations)
    nonce = os.urandom(NONCE_LENGTH)
    # AESGCM appends the 16-byte tag to the ciphertext
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    return base64.b64encode(nonce + sealed).decode("ascii")


def open_sealed(blob: Union[str, bytes], phrase: str, iterations: int = KDF_ITERATIONS) -> bytes:
    """
    Decrypt a blob produced by seal().

    Raises AuthenticationError on any decode, length or tag failure; partial
    plaintext is never returned.
    """
    if isinstance(blob, bytes):
        try:
            blob = blob.decode("ascii")
        except UnicodeDecodeError as e:
            raise AuthenticationError("Sealed backup is not valid text") from e

    try:
        raw = base64.b64decode(blob.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise AuthenticationError("Sealed backup is not valid base64") from e

    if len(raw) < NONCE_LENGTH + TAG_LENGTH:
        raise AuthenticationError("Sealed backup is too short")

    nonce, sealed = raw[:NONCE_LENGTH], raw[NONCE_LENGTH:]
    key = derive_key(phrase, iterations)
    try:
        return AESGCM(key).decrypt(nonce, sealed, None)
    except InvalidTag as e:
        logger.warning("Sealed backup failed authentication", size=len(raw))
        raise AuthenticationError("Backup could not be decrypted with this phrase") from e


class SealingCodec:
    """Codec bound to a KDF iteration count"""

    def __init__(self, iterations: int = KDF_ITERATIONS):
        self.iterations = iterations

    def seal(self, plaintext: bytes, phrase: str) -> str:
        return seal(plaintext, phrase, self.iterations)

    def open(self, blob: Union[str, bytes], phrase: str) -> bytes:
        return open_sealed(blob, phrase, self.iterations)
