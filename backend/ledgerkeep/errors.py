"""Error taxonomy shared by the backup pipeline and the reconciliation engine"""
import re
from typing import Optional


class LedgerKeepError(Exception):
    """Base class for all expected failures"""


class NetworkError(LedgerKeepError):
    """Transport failure or a non-2xx response"""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body

    def __str__(self):
        if self.status is None:
            return super().__str__()
        return f"{super().__str__()}: {self.status} {self.body}".rstrip()


class AuthenticationError(LedgerKeepError):
    """Challenge/signature failure, or a sealed blob that does not open with the phrase"""


class ValidationError(LedgerKeepError):
    """Malformed or empty response"""


class NotFoundError(LedgerKeepError):
    """No backup exists at the requested version"""


class StorageError(LedgerKeepError):
    """Local disk or database failure"""


class UnclassifiedMovement(LedgerKeepError):
    """Movement whose subsystem pair has no local kind; skipped, never filed"""


class SettlementTimeout(LedgerKeepError):
    """Bounded retry loop gave up waiting for a remote settlement"""


_URL_PATTERN = re.compile(r"https?://\S+")


def redact_error_message(error: object) -> str:
    """Human-readable error text with pre-signed URLs removed"""
    message = str(error) or type(error).__name__
    return _URL_PATTERN.sub("<redacted>", message)
