"""Shared dependencies and error mapping for the v1 routes"""
from typing import NoReturn

from fastapi import HTTPException

from ledgerkeep.errors import (
    AuthenticationError,
    LedgerKeepError,
    NetworkError,
    NotFoundError,
    SettlementTimeout,
    StorageError,
    ValidationError,
    redact_error_message,
)
from ledgerkeep.models.database import open_store
from ledgerkeep.services.ledger_store import LedgerStore
from ledgerkeep.services.runtime import Runtime, RuntimeNotReady, get_runtime

ERROR_STATUS = {
    NotFoundError: 404,
    AuthenticationError: 401,
    ValidationError: 502,
    NetworkError: 502,
    SettlementTimeout: 504,
    StorageError: 500,
}


def raise_http_error(error: LedgerKeepError) -> NoReturn:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            raise HTTPException(status_code=status_code, detail=redact_error_message(error)) from error
    raise HTTPException(status_code=500, detail=redact_error_message(error)) from error


async def get_ledger_store() -> LedgerStore:
    await open_store()
    return LedgerStore()


async def get_ready_runtime() -> Runtime:
    try:
        return await get_runtime()
    except RuntimeNotReady as e:
        raise HTTPException(status_code=503, detail=str(e))
