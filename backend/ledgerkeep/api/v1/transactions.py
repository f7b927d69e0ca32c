"""Local transaction history endpoints"""
from fastapi import APIRouter, Depends, HTTPException, Query

from ledgerkeep.errors import LedgerKeepError
from ledgerkeep.api.v1.deps import get_ledger_store, raise_http_error
from ledgerkeep.schemas.transaction import TransactionListResponse, TransactionResponse
from ledgerkeep.services.feed import feed
from ledgerkeep.services.ledger_store import LedgerStore

router = APIRouter()


@router.get("", response_model=TransactionListResponse)
async def list_transactions(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    store: LedgerStore = Depends(get_ledger_store),
):
    """Transaction history, newest first"""
    try:
        transactions, total = await store.list_transactions(skip=skip, limit=limit)
    except LedgerKeepError as e:
        raise_http_error(e)

    return TransactionListResponse(
        transactions=[TransactionResponse.model_validate(t) for t in transactions],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: str,
    store: LedgerStore = Depends(get_ledger_store),
):
    try:
        transaction = await store.get_transaction(transaction_id)
    except LedgerKeepError as e:
        raise_http_error(e)

    if not transaction:
        raise HTTPException(status_code=404, detail=f"Transaction {transaction_id} not found")
    return TransactionResponse.model_validate(transaction)


@router.delete("/{transaction_id}")
async def delete_transaction(
    transaction_id: str,
    store: LedgerStore = Depends(get_ledger_store),
):
    """Remove a row from local history; the remote ledger is not affected"""
    try:
        removed = await store.remove_transaction(transaction_id)
    except LedgerKeepError as e:
        raise_http_error(e)

    if not removed:
        raise HTTPException(status_code=404, detail=f"Transaction {transaction_id} not found")
    await feed.publish("transactions", "removed", {"id": transaction_id})
    return {"deleted": True, "id": transaction_id}
