"""Sync API endpoints"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from ledgerkeep.errors import LedgerKeepError
from ledgerkeep.api.v1.deps import get_ready_runtime, raise_http_error
from ledgerkeep.config import get_settings
from ledgerkeep.schemas.sync import AppStateRequest, LightningClaimRequest, SyncResponse, SyncStatusResponse
from ledgerkeep.schemas.transaction import TransactionResponse
from ledgerkeep.services.job_guard import supervisor
from ledgerkeep.services.runtime import Runtime
from ledgerkeep.services.sync import get_sync_scheduler

router = APIRouter()


@router.post("", response_model=SyncResponse)
async def sync_now(runtime: Runtime = Depends(get_ready_runtime)):
    """
    Sync the wallet and reconcile local history.

    Waits (bounded) for a running background job before starting.
    """
    stats = await runtime.wallet_sync.sync_in_foreground()
    if stats.get("error"):
        raise HTTPException(status_code=502, detail=f"Sync failed: {stats['error']}")
    return SyncResponse(message="Sync completed", stats=stats)


@router.post("/lifecycle")
async def app_lifecycle(
    request: AppStateRequest,
    background_tasks: BackgroundTasks,
    runtime: Runtime = Depends(get_ready_runtime),
):
    """Foreground/background transition of the host app"""
    scheduler = get_sync_scheduler()
    if scheduler is not None:
        scheduler.set_app_state(request.state)
    if request.state == "active":
        # A job killed while the app was backgrounded leaves its flag behind
        supervisor.clear_stale()
        background_tasks.add_task(runtime.backups.trigger_auto_backup, "app_open")
    return {"app_state": request.state}


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status():
    scheduler = get_sync_scheduler()
    if scheduler is None:
        return SyncStatusResponse(
            running=False,
            app_state="active",
            interval_seconds=get_settings().sync_interval_seconds,
            background_job=supervisor.owner,
        )
    return SyncStatusResponse(**scheduler.status(), background_job=supervisor.owner)


@router.post("/lightning/claim", response_model=TransactionResponse)
async def claim_lightning_receive(
    request: LightningClaimRequest,
    runtime: Runtime = Depends(get_ready_runtime),
):
    """Claim an incoming lightning payment, retrying until it settles"""
    try:
        transaction = await runtime.wallet_sync.claim_lightning_receive(
            request.payment_hash,
            request.amount_sat,
            request.description,
        )
    except LedgerKeepError as e:
        raise_http_error(e)
    return TransactionResponse.model_validate(transaction)
