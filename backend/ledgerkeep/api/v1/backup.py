"""Backup and restore endpoints"""
from fastapi import APIRouter, Depends

from ledgerkeep.errors import LedgerKeepError
from ledgerkeep.api.v1.deps import get_ready_runtime, raise_http_error
from ledgerkeep.schemas.backup import (
    BackupListResponse,
    BackupOutcomeResponse,
    BackupSettingsRequest,
    BackupState,
    BackupStatusResponse,
    RestoreOutcomeResponse,
    RestoreProgressResponse,
    RestoreRequest,
)
from ledgerkeep.services.runtime import Runtime

router = APIRouter()


@router.get("/status", response_model=BackupStatusResponse)
async def backup_status(runtime: Runtime = Depends(get_ready_runtime)):
    backups = runtime.backups
    await backups.expire_stale_in_progress()
    return BackupStatusResponse(state=backups.state, running=backups.is_running, step=backups.step.value)


@router.post("", response_model=BackupOutcomeResponse)
async def trigger_backup(runtime: Runtime = Depends(get_ready_runtime)):
    """
    Run a backup now.

    Waits (bounded) for a background job holding the wallet. Failures are
    reported in the outcome body rather than as HTTP errors; a backup already
    in flight yields a skipped outcome.
    """
    outcome = await runtime.backups.backup_when_ready()
    return BackupOutcomeResponse.model_validate(outcome)


@router.get("/list", response_model=BackupListResponse)
async def list_backups(runtime: Runtime = Depends(get_ready_runtime)):
    try:
        backups = await runtime.backups.list_backups()
    except LedgerKeepError as e:
        raise_http_error(e)
    return BackupListResponse(backups=backups)


@router.delete("/{version}")
async def delete_backup(version: int, runtime: Runtime = Depends(get_ready_runtime)):
    try:
        await runtime.backups.delete_backup(version)
    except LedgerKeepError as e:
        raise_http_error(e)
    return {"deleted": True, "backup_version": version}


@router.put("/settings", response_model=BackupState)
async def update_backup_settings(
    request: BackupSettingsRequest,
    runtime: Runtime = Depends(get_ready_runtime),
):
    try:
        return await runtime.backups.set_backup_enabled(request.backup_enabled)
    except LedgerKeepError as e:
        raise_http_error(e)


@router.post("/restore", response_model=RestoreOutcomeResponse)
async def restore_backup(
    request: RestoreRequest,
    runtime: Runtime = Depends(get_ready_runtime),
):
    """Restore wallet data from a backup; the latest one when no version is given"""
    outcome = await runtime.backups.restore(request.mnemonic, request.backup_version)
    return RestoreOutcomeResponse.model_validate(outcome)


@router.get("/restore/progress", response_model=RestoreProgressResponse)
async def restore_progress(runtime: Runtime = Depends(get_ready_runtime)):
    return RestoreProgressResponse(progress=runtime.backups.restore_progress)
