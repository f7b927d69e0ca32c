"""API v1 router aggregation"""
from fastapi import APIRouter

from ledgerkeep.api.v1 import backup, sync, transactions

api_router = APIRouter()

api_router.include_router(transactions.router, prefix="/transactions", tags=["Transactions"])
api_router.include_router(backup.router, prefix="/backup", tags=["Backup"])
api_router.include_router(sync.router, prefix="/sync", tags=["Sync"])
