"""Queries and writes against the local ledger store"""
from datetime import datetime, timezone
from typing import List, Optional, Set, Tuple, Type, Union

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgerkeep.errors import StorageError
from ledgerkeep.models.database import get_session_factory
from ledgerkeep.models.transaction import (
    OffboardingRequest,
    OnboardingRequest,
    RequestStatus,
    Transaction,
)

logger = structlog.get_logger()

RequestModel = Union[Type[OffboardingRequest], Type[OnboardingRequest]]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class LedgerStore:
    """
    Repository over the transactions / onboarding / offboarding tables.

    Each method runs in its own session so callers on the event loop never
    share a session across suspension points. Without an explicit factory the
    store follows the process-wide one, which is replaced when a restore
    reopens the database.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._factory = session_factory

    def _session(self) -> AsyncSession:
        factory = self._factory or get_session_factory()
        return factory()

    async def add_transaction(self, transaction: Transaction) -> Transaction:
        try:
            async with self._session() as session:
                session.add(transaction)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to add transaction", id=transaction.id, error=str(e))
            raise StorageError(f"Failed to add transaction {transaction.id}") from e
        return transaction

    async def list_transactions(
        self,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> Tuple[List[Transaction], int]:
        """Transactions newest first, with the total row count"""
        try:
            async with self._session() as session:
                total = (await session.execute(select(func.count()).select_from(Transaction))).scalar() or 0
                query = select(Transaction).order_by(Transaction.date.desc()).offset(skip)
                if limit is not None:
                    query = query.limit(limit)
                result = await session.execute(query)
                return list(result.scalars().all()), total
        except SQLAlchemyError as e:
            logger.error("Failed to get transactions", error=str(e))
            raise StorageError("Failed to get transactions") from e

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        try:
            async with self._session() as session:
                return await session.get(Transaction, transaction_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to get transaction {transaction_id}") from e

    async def remove_transaction(self, transaction_id: str) -> bool:
        """Delete a row on explicit user request; False when it did not exist"""
        try:
            async with self._session() as session:
                result = await session.execute(
                    delete(Transaction).where(Transaction.id == transaction_id)
                )
                await session.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error("Failed to remove transaction", id=transaction_id, error=str(e))
            raise StorageError(f"Failed to remove transaction {transaction_id}") from e

    async def known_natural_keys(self) -> Set[str]:
        """Every txid already stored; the reconciliation idempotency boundary"""
        try:
            async with self._session() as session:
                result = await session.execute(
                    select(Transaction.txid).where(Transaction.txid.is_not(None))
                )
                return {txid for txid in result.scalars().all() if txid}
        except SQLAlchemyError as e:
            raise StorageError("Failed to load known transaction keys") from e

    # Onboarding / offboarding requests

    async def add_request(
        self,
        model: RequestModel,
        request_id: str,
        status: RequestStatus = RequestStatus.PENDING,
        onchain_txid: Optional[str] = None,
        date: Optional[str] = None,
    ):
        request = model(
            request_id=request_id,
            date=date or utc_now_iso(),
            status=status.value,
            onchain_txid=onchain_txid,
        )
        try:
            async with self._session() as session:
                session.add(request)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to add request", table=model.__tablename__, error=str(e))
            raise StorageError(f"Failed to add {model.__tablename__} row {request_id}") from e
        return request

    async def list_requests(self, model: RequestModel) -> list:
        try:
            async with self._session() as session:
                result = await session.execute(select(model).order_by(model.date.desc()))
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to get {model.__tablename__}") from e

    async def update_request_status(
        self,
        model: RequestModel,
        request_id: str,
        status: RequestStatus,
        onchain_txid: Optional[str] = None,
    ) -> None:
        try:
            async with self._session() as session:
                await session.execute(
                    update(model)
                    .where(model.request_id == request_id)
                    .values(status=status.value, onchain_txid=onchain_txid)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to update request status", table=model.__tablename__, error=str(e))
            raise StorageError(f"Failed to update {model.__tablename__} row {request_id}") from e

    async def add_offboarding_request(self, request_id: str, **kwargs) -> OffboardingRequest:
        return await self.add_request(OffboardingRequest, request_id, **kwargs)

    async def add_onboarding_request(self, request_id: str, **kwargs) -> OnboardingRequest:
        return await self.add_request(OnboardingRequest, request_id, **kwargs)

    async def get_offboarding_requests(self) -> List[OffboardingRequest]:
        return await self.list_requests(OffboardingRequest)

    async def get_onboarding_requests(self) -> List[OnboardingRequest]:
        return await self.list_requests(OnboardingRequest)

    async def update_offboarding_request_status(self, request_id: str, status: RequestStatus, onchain_txid: Optional[str] = None) -> None:
        await self.update_request_status(OffboardingRequest, request_id, status, onchain_txid)

    async def update_onboarding_request_status(self, request_id: str, status: RequestStatus, onchain_txid: Optional[str] = None) -> None:
        await self.update_request_status(OnboardingRequest, request_id, status, onchain_txid)
