"""Database models"""
from ledgerkeep.models.database import Base, open_store, close_store
from ledgerkeep.models.transaction import (
    Transaction,
    OffboardingRequest,
    OnboardingRequest,
    PaymentType,
    Direction,
    MovementKind,
    RequestStatus,
)

__all__ = [
    "Base",
    "open_store",
    "close_store",
    "Transaction",
    "OffboardingRequest",
    "OnboardingRequest",
    "PaymentType",
    "Direction",
    "MovementKind",
    "RequestStatus",
]
