"""Transaction models"""
import enum
from sqlalchemy import Column, Integer, String, BigInteger, Float, Text, JSON

from ledgerkeep.models.database import Base


class PaymentType(str, enum.Enum):
    """Payment rail a transaction settled on"""
    BOLT11 = "Bolt11"
    BOLT12 = "Bolt12"
    LNURL = "Lnurl"
    ARKOOR = "Arkoor"
    ONCHAIN = "Onchain"


class Direction(str, enum.Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class MovementKind(str, enum.Enum):
    """Local classification of a remote ledger movement"""
    ARKOOR_RECEIVE = "arkoor-receive"
    ONBOARD = "onboard"
    OFFBOARD = "offboard"
    EXIT = "exit"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Transaction(Base):
    """
    Local transaction history row.

    Written once by ledger reconciliation or by a just-completed local
    send/receive. Rows from reconciliation carry the movement's natural key
    in ``txid``.
    """
    __tablename__ = "transactions"

    id = Column(String, primary_key=True)
    txid = Column(String, nullable=True, index=True)
    type = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)  # sats
    date = Column(String, nullable=False, index=True)  # ISO-8601 UTC
    description = Column(String, nullable=True)
    destination = Column(String, nullable=True)
    btc_price = Column(Float, nullable=True)
    preimage = Column(String, nullable=True)

    # Movement linkage
    movement_id = Column(BigInteger, nullable=True)
    movement_status = Column(String, nullable=True)
    movement_kind = Column(String, nullable=True)
    subsystem_name = Column(String, nullable=True)
    subsystem_kind = Column(String, nullable=True)
    metadata_json = Column(Text, nullable=True)
    intended_balance_sat = Column(BigInteger, nullable=True)
    effective_balance_sat = Column(BigInteger, nullable=True)
    offchain_fee_sat = Column(BigInteger, nullable=True)
    sent_to = Column(JSON, nullable=True)
    received_on = Column(JSON, nullable=True)
    input_vtxos = Column(JSON, nullable=True)
    output_vtxos = Column(JSON, nullable=True)
    exited_vtxos = Column(JSON, nullable=True)

    def __repr__(self):
        return f"<Transaction {self.id} {self.direction} {self.amount} ({self.type})>"


class OffboardingRequest(Base):
    """Pending or settled move of funds back on-chain"""
    __tablename__ = "offboarding_requests"

    request_id = Column(String, primary_key=True)
    date = Column(String, nullable=False)
    status = Column(String, nullable=False, default=RequestStatus.PENDING.value)
    onchain_txid = Column(String, nullable=True)

    def __repr__(self):
        return f"<OffboardingRequest {self.request_id} ({self.status})>"


class OnboardingRequest(Base):
    """Pending or settled board of on-chain funds"""
    __tablename__ = "onboarding_requests"

    request_id = Column(String, primary_key=True)
    date = Column(String, nullable=False)
    status = Column(String, nullable=False, default=RequestStatus.PENDING.value)
    onchain_txid = Column(String, nullable=True)

    def __repr__(self):
        return f"<OnboardingRequest {self.request_id} ({self.status})>"
