"""Remote ledger movement schemas"""
from typing import List, Optional
from pydantic import BaseModel, Field


class MovementSubsystem(BaseModel):
    """Subsystem that produced a movement, e.g. bark.arkoor / receive"""
    name: Optional[str] = None
    kind: Optional[str] = None


class MovementDestination(BaseModel):
    destination: str
    amount_sat: int


class Movement(BaseModel):
    """Entry of the authoritative remote ledger; read-only locally"""
    id: int
    subsystem: MovementSubsystem = Field(default_factory=MovementSubsystem)
    created_at: Optional[str] = None
    status: Optional[str] = None
    metadata_json: Optional[str] = None
    intended_balance_sat: Optional[int] = None
    effective_balance_sat: Optional[int] = None
    offchain_fee_sat: Optional[int] = None
    sent_to: List[MovementDestination] = Field(default_factory=list)
    received_on: List[MovementDestination] = Field(default_factory=list)
    input_vtxos: List[str] = Field(default_factory=list)
    output_vtxos: List[str] = Field(default_factory=list)
    exited_vtxos: List[str] = Field(default_factory=list)
