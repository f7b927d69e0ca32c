"""Transaction schemas"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel


class TransactionResponse(BaseModel):
    """Response for a single transaction"""
    id: str
    txid: Optional[str] = None
    type: str
    direction: str
    amount: int
    date: str
    description: Optional[str] = None
    destination: Optional[str] = None
    btc_price: Optional[float] = None
    preimage: Optional[str] = None
    movement_id: Optional[int] = None
    movement_status: Optional[str] = None
    movement_kind: Optional[str] = None
    subsystem_name: Optional[str] = None
    subsystem_kind: Optional[str] = None
    metadata_json: Optional[str] = None
    intended_balance_sat: Optional[int] = None
    effective_balance_sat: Optional[int] = None
    offchain_fee_sat: Optional[int] = None
    sent_to: Optional[List[Dict[str, Any]]] = None
    received_on: Optional[List[Dict[str, Any]]] = None
    input_vtxos: Optional[List[str]] = None
    output_vtxos: Optional[List[str]] = None
    exited_vtxos: Optional[List[str]] = None

    class Config:
        from_attributes = True


class TransactionListResponse(BaseModel):
    """Response for transaction list with pagination"""
    transactions: List[TransactionResponse]
    total: int
    skip: int
    limit: int

