"""add_movement_columns_to_transactions

Version: 6

Links rows written by ledger reconciliation back to the remote movement
they came from. All columns are nullable so rows from older schemas stay
valid.
"""
from sqlalchemy.engine import Connection

version: int = 6
name: str = "add_movement_columns_to_transactions"

MOVEMENT_COLUMNS = [
    ("movement_id", "INTEGER"),
    ("movement_status", "TEXT"),
    ("movement_kind", "TEXT"),
    ("subsystem_name", "TEXT"),
    ("subsystem_kind", "TEXT"),
    ("metadata_json", "TEXT"),
    ("intended_balance_sat", "INTEGER"),
    ("effective_balance_sat", "INTEGER"),
    ("offchain_fee_sat", "INTEGER"),
    ("sent_to", "TEXT"),
    ("received_on", "TEXT"),
    ("input_vtxos", "TEXT"),
    ("output_vtxos", "TEXT"),
    ("exited_vtxos", "TEXT"),
]


def upgrade(conn: Connection) -> None:
    """Upgrade schema."""
    for column, column_type in MOVEMENT_COLUMNS:
        conn.exec_driver_sql(f"ALTER TABLE transactions ADD COLUMN {column} {column_type}")
