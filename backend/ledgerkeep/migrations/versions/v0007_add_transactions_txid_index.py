"""add_transactions_txid_index

Version: 7
"""
from sqlalchemy.engine import Connection

version: int = 7
name: str = "add_transactions_txid_index"


def upgrade(conn: Connection) -> None:
    """Upgrade schema."""
    # Not unique: rows written before reconciliation may share a txid
    conn.exec_driver_sql("CREATE INDEX IF NOT EXISTS ix_transactions_txid ON transactions (txid)")
    conn.exec_driver_sql("CREATE INDEX IF NOT EXISTS ix_transactions_date ON transactions (date)")
