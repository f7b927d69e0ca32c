"""add_onchain_txid_to_offboarding_requests

Version: 3
"""
from sqlalchemy.engine import Connection

version: int = 3
name: str = "add_onchain_txid_to_offboarding_requests"


def upgrade(conn: Connection) -> None:
    """Upgrade schema."""
    conn.exec_driver_sql("ALTER TABLE offboarding_requests ADD COLUMN onchain_txid TEXT")
