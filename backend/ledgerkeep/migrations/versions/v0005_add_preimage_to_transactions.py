"""add_preimage_to_transactions

Version: 5
"""
from sqlalchemy.engine import Connection

version: int = 5
name: str = "add_preimage_to_transactions"


def upgrade(conn: Connection) -> None:
    """Upgrade schema."""
    conn.exec_driver_sql("ALTER TABLE transactions ADD COLUMN preimage TEXT")
