"""create_transactions_table

Version: 1
"""
from sqlalchemy.engine import Connection

version: int = 1
name: str = "create_transactions_table"


def upgrade(conn: Connection) -> None:
    """Upgrade schema."""
    conn.exec_driver_sql(
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id TEXT PRIMARY KEY NOT NULL,
            txid TEXT,
            type TEXT NOT NULL,
            direction TEXT NOT NULL,
            amount INTEGER NOT NULL,
            date TEXT NOT NULL,
            description TEXT,
            destination TEXT,
            btc_price REAL
        )
        """
    )
