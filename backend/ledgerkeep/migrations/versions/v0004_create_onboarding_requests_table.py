"""create_onboarding_requests_table

Version: 4
"""
from sqlalchemy.engine import Connection

version: int = 4
name: str = "create_onboarding_requests_table"


def upgrade(conn: Connection) -> None:
    """Upgrade schema."""
    conn.exec_driver_sql(
        """
        CREATE TABLE IF NOT EXISTS onboarding_requests (
            request_id TEXT PRIMARY KEY NOT NULL,
            date TEXT NOT NULL,
            status TEXT NOT NULL,
            onchain_txid TEXT
        )
        """
    )
