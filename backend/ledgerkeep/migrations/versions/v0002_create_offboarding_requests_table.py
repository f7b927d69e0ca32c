"""create_offboarding_requests_table

Version: 2
"""
from sqlalchemy.engine import Connection

version: int = 2
name: str = "create_offboarding_requests_table"


def upgrade(conn: Connection) -> None:
    """Upgrade schema."""
    conn.exec_driver_sql(
        """
        CREATE TABLE IF NOT EXISTS offboarding_requests (
            request_id TEXT PRIMARY KEY NOT NULL,
            date TEXT NOT NULL,
            status TEXT NOT NULL
        )
        """
    )
