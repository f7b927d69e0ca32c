"""Forward-only schema migrations for the local ledger store.

The applied version lives in SQLite's ``PRAGMA user_version``. Every
migration above it is applied in ascending order inside the caller's
transaction, and the counter is advanced after each step.
"""
from dataclasses import dataclass
from types import ModuleType
from typing import Callable, List, Optional, Sequence

import structlog
from sqlalchemy.engine import Connection

from ledgerkeep.migrations.versions import (
    v0001_create_transactions_table,
    v0002_create_offboarding_requests_table,
    v0003_add_onchain_txid_to_offboarding_requests,
    v0004_create_onboarding_requests_table,
    v0005_add_preimage_to_transactions,
    v0006_add_movement_columns_to_transactions,
    v0007_add_transactions_txid_index,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class Migration:
    """A single forward-only schema step"""
    version: int
    name: str
    upgrade: Callable[[Connection], None]

    @classmethod
    def from_module(cls, module: ModuleType) -> "Migration":
        return cls(version=module.version, name=module.name, upgrade=module.upgrade)


MIGRATIONS: List[Migration] = [
    Migration.from_module(module)
    for module in (
        v0001_create_transactions_table,
        v0002_create_offboarding_requests_table,
        v0003_add_onchain_txid_to_offboarding_requests,
        v0004_create_onboarding_requests_table,
        v0005_add_preimage_to_transactions,
        v0006_add_movement_columns_to_transactions,
        v0007_add_transactions_txid_index,
    )
]

LATEST_VERSION = max(m.version for m in MIGRATIONS)


def get_schema_version(conn: Connection) -> int:
    """Applied schema version"""
    return conn.exec_driver_sql("PRAGMA user_version").scalar() or 0


def set_schema_version(conn: Connection, version: int) -> None:
    # PRAGMA does not accept bound parameters
    conn.exec_driver_sql(f"PRAGMA user_version = {int(version)}")


def run_migrations(conn: Connection, migrations: Optional[Sequence[Migration]] = None) -> int:
    """
    Apply pending migrations and return the resulting schema version.

    Re-running against an up-to-date database is a no-op.
    """
    current = get_schema_version(conn)
    logger.info("Current database version", version=current)

    for migration in sorted(migrations or MIGRATIONS, key=lambda m: m.version):
        if migration.version <= current:
            continue

        logger.info("Running migration", version=migration.version, name=migration.name)
        migration.upgrade(conn)
        set_schema_version(conn, migration.version)
        current = migration.version
        logger.info("Migration completed", version=migration.version)

    return current


__all__ = [
    "Migration",
    "MIGRATIONS",
    "LATEST_VERSION",
    "get_schema_version",
    "run_migrations",
]
