"""Application configuration"""
from pathlib import Path

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    app_name: str = "LedgerKeep"
    app_version: str = "0.1.0"
    debug: bool = False

    # Local control API
    api_host: str = "127.0.0.1"
    api_port: int = 8700
    api_prefix: str = "/api/v1"

    # Wallet
    app_variant: str = "signet"  # mainnet, signet, regtest
    server_endpoint: str = "https://noah.noderunner.wtf"
    data_dir: Path = Path("~/.ledgerkeep").expanduser()
    cache_dir: Path = Path("~/.ledgerkeep/cache").expanduser()
    database_filename: str = "noah_wallet.sqlite"

    # HTTP
    http_timeout: float = 30.0  # seconds
    price_endpoint: str = "https://mempool.space/api/v1/historical-price"

    # Backup
    kdf_iterations: int = 600_000
    backup_slot_count: int = 2
    auto_backup_freshness_seconds: int = 24 * 60 * 60
    auto_backup_min_interval_seconds: int = 60 * 60
    backup_in_progress_timeout_seconds: int = 10 * 60

    # Sync
    sync_interval_seconds: int = 30
    movement_page_size: int = 500
    background_job_stale_seconds: int = 60
    foreground_wait_seconds: float = 10.0
    settlement_max_attempts: int = 20
    settlement_interval_seconds: float = 1.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def wallet_data_path(self) -> Path:
        """On-device data directory of the wallet for this variant"""
        return self.data_dir / f"noah-data-{self.app_variant}"

    @property
    def database_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.wallet_data_path / self.database_filename}"

    @property
    def credential_service(self) -> str:
        """Secure-credential entry holding the wallet phrase"""
        return f"com.noah.mnemonic.{self.app_variant}"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
