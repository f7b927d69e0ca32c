"""LedgerKeep services"""
from .sealing import SealingCodec, seal, open_sealed
from .job_guard import JobSupervisor, SingleFlight, supervisor
from .feed import EventFeed, feed
from .wallet import WalletBridge, CredentialStore, PriceOracle, MempoolPriceOracle, registry


__all__ = [
    # Sealing
    "SealingCodec",
    "seal",
    "open_sealed",
    # Coordination
    "JobSupervisor",
    "SingleFlight",
    "supervisor",
    "EventFeed",
    "feed",
    # Collaborators
    "WalletBridge",
    "CredentialStore",
    "PriceOracle",
    "MempoolPriceOracle",
    "registry",
]
