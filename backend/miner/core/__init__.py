"""Core modules for the channel-points miner."""

from .config import BACKEND_DIR, DATA_DIR, MINER_DIR, MinerSettings, get_settings
from .logging import setup_logging

__all__ = [
    # Settings
    "MinerSettings",
    "get_settings",
    # Path Constants
    "MINER_DIR",
    "BACKEND_DIR",
    "DATA_DIR",
    # Setup functions
    "setup_logging",
]
