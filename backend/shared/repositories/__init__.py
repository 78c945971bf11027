"""Shared repository layer for the miner backend."""

from .events import EventRepository

__all__ = [
    "EventRepository",
]
