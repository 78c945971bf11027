"""Shared data models for the miner backend."""

from .miner import ChannelPointEventInput, EventSource, EventType, MinerRunInput, StreamerRef

__all__ = [
    "ChannelPointEventInput",
    "EventSource",
    "EventType",
    "MinerRunInput",
    "StreamerRef",
]
