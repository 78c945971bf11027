"""Twitch channel-points miner."""
