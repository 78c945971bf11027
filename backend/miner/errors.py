"""Exceptions raised by the miner's network clients."""


class MinerError(Exception):
    """Base class for miner errors."""


class PubSubError(MinerError):
    pass


class PubSubConnectError(PubSubError):
    """The websocket could not be opened."""


class PubSubNotConnected(PubSubError):
    """An operation needed an open websocket."""


class ListenError(PubSubError):
    """The server rejected a LISTEN request."""

    def __init__(self, topic: str, error: str):
        super().__init__(f"LISTEN {topic} failed: {error}")
        self.topic = topic
        self.error = error


class ListenTimeout(ListenError):
    def __init__(self, topic: str, timeout: float):
        super().__init__(topic, f"no response within {timeout}s")
        self.timeout = timeout


class GqlError(MinerError):
    """GQL answered with an error list."""

    def __init__(self, operation: str, errors: list):
        super().__init__(f"{operation} returned errors: {errors}")
        self.operation = operation
        self.errors = errors


class PersistedQueryNotFound(GqlError):
    """GQL rejected a persisted query hash; the client version is likely stale."""
