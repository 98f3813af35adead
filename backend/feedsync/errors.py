from __future__ import annotations


class TopicValidationError(ValueError):
    pass


class BusTimeoutError(TimeoutError):
    def __init__(self, topic: str, timeout_seconds: float) -> None:
        super().__init__(f"no reply for topic {topic!r} within {timeout_seconds:g}s")
        self.topic = topic
        self.timeout_seconds = timeout_seconds


class ActorBindingError(RuntimeError):
    pass


class EntityConsistencyError(RuntimeError):
    """An entity that the synchronized state says must exist is missing locally."""


class SyncStoreQuotaError(ValueError):
    def __init__(self, key: str, size: int, limit: int) -> None:
        super().__init__(f"synchronized store quota exceeded key={key} size={size} limit={limit}")
        self.key = key
        self.size = size
        self.limit = limit
