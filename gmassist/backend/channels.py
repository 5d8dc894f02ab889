"""Change channels that propagate durable writes between execution contexts."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoreChange:
    key: str
    payload: str | None
    origin: str


ChangeListener = Callable[[StoreChange], None]


class ChangeChannel(Protocol):
    async def publish(self, change: StoreChange) -> None:
        """Announce a durable write to every other context."""

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that detaches it."""


class InProcessChangeChannel:
    """Event bus shared by stores living in one process (tests, servers)."""

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    async def publish(self, change: StoreChange) -> None:
        self.deliver(change)

    def deliver(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Change listener failed for key %s", change.key)

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)
