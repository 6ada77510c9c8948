from __future__ import annotations

from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional, Type

from loguru import logger

from tide.events.models import EngineEvent, EngineStatus

Handler = Callable[[object], Awaitable[None]]


class EventFeed:
    """Append-only event log with pub/sub fan-out of events and status snapshots."""

    def __init__(self):
        self._handlers: Dict[Type, List[Handler]] = defaultdict(list)
        self._events: List[EngineEvent] = []
        self.latest_status: Optional[EngineStatus] = None

    def subscribe(self, record_type: Type, handler: Handler) -> None:
        """Subscribe handler to EngineEvent or EngineStatus records."""
        self._handlers[record_type].append(handler)

    @property
    def events(self) -> tuple:
        return tuple(self._events)

    def __len__(self) -> int:
        return len(self._events)

    async def publish(self, event: EngineEvent) -> None:
        self._events.append(event)
        await self._dispatch(event)

    async def publish_status(self, status: EngineStatus) -> None:
        self.latest_status = status
        await self._dispatch(status)

    async def _dispatch(self, record: object) -> None:
        record_type = type(record)
        for handler in self._handlers.get(record_type, []):
            try:
                await handler(record)
            except Exception as exc:
                logger.error(f"FEED_HANDLER | {record_type.__name__} | {type(exc).__name__}: {exc}")
