from __future__ import annotations

import asyncio
import signal
from typing import Optional

_STOP_EVENT: Optional[asyncio.Event] = None


def get_stop_event() -> asyncio.Event:
    global _STOP_EVENT
    if _STOP_EVENT is None:
        _STOP_EVENT = asyncio.Event()
    return _STOP_EVENT


def request_stop() -> None:
    get_stop_event().set()


def install_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    """SIGINT/SIGTERM set the stop event so the scheduler exits between cycles."""
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda signum, frame: loop.call_soon_threadsafe(request_stop))
