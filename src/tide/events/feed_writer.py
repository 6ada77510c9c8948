"""
feed_writer.py - On-disk status/event feed for external dashboards

Layout under FEED_DIR:
    events.jsonl   one EngineEvent per line, append-only
    status.json    latest EngineStatus, replaced atomically after each cycle
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

from loguru import logger

from tide.events.event_feed import EventFeed
from tide.events.models import EngineEvent, EngineStatus


class FeedWriter:
    EVENTS_FILE = "events.jsonl"
    STATUS_FILE = "status.json"

    def __init__(self, feed_dir: str | Path):
        self.feed_dir = Path(feed_dir)
        self.feed_dir.mkdir(parents=True, exist_ok=True)
        self.events_path = self.feed_dir / self.EVENTS_FILE
        self.status_path = self.feed_dir / self.STATUS_FILE

    def attach(self, feed: EventFeed) -> "FeedWriter":
        feed.subscribe(EngineEvent, self.write_event)
        feed.subscribe(EngineStatus, self.write_status)
        logger.info(f"FEED_WRITER | dir={self.feed_dir.resolve()}")
        return self

    async def write_event(self, event: EngineEvent) -> None:
        await asyncio.to_thread(self._append_line, json.dumps(event.to_dict()))

    async def write_status(self, status: EngineStatus) -> None:
        await asyncio.to_thread(self._replace_status, json.dumps(status.to_dict(), indent=2))

    # file I/O runs off the event loop

    def _append_line(self, line: str) -> None:
        with self.events_path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def _replace_status(self, body: str) -> None:
        tmp = self.status_path.with_suffix(".json.tmp")
        tmp.write_text(body, encoding="utf-8")
        os.replace(tmp, self.status_path)
