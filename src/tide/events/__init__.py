from tide.events.event_feed import EventFeed
from tide.events.feed_writer import FeedWriter
from tide.events.models import EngineEvent, EngineStatus, EventKind

__all__ = ["EventFeed", "FeedWriter", "EngineEvent", "EngineStatus", "EventKind"]
