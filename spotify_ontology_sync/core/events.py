"""Typed publish/subscribe for Spotify-side changes."""

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Union

from spotify_ontology_sync.core.models import PlaylistSnapshot, TrackInformation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IsPlayingChanged:
    is_playing: bool


@dataclass(frozen=True)
class TrackChanged:
    track: TrackInformation


@dataclass(frozen=True)
class PlaylistCreated:
    playlist: PlaylistSnapshot


@dataclass(frozen=True)
class PlaylistModified:
    playlist: PlaylistSnapshot


@dataclass(frozen=True)
class PlaylistDeleted:
    playlist: PlaylistSnapshot


SpotifyEvent = Union[IsPlayingChanged, TrackChanged, PlaylistCreated,
                     PlaylistModified, PlaylistDeleted]
EVENT_TYPES = (IsPlayingChanged, TrackChanged, PlaylistCreated,
               PlaylistModified, PlaylistDeleted)

Handler = Callable[[Any], Any]


class EventBus:
    """
    Dispatches events synchronously to the handlers registered for their type.

    Coroutine handlers are scheduled as tasks on the running loop. A failing
    handler is logged and does not affect the publisher or other handlers.
    No ordering is promised between handlers of the same event.
    """

    def __init__(self):
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event_type: type, handler: Handler) -> "EventBus":
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type!r}")
        self._handlers[event_type].append(handler)
        return self

    def unsubscribe(self, event_type: type, handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: SpotifyEvent) -> int:
        """Deliver event to its handlers. Returns the number of handlers."""
        handlers = list(self._handlers.get(type(event), []))
        for handler in handlers:
            try:
                result = handler(event)
            except Exception as e:
                logger.exception(f"Handler {_name(handler)} failed on {type(event).__name__}: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)
        return len(handlers)

    async def drain(self) -> None:
        """Wait for handler tasks scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Async event handler failed", exc_info=error)


def _name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", repr(handler))
