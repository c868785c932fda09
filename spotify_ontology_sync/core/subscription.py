"""
Ontology change subscriptions.

One reconnecting engine, two feed strategies. The engine owns the
subscription lifecycle:

    IDLE -> SUBSCRIBING -> ACTIVE -> (ERROR -> RECONNECTING -> SUBSCRIBING)
                                   | UNSUBSCRIBED

- a closed subscription is reopened after min(1s * 2^attempts, 30s)
- the subscription is torn down and reopened every refresh_interval seconds
  even without errors, so a silently stale feed cannot persist
- at most one live upstream subscription exists per engine

Feeds only turn raw changes into ChangeEvents and route them onward.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Protocol

from spotify_ontology_sync.clients.ontology import (
    OntologyClientProtocol,
    SubscriptionError,
    SubscriptionHandle,
    SubscriptionListener,
)
from spotify_ontology_sync.core.batcher import OperationBatcher
from spotify_ontology_sync.core.models import (
    ChangeEvent,
    ChangeState,
    DataStale,
    OntologyPlaylist,
    OntologyPlaylistTrack,
    SubscriptionClosed,
    SubscriptionStatus,
    SyncError,
    TrackOperation,
)
from spotify_ontology_sync.core.reconciler import PlaylistReconciler
from spotify_ontology_sync.core.scheduler import PeriodicTask

logger = logging.getLogger(__name__)

BASE_RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 30.0
DEFAULT_REFRESH_INTERVAL = 120.0


def reconnect_delay(attempts: int) -> float:
    """Backoff in seconds before reconnect attempt number `attempts`."""
    return min(BASE_RECONNECT_DELAY * 2 ** attempts, MAX_RECONNECT_DELAY)


class ChangeFeed(Protocol):
    name: str
    object_type: str

    def normalize(self, raw: dict) -> ChangeEvent | None: ...
    def handle_change(self, event: ChangeEvent) -> Awaitable[Any] | None: ...


def _normalize(raw: dict, factory: Callable[[dict], Any]) -> ChangeEvent:
    return ChangeEvent(state=ChangeState(raw["state"]), object=factory(raw["object"]))


class PlaylistFeed:
    """SpotifyPlaylist changes go to the reconciler."""

    name = "Spotify playlist subscription"

    def __init__(self, reconciler: PlaylistReconciler, object_type: str = "SpotifyPlaylist"):
        self._reconciler = reconciler
        self.object_type = object_type

    def normalize(self, raw: dict) -> ChangeEvent:
        return _normalize(raw, OntologyPlaylist.from_object)

    async def handle_change(self, event: ChangeEvent) -> None:
        if event.state == ChangeState.REMOVED:
            logger.info(f"Playlist {event.object.playlist_id} removed from ontology, not propagated")
            return
        await self._reconciler.reconcile_ontology_playlist(event.object)


class PlaylistTrackFeed:
    """SpotifyPlaylistTrack changes become batched track operations."""

    name = "Spotify playlist track subscription"

    def __init__(self, batcher: OperationBatcher, object_type: str = "SpotifyPlaylistTrack"):
        self._batcher = batcher
        self.object_type = object_type

    def normalize(self, raw: dict) -> ChangeEvent:
        return _normalize(raw, OntologyPlaylistTrack.from_object)

    def handle_change(self, event: ChangeEvent) -> None:
        track = event.object
        if event.state == ChangeState.ADDED_OR_UPDATED:
            operation = TrackOperation.ADD
        else:
            operation = TrackOperation.DELETE
        self._batcher.record(track.playlist_id, track, operation)


class ReconnectingSubscription:
    def __init__(self, ontology: OntologyClientProtocol, feed: ChangeFeed,
                 refresh_interval: float = DEFAULT_REFRESH_INTERVAL):
        self._ontology = ontology
        self._feed = feed
        self.status = SubscriptionStatus.IDLE
        self.reconnect_attempts = 0
        self.last_reconnect_delay: float | None = None
        self.last_error: SyncError | None = None
        self._handle: SubscriptionHandle | None = None
        self._generation = 0
        self._reconnect_timer: asyncio.TimerHandle | None = None
        self._refresh_task = PeriodicTask(f"{feed.name} refresh", refresh_interval, self._scheduled_refresh)
        self._tasks: set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return self._feed.name

    @property
    def active(self) -> bool:
        return self._handle is not None

    def start(self) -> "ReconnectingSubscription":
        if self.status != SubscriptionStatus.IDLE:
            logger.warning(f"{self.name}: already started")
            return self
        self._subscribe()
        self._refresh_task.start()
        return self

    def refresh(self) -> None:
        """Tear down the current subscription and open a new one."""
        if self.status == SubscriptionStatus.UNSUBSCRIBED:
            return
        if self._handle is not None:
            logger.info(f"{self.name}: unsubscribing for refresh")
        self._close_handle()
        self._subscribe()

    def unsubscribe(self) -> None:
        self._cancel_reconnect()
        self._refresh_task.stop()
        self._close_handle()
        if self.status != SubscriptionStatus.UNSUBSCRIBED:
            logger.info(f"{self.name}: unsubscribed")
        self.status = SubscriptionStatus.UNSUBSCRIBED

    async def drain(self) -> None:
        """Wait for change handlers scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _scheduled_refresh(self) -> None:
        logger.info(f"{self.name}: performing scheduled refresh")
        self.refresh()

    def _subscribe(self) -> None:
        self._cancel_reconnect()
        if self._handle is not None:
            return

        self._generation += 1
        generation = self._generation
        self.status = SubscriptionStatus.SUBSCRIBING
        logger.info(f"Setting up {self.name}")

        listener = SubscriptionListener(
            on_change=lambda raw: self._on_change(generation, raw),
            on_successful_subscription=lambda: self._on_success(generation),
            on_out_of_date=lambda: self._on_out_of_date(generation),
            on_error=lambda error: self._on_error(generation, error),
        )
        try:
            handle = self._ontology.subscribe(self._feed.object_type, listener)
        except Exception as e:
            self.last_error = SubscriptionClosed(f"{self.name}: failed to subscribe: {e}")
            logger.error(str(self.last_error))
            self.status = SubscriptionStatus.ERROR
            self._schedule_reconnect()
            return

        if generation != self._generation or self.status in (
            SubscriptionStatus.RECONNECTING, SubscriptionStatus.UNSUBSCRIBED
        ):
            # Closed before subscribe() even returned
            handle.unsubscribe()
            return
        self._handle = handle

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self.status != SubscriptionStatus.UNSUBSCRIBED

    def _on_success(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        logger.info(f"{self.name} established successfully")
        self.status = SubscriptionStatus.ACTIVE
        self.reconnect_attempts = 0

    def _on_out_of_date(self, generation: int) -> None:
        if self._is_current(generation):
            self.last_error = DataStale(f"{self.name} data is out of date")
            logger.warning(str(self.last_error))

    def _on_error(self, generation: int, error: SubscriptionError) -> None:
        if not self._is_current(generation):
            return
        logger.error(f"{self.name} error: {error.errors}")
        if not error.subscription_closed:
            return
        self.last_error = SubscriptionClosed(f"{self.name}: subscription was closed")
        logger.info(f"{self.last_error}, attempting to reconnect")
        self.status = SubscriptionStatus.ERROR
        self._close_handle()
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        delay = reconnect_delay(self.reconnect_attempts)
        self.reconnect_attempts += 1
        self.last_reconnect_delay = delay
        self.status = SubscriptionStatus.RECONNECTING
        logger.info(f"{self.name}: reconnecting in {delay:.0f}s (attempt #{self.reconnect_attempts})")
        self._reconnect_timer = asyncio.get_running_loop().call_later(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_timer = None
        if self.status == SubscriptionStatus.UNSUBSCRIBED or self.active:
            logger.debug(f"{self.name}: reconnect not needed")
            return
        self._subscribe()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _close_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.unsubscribe()
        except Exception as e:
            logger.warning(f"{self.name}: error closing subscription: {e}")

    def _on_change(self, generation: int, raw: dict) -> None:
        if not self._is_current(generation):
            return
        try:
            event = self._feed.normalize(raw)
        except Exception as e:
            logger.error(f"{self.name}: could not normalize change {raw!r}: {e}")
            return
        if event is None:
            return
        try:
            result = self._feed.handle_change(event)
        except Exception as e:
            logger.exception(f"{self.name}: error handling change: {e}")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._handler_done)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"{self.name}: error handling change", exc_info=task.exception())
