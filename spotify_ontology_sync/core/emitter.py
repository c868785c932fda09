"""
Spotify Polling Emitter

Polls Spotify on two independent timers and publishes discrete change
events on the event bus:

- playback (every second): IsPlayingChanged, TrackChanged
- playlists (configurable, default 5s): PlaylistCreated, PlaylistModified,
  PlaylistDeleted

The first successful playlist poll only records a baseline. After every
later poll the cache mirrors the Spotify listing exactly. The cache is
exposed read-only to the reconciler.
"""

import asyncio
import logging
from types import MappingProxyType
from typing import Mapping

from spotify_ontology_sync.clients.spotify import SpotifyClientProtocol
from spotify_ontology_sync.core.events import (
    EventBus,
    IsPlayingChanged,
    PlaylistCreated,
    PlaylistDeleted,
    PlaylistModified,
    TrackChanged,
)
from spotify_ontology_sync.core.models import PlaylistSnapshot, TrackInformation
from spotify_ontology_sync.core.scheduler import PeriodicTask

logger = logging.getLogger(__name__)


class PollingEmitter:
    def __init__(self, spotify: SpotifyClientProtocol, bus: EventBus,
                 playlist_interval: float = 5.0, playback_interval: float = 1.0):
        self._spotify = spotify
        self._bus = bus
        self._is_playing = False
        self._track_id = ""
        self._playlists: dict[str, PlaylistSnapshot] | None = None
        self._playback_task = PeriodicTask("playback", playback_interval, self.poll_playback)
        self._playlist_task = PeriodicTask(
            "playlists", playlist_interval, self.poll_playlists, run_immediately=True
        )

    @property
    def running(self) -> bool:
        return self._playback_task.running

    @property
    def playlist_cache(self) -> Mapping[str, PlaylistSnapshot] | None:
        """Read-only view of the snapshot cache, None until the baseline poll."""
        if self._playlists is None:
            return None
        return MappingProxyType(self._playlists)

    def start(self) -> "PollingEmitter":
        if self.running:
            logger.warning("[emitter] Already started")
            return self
        self._playback_task.start()
        self._playlist_task.start()
        logger.info("[emitter] Started")
        return self

    def stop(self) -> None:
        self._playback_task.stop()
        self._playlist_task.stop()

    async def poll_playback(self) -> None:
        currently_playing = await self._spotify.get_currently_playing()
        if currently_playing is None:
            return

        is_playing = bool(currently_playing.get("is_playing"))
        if is_playing != self._is_playing:
            self._is_playing = is_playing
            self._bus.publish(IsPlayingChanged(is_playing))

        item = currently_playing.get("item") or {}
        track_id = item.get("id")
        if (
            track_id
            and track_id != self._track_id
            and currently_playing.get("currently_playing_type") == "track"
        ):
            analysis, features = await asyncio.gather(
                self._spotify.get_audio_analysis(track_id),
                self._spotify.get_audio_features(track_id),
            )
            self._track_id = track_id
            logger.info(f"[emitter] Track changed: {item.get('name', track_id)}")
            self._bus.publish(TrackChanged(TrackInformation(
                id=track_id,
                currently_playing=currently_playing,
                analysis=analysis or {},
                features=features or {},
            )))

    async def poll_playlists(self) -> None:
        listing = await self._spotify.get_user_playlists()
        current = {}
        for playlist in listing:
            snapshot = PlaylistSnapshot.from_api(playlist)
            current[snapshot.id] = snapshot

        if self._playlists is None:
            self._playlists = current
            logger.info(f"[emitter] Baseline: {len(current)} playlists")
            return

        previous = self._playlists
        self._playlists = current

        for playlist_id, snapshot in current.items():
            cached = previous.get(playlist_id)
            if cached is None:
                self._bus.publish(PlaylistCreated(snapshot))
            elif cached.differs_from(snapshot):
                self._bus.publish(PlaylistModified(snapshot))

        for playlist_id, cached in previous.items():
            if playlist_id not in current:
                self._bus.publish(PlaylistDeleted(cached))
