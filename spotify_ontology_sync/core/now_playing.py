"""Pushes playback and playlist changes to ontology streams as JSON rows."""

import logging
import time
from typing import Callable

from spotify_ontology_sync.clients.ontology import OntologyClientProtocol
from spotify_ontology_sync.core.config import StreamTarget
from spotify_ontology_sync.core.events import (
    EventBus,
    PlaylistCreated,
    PlaylistDeleted,
    PlaylistModified,
    TrackChanged,
)
from spotify_ontology_sync.core.models import PlaylistSnapshot, TrackInformation

logger = logging.getLogger(__name__)

FEATURE_FIELDS = (
    "danceability", "energy", "key", "loudness", "mode", "speechiness",
    "acousticness", "instrumentalness", "liveness", "valence", "tempo",
    "duration_ms", "time_signature",
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def now_playing_row(track: TrackInformation, timestamp: int) -> dict:
    return {
        "timestamp": timestamp,
        "track_id": track.id,
        "type": "track",
        "progress_ms": track.currently_playing.get("progress_ms"),
    }


def track_row(track: TrackInformation, timestamp: int) -> dict:
    item = track.currently_playing.get("item") or {}
    return {
        "id": track.id,
        "name": item.get("name"),
        "artists": [artist.get("name") for artist in item.get("artists", [])],
        "popularity": item.get("popularity"),
        "preview_url": item.get("preview_url"),
        "isDeleted": False,
        "timestamp": timestamp,
    }


def track_features_row(track: TrackInformation, timestamp: int) -> dict:
    row = {"id": track.id}
    for name in FEATURE_FIELDS:
        row[name] = track.features.get(name)
    row["timestamp"] = timestamp
    row["isDeleted"] = False
    return row


def playlist_row(playlist: PlaylistSnapshot, operation: str, timestamp: int) -> dict:
    return {
        "id": playlist.id,
        "name": playlist.name,
        "description": playlist.description,
        "snapshot_id": playlist.snapshot_id,
        "tracks_total": playlist.track_count,
        "owner_id": playlist.owner_id,
        "owner_name": playlist.owner_display_name,
        "lastModified": timestamp,
        "isDeleted": operation == "DELETE",
        "operation": operation,
    }


class NowPlayingPublisher:
    def __init__(self, ontology: OntologyClientProtocol,
                 now_playing: StreamTarget | None = None,
                 tracks: StreamTarget | None = None,
                 track_features: StreamTarget | None = None,
                 playlists: StreamTarget | None = None,
                 clock: Callable[[], int] = _now_ms):
        self._ontology = ontology
        self._now_playing = now_playing
        self._tracks = tracks
        self._track_features = track_features
        self._playlists = playlists
        self._clock = clock

    def register(self, bus: EventBus) -> None:
        bus.subscribe(TrackChanged, self.on_track_changed)
        bus.subscribe(PlaylistCreated, self.on_playlist_event)
        bus.subscribe(PlaylistModified, self.on_playlist_event)
        bus.subscribe(PlaylistDeleted, self.on_playlist_event)

    async def _write(self, target: StreamTarget | None, label: str, row: dict) -> None:
        if target is None:
            logger.debug(f"No {label} stream configured, dry run: {row}")
            return
        try:
            await self._ontology.publish_stream_records(target, [row])
        except Exception as e:
            logger.error(f"Failed to write {label} row: {e}")

    async def on_track_changed(self, event: TrackChanged) -> None:
        track = event.track
        timestamp = self._clock()
        await self._write(self._now_playing, "now-playing", now_playing_row(track, timestamp))
        item = track.currently_playing.get("item") or {}
        if item.get("type", "track") == "track":
            await self._write(self._tracks, "track", track_row(track, timestamp))
        await self._write(self._track_features, "track-features", track_features_row(track, timestamp))

    async def on_playlist_event(self, event) -> None:
        operation = {
            PlaylistCreated: "INSERT",
            PlaylistModified: "UPDATE",
            PlaylistDeleted: "DELETE",
        }[type(event)]
        playlist = event.playlist
        logger.info(f"Playlist {operation.lower()}: {playlist.name} ({playlist.id})")
        await self._write(self._playlists, "playlist", playlist_row(playlist, operation, self._clock()))
