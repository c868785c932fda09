"""
Cross-System Reconciler

Decides, for one changed playlist, whether the other side needs a create,
an update or nothing, and hands the decision to the matching writer.

Ontology -> Spotify: the incoming ontology playlist is compared with the
snapshot cache kept by the polling emitter. Nothing is done until that
cache holds its baseline.

Spotify -> ontology: playlist events from the emitter are looked up in the
ontology; an existing object is modified, a missing one created.
"""

import logging
from enum import Enum
from typing import Callable, Mapping

from spotify_ontology_sync.clients.ontology import OntologyClientProtocol
from spotify_ontology_sync.core.events import (
    EventBus,
    PlaylistCreated,
    PlaylistDeleted,
    PlaylistModified,
)
from spotify_ontology_sync.core.models import OntologyPlaylist, PlaylistSnapshot
from spotify_ontology_sync.core.writers import OntologyWriter, SpotifyWriter

logger = logging.getLogger(__name__)

SnapshotSource = Callable[[], Mapping[str, PlaylistSnapshot] | None]


class Decision(str, Enum):
    SKIP = "SKIP"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    NOOP = "NOOP"


def _normalize_count(value) -> int | str | None:
    """Track counts arrive as int from Spotify and as str from the ontology."""
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    try:
        return int(str(value).strip())
    except ValueError:
        return str(value).strip()


def playlist_matches(playlist: OntologyPlaylist, snapshot: PlaylistSnapshot) -> bool:
    return (
        playlist.name == snapshot.name
        and playlist.description == snapshot.description
        and playlist.owner == snapshot.owner_id
        and _normalize_count(playlist.tracks_count) == _normalize_count(snapshot.track_count)
    )


class PlaylistReconciler:
    def __init__(self, snapshots: SnapshotSource, spotify_writer: SpotifyWriter,
                 ontology: OntologyClientProtocol, ontology_writer: OntologyWriter,
                 playlist_object_type: str = "SpotifyPlaylist"):
        self._snapshots = snapshots
        self._spotify_writer = spotify_writer
        self._ontology = ontology
        self._ontology_writer = ontology_writer
        self._object_type = playlist_object_type

    def register(self, bus: EventBus) -> None:
        bus.subscribe(PlaylistCreated, self.on_playlist_created)
        bus.subscribe(PlaylistModified, self.on_playlist_modified)
        bus.subscribe(PlaylistDeleted, self.on_playlist_deleted)

    def decide(self, playlist: OntologyPlaylist) -> Decision:
        cache = self._snapshots()
        if cache is None:
            return Decision.SKIP
        snapshot = cache.get(playlist.playlist_id)
        if snapshot is None:
            return Decision.CREATE
        if playlist_matches(playlist, snapshot):
            return Decision.NOOP
        return Decision.UPDATE

    async def reconcile_ontology_playlist(self, playlist: OntologyPlaylist) -> Decision:
        decision = self.decide(playlist)
        if decision == Decision.SKIP:
            logger.info("Playlist cache not populated yet, skipping update")
        elif decision == Decision.NOOP:
            logger.debug(f"Playlist {playlist.playlist_id} matches cache, skipping update")
        elif decision == Decision.CREATE:
            # The new playlist gets its own Spotify id and the ontology object keeps
            # the old one, so each redelivery of this object creates another playlist
            logger.info(f"Playlist {playlist.playlist_id} not on Spotify - creating '{playlist.name}'")
            await self._spotify_writer.create_playlist(playlist.owner, playlist.name, playlist.description)
        else:
            logger.info(f"Playlist {playlist.playlist_id} differs from Spotify - modifying")
            await self._spotify_writer.update_playlist(
                playlist.playlist_id, playlist.name, playlist.description
            )
        return decision

    async def _upsert_in_ontology(self, playlist: PlaylistSnapshot) -> Decision:
        existing = await self._ontology.fetch_one(self._object_type, playlist.id)
        if existing is not None:
            await self._ontology_writer.modify_playlist(existing.get("playlistId", playlist.id), playlist)
            return Decision.UPDATE
        await self._ontology_writer.create_playlist(playlist)
        return Decision.CREATE

    async def on_playlist_created(self, event: PlaylistCreated) -> Decision:
        logger.info(f"Playlist created on Spotify: {event.playlist.id}")
        return await self._upsert_in_ontology(event.playlist)

    async def on_playlist_modified(self, event: PlaylistModified) -> Decision:
        logger.info(f"Playlist modified on Spotify: {event.playlist.id}")
        return await self._upsert_in_ontology(event.playlist)

    async def on_playlist_deleted(self, event: PlaylistDeleted) -> None:
        logger.info(f"Playlist deleted on Spotify: {event.playlist.id}")
        await self._ontology_writer.delete_playlist(event.playlist.id)
