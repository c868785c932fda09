"""
Operation Batcher

Collects playlist-track changes from the ontology and applies them to
Spotify in batches.

Collapsing
----------
Pending operations are keyed by (playlist id, track key). For each new
operation on a key:

- no entry          -> insert it
- DELETE then ADD   -> ADD (the pending delete is undone)
- ADD then DELETE   -> entry removed (nothing to send)
- anything else     -> payload replaced, operation kept

So the pending state of a key is always the net effect of the events seen
for it, in arrival order, and ADD and DELETE never coexist for one key.

Flush
-----
Every flush_interval seconds, for each playlist with pending entries:

1. fetch the playlist from Spotify
2. skip it (keeping its entries) if its name fails the name filter
3. split entries into adds and deletes
4. drop adds whose URI is already in the playlist, add the rest in one call
5. remove all deletes in one call
6. clear exactly the entries that were flushed

While a playlist is being flushed its snapshot is kept as in-flight. A
DELETE for a key whose ADD is in flight is stored as a DELETE instead of
cancelling, since that ADD may already have reached Spotify.

A failing playlist keeps its entries and does not stop the others.
Re-running a flush for operations already applied sends nothing new,
because adds are checked against current membership first.
"""

import logging
from typing import Callable

from spotify_ontology_sync.clients.spotify import SpotifyClientProtocol
from spotify_ontology_sync.core.models import (
    OntologyPlaylistTrack,
    TrackOperation,
    TrackOperationEntry,
)
from spotify_ontology_sync.core.scheduler import PeriodicTask
from spotify_ontology_sync.core.writers import SpotifyWriter

logger = logging.getLogger(__name__)


class OperationBatcher:
    def __init__(self, spotify: SpotifyClientProtocol, writer: SpotifyWriter,
                 flush_interval: float = 1.0,
                 name_filter: Callable[[str], bool] | None = None):
        self._spotify = spotify
        self._writer = writer
        self._name_filter = name_filter
        self._pending: dict[str, dict[str, TrackOperationEntry]] = {}
        self._inflight: dict[str, dict[str, TrackOperationEntry]] = {}
        self._task = PeriodicTask("flush", flush_interval, self.flush)

    @property
    def pending(self) -> dict[str, dict[str, TrackOperationEntry]]:
        return self._pending

    def pending_count(self) -> int:
        return sum(len(entries) for entries in self._pending.values())

    def start(self) -> None:
        self._task.start()

    def stop(self) -> None:
        """Stop the flush timer. Pending operations are not flushed."""
        self._task.stop()
        if self._pending:
            logger.warning(f"Stopping with {self.pending_count()} unflushed track operations")

    def record(self, playlist_id: str, track: OntologyPlaylistTrack,
               operation: TrackOperation) -> None:
        entries = self._pending.setdefault(playlist_id, {})
        key = track.primary_key
        existing = entries.get(key)

        if existing is None:
            entries[key] = TrackOperationEntry(track, operation)
        elif existing.operation == TrackOperation.DELETE and operation == TrackOperation.ADD:
            entries[key] = TrackOperationEntry(track, TrackOperation.ADD)
        elif existing.operation == TrackOperation.ADD and operation == TrackOperation.DELETE:
            if self._inflight.get(playlist_id, {}).get(key) is existing:
                entries[key] = TrackOperationEntry(track, TrackOperation.DELETE)
            else:
                del entries[key]
                logger.debug(f"Add and delete of {key} in {playlist_id} cancel out")
        else:
            entries[key] = TrackOperationEntry(track, existing.operation)

        if not entries:
            del self._pending[playlist_id]

    async def flush(self) -> None:
        if not self._pending:
            return

        for playlist_id in list(self._pending):
            entries = dict(self._pending.get(playlist_id, {}))
            if not entries:
                continue
            self._inflight[playlist_id] = entries
            try:
                flushed = await self._flush_playlist(playlist_id, entries)
            except Exception as e:
                logger.error(f"Flush failed for playlist {playlist_id}, keeping "
                             f"{len(entries)} operations: {e}")
                continue
            finally:
                self._inflight.pop(playlist_id, None)
            if flushed:
                self._clear(playlist_id, entries)

    async def _flush_playlist(self, playlist_id: str,
                              entries: dict[str, TrackOperationEntry]) -> bool:
        details = await self._spotify.get_playlist_details(playlist_id)
        if details is None:
            raise LookupError(f"Playlist {playlist_id} not found on Spotify")

        name = details.get("name", "")
        if self._name_filter is not None and not self._name_filter(name):
            logger.debug(f"Playlist '{name}' ({playlist_id}) fails name filter, deferring")
            return False

        adds = [e.track.song_uri for e in entries.values() if e.operation == TrackOperation.ADD]
        deletes = [e.track.song_uri for e in entries.values() if e.operation == TrackOperation.DELETE]

        if adds:
            items = await self._spotify.get_playlist_tracks(playlist_id)
            existing = {(item.get("track") or {}).get("uri") for item in items}
            to_add = list(dict.fromkeys(uri for uri in adds if uri not in existing))
            if to_add:
                await self._writer.add_tracks(playlist_id, to_add)
            else:
                logger.debug(f"No new tracks to add for playlist {playlist_id}")

        if deletes:
            await self._writer.remove_tracks(playlist_id, list(dict.fromkeys(deletes)))

        logger.info(f"Flushed {len(entries)} operations for playlist {playlist_id}")
        return True

    def _clear(self, playlist_id: str, flushed: dict[str, TrackOperationEntry]) -> None:
        # Entries replaced while the flush awaited Spotify stay pending
        entries = self._pending.get(playlist_id)
        if entries is None:
            return
        for key, entry in flushed.items():
            if entries.get(key) is entry:
                del entries[key]
        if not entries:
            del self._pending[playlist_id]
