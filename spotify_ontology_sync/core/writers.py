"""Write adapters: apply an already-decided mutation to one side."""

import logging
from typing import Any

from spotify_ontology_sync.clients.ontology import OntologyClientProtocol
from spotify_ontology_sync.clients.spotify import SpotifyClientProtocol
from spotify_ontology_sync.core.models import PlaylistSnapshot

logger = logging.getLogger(__name__)


class SpotifyWriter:
    """Mutations against Spotify. Errors propagate to the caller."""

    def __init__(self, spotify: SpotifyClientProtocol):
        self._spotify = spotify

    async def create_playlist(self, owner: str, name: str, description: str) -> dict:
        created = await self._spotify.create_playlist(owner, name, description)
        logger.info(f"Created Spotify playlist '{name}' for {owner}")
        return created

    async def update_playlist(self, playlist_id: str, name: str, description: str) -> None:
        await self._spotify.modify_playlist_details(playlist_id, name, description)
        logger.info(f"Updated Spotify playlist {playlist_id}: '{name}'")

    async def add_tracks(self, playlist_id: str, uris: list[str]) -> None:
        await self._spotify.add_tracks_to_playlist(playlist_id, uris)
        logger.info(f"Added {len(uris)} tracks to {playlist_id}")

    async def remove_tracks(self, playlist_id: str, uris: list[str]) -> None:
        await self._spotify.remove_tracks_from_playlist(playlist_id, uris)
        logger.info(f"Removed {len(uris)} tracks from {playlist_id}")


class OntologyWriter:
    """Mutations against the ontology via actions. Failures are logged, not raised."""

    def __init__(self, ontology: OntologyClientProtocol,
                 create_action: str = "create-new-spotify-playlist",
                 modify_action: str = "modify-spotify-playlist",
                 delete_action: str = "delete-spotify-playlist"):
        self._ontology = ontology
        self._create_action = create_action
        self._modify_action = modify_action
        self._delete_action = delete_action

    async def _apply(self, action: str, params: dict) -> Any:
        try:
            result = await self._ontology.apply_action(action, params)
        except Exception as e:
            logger.error(f"Failed to apply {action} with {params}: {e}")
            return None
        logger.info(f"Applied {action}: {params}")
        return result

    async def create_playlist(self, playlist: PlaylistSnapshot) -> Any:
        return await self._apply(self._create_action, {
            "playlist_id": playlist.id,
            "name": playlist.name,
            "description": playlist.description,
            "owner": playlist.owner_id,
            "tracks_count": playlist.track_count,
        })

    async def modify_playlist(self, ontology_playlist_id: str, playlist: PlaylistSnapshot) -> Any:
        return await self._apply(self._modify_action, {
            "spotify_playlist": ontology_playlist_id,
            "name": playlist.name,
            "description": playlist.description,
            "owner": playlist.owner_id,
            "tracks_count": str(playlist.track_count),
        })

    async def delete_playlist(self, playlist_id: str) -> Any:
        return await self._apply(self._delete_action, {"spotify_playlist": playlist_id})
