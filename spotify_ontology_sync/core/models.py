"""Data models and error types shared by the sync engine."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class SyncError(Exception):
    """Base class for sync failures."""
    pass


class AuthError(SyncError):
    """Spotify credential could not be produced or refreshed."""
    pass


class TransientUpstreamError(SyncError):
    """HTTP or network failure from either backend; retried on the next cycle."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class SubscriptionClosed(SyncError):
    """Change feed was closed by the platform and must be re-opened."""
    pass


class DataStale(SyncError):
    """Change feed reported that its view is out of date. Advisory only."""
    pass


class TrackOperation(str, Enum):
    ADD = "ADD"
    DELETE = "DELETE"


class ChangeState(str, Enum):
    ADDED_OR_UPDATED = "ADDED_OR_UPDATED"
    REMOVED = "REMOVED"


class SubscriptionStatus(str, Enum):
    IDLE = "IDLE"
    SUBSCRIBING = "SUBSCRIBING"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"
    RECONNECTING = "RECONNECTING"
    UNSUBSCRIBED = "UNSUBSCRIBED"


@dataclass(frozen=True)
class CredentialRecord:
    """Spotify bearer credential. expires_at is epoch seconds."""
    access_token: str
    refresh_token: str
    expires_at: float
    scope: str = ""

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CredentialRecord":
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=float(data.get("expires_at", 0)),
            scope=data.get("scope", ""),
        )


@dataclass(frozen=True)
class PlaylistSnapshot:
    """A playlist as last seen in the Spotify listing."""
    id: str
    name: str
    description: str
    track_count: int
    owner_id: str
    owner_display_name: str
    snapshot_id: str = ""

    @classmethod
    def from_api(cls, playlist: Mapping[str, Any]) -> "PlaylistSnapshot":
        owner = playlist.get("owner") or {}
        tracks = playlist.get("tracks") or {}
        owner_id = owner.get("id", "")
        return cls(
            id=playlist["id"],
            name=playlist.get("name", ""),
            description=playlist.get("description") or "",
            track_count=int(tracks.get("total", 0)),
            owner_id=owner_id,
            owner_display_name=owner.get("display_name") or owner_id,
            snapshot_id=playlist.get("snapshot_id", ""),
        )

    def differs_from(self, other: "PlaylistSnapshot") -> bool:
        """True when name, description or track count changed."""
        return (
            self.name != other.name
            or self.description != other.description
            or self.track_count != other.track_count
        )


@dataclass(frozen=True)
class OntologyPlaylist:
    """SpotifyPlaylist object as delivered by the ontology change feed."""
    playlist_id: str
    name: str
    description: str
    owner: str
    tracks_count: str | int | None = None

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> "OntologyPlaylist":
        return cls(
            playlist_id=obj["playlistId"],
            name=obj.get("name") or "",
            description=obj.get("description") or "",
            owner=obj.get("owner") or "",
            tracks_count=obj.get("tracksCount"),
        )


@dataclass(frozen=True)
class OntologyPlaylistTrack:
    """SpotifyPlaylistTrack object: membership of one song in one playlist."""
    primary_key: str
    playlist_id: str
    song_uri: str

    @classmethod
    def from_object(cls, obj: Mapping[str, Any]) -> "OntologyPlaylistTrack":
        primary_key = obj.get("$primaryKey", obj.get("__primaryKey"))
        if primary_key is None:
            raise ValueError(f"Playlist track object has no primary key: {obj!r}")
        return cls(
            primary_key=str(primary_key),
            playlist_id=obj["playlistId"],
            song_uri=obj["songId"],
        )


@dataclass(frozen=True)
class ChangeEvent:
    """Normalized change-feed notification."""
    state: ChangeState
    object: Any


@dataclass
class TrackOperationEntry:
    """A pending add or delete of one track in one playlist."""
    track: OntologyPlaylistTrack
    operation: TrackOperation


@dataclass(frozen=True)
class TrackInformation:
    """Currently playing track with its audio analysis and features."""
    id: str
    currently_playing: dict
    analysis: dict = field(default_factory=dict)
    features: dict = field(default_factory=dict)
