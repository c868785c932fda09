"""Environment-sourced configuration."""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = (
    "user-read-currently-playing playlist-read-private "
    "user-top-read playlist-modify-private"
)
DEFAULT_DATA_DIR = "/config/spotify_ontology_sync"
DEV_ENV_FILE = ".env.development"
TOKEN_FILE_NAME = ".spotify_token.json"

REQUIRED = [
    "SPOTIFY_CLIENT_ID",
    "SPOTIFY_CLIENT_SECRET",
    "SPOTIFY_ACCESS_TOKEN",
    "SPOTIFY_REFRESH_TOKEN",
    "FOUNDRY_URL",
    "FOUNDRY_TOKEN",
    "FOUNDRY_ONTOLOGY",
]


class ConfigError(Exception):
    """Configuration is missing or malformed."""
    pass


@dataclass(frozen=True)
class StreamTarget:
    """A Foundry stream and the view records are pushed to."""
    stream_rid: str
    view_rid: str


@dataclass(frozen=True)
class SyncConfig:
    spotify_client_id: str
    spotify_client_secret: str
    spotify_access_token: str
    spotify_refresh_token: str
    foundry_url: str
    foundry_token: str
    ontology: str
    spotify_api_url: str = "https://api.spotify.com/v1"
    spotify_token_url: str = "https://accounts.spotify.com/api/token"
    spotify_scope: str = DEFAULT_SCOPE
    playlist_poll_interval: float = 5.0
    playback_poll_interval: float = 1.0
    flush_interval: float = 1.0
    subscription_refresh_interval: float = 120.0
    feed_poll_interval: float = 2.0
    playlist_name_filter: str | None = None
    playlist_object_type: str = "SpotifyPlaylist"
    playlist_track_object_type: str = "SpotifyPlaylistTrack"
    create_playlist_action: str = "create-new-spotify-playlist"
    modify_playlist_action: str = "modify-spotify-playlist"
    delete_playlist_action: str = "delete-spotify-playlist"
    now_playing_stream: StreamTarget | None = None
    tracks_stream: StreamTarget | None = None
    track_features_stream: StreamTarget | None = None
    playlists_stream: StreamTarget | None = None
    data_dir: Path = Path(DEFAULT_DATA_DIR)

    @property
    def token_file(self) -> Path:
        return self.data_dir / TOKEN_FILE_NAME

    def name_filter(self) -> Callable[[str], bool] | None:
        """Predicate playlist names must pass before tracks are flushed."""
        if not self.playlist_name_filter:
            return None
        pattern = re.compile(self.playlist_name_filter)
        return lambda name: pattern.search(name or "") is not None


def load_dev_env(environ: Mapping[str, str] = os.environ) -> bool:
    """Load .env.development when APP_ENV=development. Existing values win."""
    if environ.get("APP_ENV") != "development":
        return False
    from dotenv import load_dotenv
    loaded = load_dotenv(DEV_ENV_FILE, override=False)
    if loaded:
        logger.debug(f"Loaded {DEV_ENV_FILE}")
    return loaded


def _float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def _stream(environ: Mapping[str, str], name: str) -> StreamTarget | None:
    raw = environ.get(name, "").strip()
    if not raw:
        return None
    parts = [p.strip() for p in raw.split(",")]
    if len(parts) != 2 or not all(parts):
        raise ConfigError(f"{name} must be '<stream rid>,<view rid>', got {raw!r}")
    return StreamTarget(stream_rid=parts[0], view_rid=parts[1])


def load_config(environ: Mapping[str, str] = os.environ) -> SyncConfig:
    missing = [var for var in REQUIRED if not environ.get(var)]
    if missing:
        raise ConfigError(f"Missing config: {', '.join(missing)}")

    name_filter = environ.get("PLAYLIST_NAME_FILTER") or None
    if name_filter:
        try:
            re.compile(name_filter)
        except re.error as e:
            raise ConfigError(f"PLAYLIST_NAME_FILTER is not a valid regex: {e}")

    defaults = SyncConfig.__dataclass_fields__
    return SyncConfig(
        spotify_client_id=environ["SPOTIFY_CLIENT_ID"],
        spotify_client_secret=environ["SPOTIFY_CLIENT_SECRET"],
        spotify_access_token=environ["SPOTIFY_ACCESS_TOKEN"],
        spotify_refresh_token=environ["SPOTIFY_REFRESH_TOKEN"],
        foundry_url=environ["FOUNDRY_URL"].rstrip("/"),
        foundry_token=environ["FOUNDRY_TOKEN"],
        ontology=environ["FOUNDRY_ONTOLOGY"],
        spotify_api_url=environ.get("SPOTIFY_API_URL", defaults["spotify_api_url"].default).rstrip("/"),
        spotify_token_url=environ.get("SPOTIFY_TOKEN_URL", defaults["spotify_token_url"].default),
        spotify_scope=environ.get("SPOTIFY_SCOPE", DEFAULT_SCOPE),
        playlist_poll_interval=_float(environ, "PLAYLIST_POLL_INTERVAL", 5.0),
        playback_poll_interval=_float(environ, "PLAYBACK_POLL_INTERVAL", 1.0),
        flush_interval=_float(environ, "FLUSH_INTERVAL", 1.0),
        subscription_refresh_interval=_float(environ, "SUBSCRIPTION_REFRESH_INTERVAL", 120.0),
        feed_poll_interval=_float(environ, "FEED_POLL_INTERVAL", 2.0),
        playlist_name_filter=name_filter,
        playlist_object_type=environ.get("PLAYLIST_OBJECT_TYPE", defaults["playlist_object_type"].default),
        playlist_track_object_type=environ.get(
            "PLAYLIST_TRACK_OBJECT_TYPE", defaults["playlist_track_object_type"].default
        ),
        create_playlist_action=environ.get("CREATE_PLAYLIST_ACTION", defaults["create_playlist_action"].default),
        modify_playlist_action=environ.get("MODIFY_PLAYLIST_ACTION", defaults["modify_playlist_action"].default),
        delete_playlist_action=environ.get("DELETE_PLAYLIST_ACTION", defaults["delete_playlist_action"].default),
        now_playing_stream=_stream(environ, "STREAM_NOW_PLAYING"),
        tracks_stream=_stream(environ, "STREAM_TRACKS"),
        track_features_stream=_stream(environ, "STREAM_TRACK_FEATURES"),
        playlists_stream=_stream(environ, "STREAM_PLAYLISTS"),
        data_dir=Path(environ.get("DATA_DIR", DEFAULT_DATA_DIR)),
    )
