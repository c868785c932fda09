"""Spotify Web API Client - thin async wrapper over a requests session"""

import asyncio
import logging
import time
from typing import Any, Protocol

import requests

from spotify_ontology_sync.core.models import AuthError, CredentialRecord, TransientUpstreamError

logger = logging.getLogger(__name__)

API_URL = "https://api.spotify.com/v1"
TOKEN_URL = "https://accounts.spotify.com/api/token"
AUTHORIZE_URL = "https://accounts.spotify.com/authorize"
REQUEST_TIMEOUT = 30
PLAYLIST_PAGE_SIZE = 50
TRACK_PAGE_SIZE = 100
# Spotify rejects more than 100 URIs per add/remove request
MAX_URIS_PER_REQUEST = 100


class CredentialSource(Protocol):
    async def get_credential(self) -> CredentialRecord: ...


class SpotifyClientProtocol(Protocol):
    async def get_currently_playing(self) -> dict | None: ...
    async def get_user_playlists(self) -> list[dict]: ...
    async def get_playlist_details(self, playlist_id: str) -> dict: ...
    async def get_playlist_tracks(self, playlist_id: str) -> list[dict]: ...
    async def add_tracks_to_playlist(self, playlist_id: str, uris: list[str]) -> None: ...
    async def remove_tracks_from_playlist(self, playlist_id: str, uris: list[str]) -> None: ...
    async def modify_playlist_details(self, playlist_id: str, name: str, description: str) -> None: ...
    async def create_playlist(self, user_id: str, name: str, description: str) -> dict: ...
    async def get_audio_features(self, track_id: str) -> dict: ...
    async def get_audio_analysis(self, track_id: str) -> dict: ...


def _chunks(items: list[str], size: int) -> list[list[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class SpotifyTokenEndpoint:
    """Accounts service token endpoint (refresh and authorization-code grants)."""

    def __init__(self, client_id: str, client_secret: str,
                 token_url: str = TOKEN_URL, session: requests.Session | None = None):
        if not client_id or not client_secret:
            raise AuthError("Client ID and Client Secret are required")
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._session = session or requests.Session()

    def authorize_url(self, redirect_uri: str, scope: str, state: str,
                      authorize_url: str = AUTHORIZE_URL) -> str:
        """Consent page the user opens to start the authorization-code grant."""
        params = {
            "response_type": "code",
            "client_id": self._client_id,
            "scope": scope,
            "redirect_uri": redirect_uri,
            "state": state,
        }
        return requests.Request("GET", authorize_url, params=params).prepare().url

    async def refresh(self, refresh_token: str) -> CredentialRecord:
        return await asyncio.to_thread(
            self._request_token,
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            refresh_token,
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> CredentialRecord:
        return await asyncio.to_thread(
            self._request_token,
            {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
            "",
        )

    def _request_token(self, form: dict, previous_refresh_token: str) -> CredentialRecord:
        requested_at = time.time()
        try:
            response = self._session.post(
                self._token_url,
                data=form,
                auth=(self._client_id, self._client_secret),
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            raise AuthError(f"Failed to get Spotify token: {e}") from e

        if response.status_code != 200:
            raise AuthError(f"Failed to get Spotify token: {response.status_code} - {response.text[:200]}")

        data = response.json()
        if not data.get("access_token"):
            raise AuthError("Failed to get token: no access token in response")

        refresh_token = data.get("refresh_token") or previous_refresh_token
        if not refresh_token:
            raise AuthError("No refresh token available")

        return CredentialRecord(
            access_token=data["access_token"],
            refresh_token=refresh_token,
            expires_at=requested_at + float(data.get("expires_in", 3600)),
            scope=data.get("scope", ""),
        )


class SpotifyClient:
    def __init__(self, credentials: CredentialSource, api_url: str = API_URL,
                 session: requests.Session | None = None):
        self._credentials = credentials
        self._api_url = api_url.rstrip("/")
        self._session = session or requests.Session()
        logger.info("Spotify client initialized")

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http"):
            return path_or_url
        return f"{self._api_url}/{path_or_url.lstrip('/')}"

    async def _request(self, method: str, path_or_url: str, **kwargs) -> Any:
        credential = await self._credentials.get_credential()
        return await asyncio.to_thread(self._send, method, self._url(path_or_url),
                                       credential.access_token, **kwargs)

    def _send(self, method: str, url: str, access_token: str, **kwargs) -> Any:
        try:
            response = self._session.request(
                method,
                url,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=REQUEST_TIMEOUT,
                **kwargs,
            )
        except requests.RequestException as e:
            raise TransientUpstreamError(f"{method} {url} failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Spotify error {response.status_code}: {response.text[:200]}")
            raise TransientUpstreamError(
                f"{method} {url} failed: {response.status_code}",
                status=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _paginate(self, url: str) -> list[dict]:
        items: list[dict] = []
        next_url: str | None = url
        while next_url:
            page = await self._request("GET", next_url) or {}
            items.extend(page.get("items", []))
            next_url = page.get("next")
        return items

    async def get_currently_playing(self) -> dict | None:
        return await self._request("GET", "me/player/currently-playing")

    async def get_user_playlists(self) -> list[dict]:
        playlists = await self._paginate(f"me/playlists?limit={PLAYLIST_PAGE_SIZE}")
        logger.debug(f"Retrieved {len(playlists)} playlists from Spotify")
        return playlists

    async def get_playlist_details(self, playlist_id: str) -> dict:
        if not playlist_id:
            raise ValueError("Playlist ID is required")
        return await self._request("GET", f"playlists/{playlist_id}")

    async def get_playlist_tracks(self, playlist_id: str) -> list[dict]:
        return await self._paginate(f"playlists/{playlist_id}/tracks?limit={TRACK_PAGE_SIZE}")

    async def add_tracks_to_playlist(self, playlist_id: str, uris: list[str]) -> None:
        for chunk in _chunks(uris, MAX_URIS_PER_REQUEST):
            await self._request("POST", f"playlists/{playlist_id}/tracks", json={"uris": chunk})

    async def remove_tracks_from_playlist(self, playlist_id: str, uris: list[str]) -> None:
        for chunk in _chunks(uris, MAX_URIS_PER_REQUEST):
            await self._request(
                "DELETE",
                f"playlists/{playlist_id}/tracks",
                json={"tracks": [{"uri": uri} for uri in chunk]},
            )

    async def modify_playlist_details(self, playlist_id: str, name: str, description: str) -> None:
        await self._request(
            "PUT",
            f"playlists/{playlist_id}",
            json={"name": name, "description": description},
        )

    async def create_playlist(self, user_id: str, name: str, description: str) -> dict:
        return await self._request(
            "POST",
            f"users/{user_id}/playlists",
            json={"name": name, "description": description},
        )

    async def get_audio_features(self, track_id: str) -> dict:
        return await self._request("GET", f"audio-features/{track_id}")

    async def get_audio_analysis(self, track_id: str) -> dict:
        return await self._request("GET", f"audio-analysis/{track_id}")
