"""Tests for the one-time Spotify authorization command."""

import json
from urllib.parse import parse_qs, urlsplit

import pytest

from spotify_ontology_sync import authorize
from spotify_ontology_sync.clients.spotify import SpotifyTokenEndpoint
from spotify_ontology_sync.core.models import AuthError, CredentialRecord
from spotify_ontology_sync.core.token_cache import CredentialCache

CALLBACK = "http://localhost:8888/auth/callback"


def test_authorize_url_carries_grant_parameters():
    endpoint = SpotifyTokenEndpoint("client-id", "secret")

    url = endpoint.authorize_url(CALLBACK, "playlist-read-private playlist-modify-private", "s1")

    parts = urlsplit(url)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://accounts.spotify.com/authorize"
    query = parse_qs(parts.query)
    assert query["response_type"] == ["code"]
    assert query["client_id"] == ["client-id"]
    assert query["redirect_uri"] == [CALLBACK]
    assert query["scope"] == ["playlist-read-private playlist-modify-private"]
    assert query["state"] == ["s1"]


class TestParseCallback:
    def test_code_from_redirect_url(self):
        assert authorize.parse_callback(f"{CALLBACK}?code=abc&state=s1\n", "s1") == "abc"

    def test_bare_code(self):
        assert authorize.parse_callback("  abc  ", "s1") == "abc"

    @pytest.mark.parametrize("callback", [
        f"{CALLBACK}?code=abc&state=other",
        f"{CALLBACK}?error=access_denied&state=s1",
        f"{CALLBACK}?state=s1",
        "",
    ])
    def test_rejected_callbacks(self, callback):
        with pytest.raises(AuthError):
            authorize.parse_callback(callback, "s1")


class FakeEndpoint:
    def __init__(self, client_id, client_secret, token_url=None):
        self.client_id = client_id
        self.exchanged = []

    def authorize_url(self, redirect_uri, scope, state):
        return f"https://accounts.example/authorize?state={state}"

    async def exchange_code(self, code, redirect_uri):
        self.exchanged.append((code, redirect_uri))
        return CredentialRecord("access-1", "refresh-1", expires_at=4000.0)


@pytest.fixture
def environment(tmp_path, monkeypatch):
    monkeypatch.setattr(authorize, "setup_logging", lambda data_dir: None)
    monkeypatch.setattr(authorize, "new_state", lambda: "s1")
    monkeypatch.delenv("APP_ENV", raising=False)
    monkeypatch.delenv("SPOTIFY_REDIRECT_URI", raising=False)
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("SPOTIFY_CLIENT_ID", "client-id")
    monkeypatch.setenv("SPOTIFY_CLIENT_SECRET", "secret")
    return tmp_path


def test_main_stores_exchanged_tokens(environment, monkeypatch, capsys):
    monkeypatch.setattr(authorize, "SpotifyTokenEndpoint", FakeEndpoint)

    assert authorize.main(read=lambda prompt: f"{CALLBACK}?code=abc&state=s1") == 0

    token_file = environment / ".spotify_token.json"
    assert json.loads(token_file.read_text())["refresh_token"] == "refresh-1"
    assert "SPOTIFY_REFRESH_TOKEN=refresh-1" in capsys.readouterr().out

    async def unused(refresh_token):
        raise AssertionError("stored token should be used as is")

    cache = CredentialCache.from_tokens("seed", "seed-refresh", unused, token_file=token_file)
    assert cache.current.access_token == "access-1"


def test_main_rejects_mismatched_state(environment, monkeypatch):
    monkeypatch.setattr(authorize, "SpotifyTokenEndpoint", FakeEndpoint)

    assert authorize.main(read=lambda prompt: f"{CALLBACK}?code=abc&state=forged") == 1
    assert not (environment / ".spotify_token.json").exists()


def test_main_requires_client_credentials(environment, monkeypatch):
    monkeypatch.delenv("SPOTIFY_CLIENT_SECRET")
    assert authorize.main(read=lambda prompt: "unused") == 1
