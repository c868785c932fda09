#!/usr/bin/env python3
"""Spotify <-> Ontology Sync - one-time Spotify authorization

Prints the Spotify consent URL, takes the URL the browser was redirected to
(or the bare code), exchanges the code for tokens and stores them in the
token file the sync service reads on start.
"""

import asyncio
import logging
import os
import secrets
import sys
from pathlib import Path
from typing import Callable
from urllib.parse import parse_qs, urlsplit

from spotify_ontology_sync.clients.spotify import TOKEN_URL, SpotifyTokenEndpoint
from spotify_ontology_sync.core.config import (
    DEFAULT_DATA_DIR,
    DEFAULT_SCOPE,
    TOKEN_FILE_NAME,
    load_dev_env,
)
from spotify_ontology_sync.core.models import AuthError, CredentialRecord
from spotify_ontology_sync.core.token_cache import write_token_file
from spotify_ontology_sync.sync import setup_logging

DEFAULT_REDIRECT_URI = "http://localhost:8888/auth/callback"

logger = logging.getLogger(__name__)


def new_state() -> str:
    return secrets.token_urlsafe(16)


def parse_callback(callback: str, state: str) -> str:
    """Return the authorization code from a redirect URL or a pasted code."""
    callback = callback.strip()
    if not callback:
        raise AuthError("No callback URL or code given")
    if "?" not in callback:
        return callback

    query = parse_qs(urlsplit(callback).query)
    if query.get("state", [""])[0] != state:
        raise AuthError("Invalid state in callback URL")
    if "error" in query:
        raise AuthError(f"Authorization denied: {query['error'][0]}")
    code = query.get("code", [""])[0]
    if not code:
        raise AuthError("No code in callback URL")
    return code


async def exchange_and_store(endpoint: SpotifyTokenEndpoint, code: str,
                             redirect_uri: str, token_file: Path) -> CredentialRecord:
    record = await endpoint.exchange_code(code, redirect_uri)
    write_token_file(token_file, record)
    logger.info(f"Saved Spotify token to {token_file}")
    return record


def main(read: Callable[[str], str] = input) -> int:
    load_dev_env()
    data_dir = Path(os.environ.get("DATA_DIR", DEFAULT_DATA_DIR))
    setup_logging(data_dir)

    client_id = os.environ.get("SPOTIFY_CLIENT_ID", "")
    client_secret = os.environ.get("SPOTIFY_CLIENT_SECRET", "")
    redirect_uri = os.environ.get("SPOTIFY_REDIRECT_URI", DEFAULT_REDIRECT_URI)
    try:
        endpoint = SpotifyTokenEndpoint(
            client_id,
            client_secret,
            token_url=os.environ.get("SPOTIFY_TOKEN_URL", TOKEN_URL),
        )
    except AuthError as e:
        logger.error(str(e))
        return 1

    state = new_state()
    url = endpoint.authorize_url(redirect_uri, os.environ.get("SPOTIFY_SCOPE", DEFAULT_SCOPE), state)
    print(f"Open this URL in a browser and approve access:\n\n  {url}\n")

    try:
        code = parse_callback(read("Paste the URL you were redirected to: "), state)
        record = asyncio.run(exchange_and_store(endpoint, code, redirect_uri, data_dir / TOKEN_FILE_NAME))
    except AuthError as e:
        logger.error(f"Spotify authorization failed: {e}")
        return 1

    print(f"SPOTIFY_ACCESS_TOKEN={record.access_token}")
    print(f"SPOTIFY_REFRESH_TOKEN={record.refresh_token}")
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
