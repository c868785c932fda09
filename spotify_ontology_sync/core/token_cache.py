"""
Self-refreshing Spotify credential.

Spotify may rotate the refresh token on every refresh. Two refreshes racing
with the same captured refresh token can both succeed and invalidate each
other, leaving the chain broken for good. All refreshes for one cache
therefore go through a single lock, and callers that queued behind an
in-flight refresh reuse its result instead of starting another.
"""

import asyncio
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Awaitable, Callable

from spotify_ontology_sync.core.models import AuthError, CredentialRecord

logger = logging.getLogger(__name__)

Refresher = Callable[[str], Awaitable[CredentialRecord]]


def write_token_file(token_file: Path, record: CredentialRecord) -> None:
    """Atomically replace token_file with record."""
    token_file.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=token_file.parent, prefix=".token_", suffix=".tmp")
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(record.to_dict(), f, indent=2)
        os.replace(temp_path, token_file)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


class CredentialCache:
    def __init__(self, initial: CredentialRecord, refresher: Refresher,
                 token_file: Path | None = None,
                 clock: Callable[[], float] = time.time):
        self._record = initial
        self._refresher = refresher
        self._file = token_file
        self._clock = clock
        self._lock = asyncio.Lock()
        self.refresh_count = 0
        self._load_cached()

    @classmethod
    def from_tokens(cls, access_token: str, refresh_token: str, refresher: Refresher,
                    scope: str = "", token_file: Path | None = None,
                    clock: Callable[[], float] = time.time) -> "CredentialCache":
        """Seed from configured tokens. The seed is treated as already expired."""
        initial = CredentialRecord(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=clock(),
            scope=scope,
        )
        return cls(initial, refresher, token_file=token_file, clock=clock)

    @property
    def current(self) -> CredentialRecord:
        return self._record

    async def get_credential(self) -> CredentialRecord:
        if not self._record.is_expired(self._clock()):
            return self._record

        async with self._lock:
            # Another caller may have refreshed while we waited
            if not self._record.is_expired(self._clock()):
                return self._record
            self._record = await self._refresh(self._record)
            return self._record

    async def _refresh(self, stale: CredentialRecord) -> CredentialRecord:
        if not stale.refresh_token:
            raise AuthError("No refresh token configured")

        logger.info("Refreshing Spotify token")
        try:
            fresh = await self._refresher(stale.refresh_token)
        except AuthError:
            raise
        except Exception as e:
            raise AuthError(f"Token refresh failed: {e}") from e

        if not fresh.refresh_token:
            fresh = CredentialRecord(
                access_token=fresh.access_token,
                refresh_token=stale.refresh_token,
                expires_at=fresh.expires_at,
                scope=fresh.scope,
            )
        self.refresh_count += 1
        self._save(fresh)
        return fresh

    def _load_cached(self) -> None:
        if self._file is None or not self._file.exists():
            return
        try:
            data = json.loads(self._file.read_text())
            self._record = CredentialRecord.from_dict(data)
            logger.debug("Loaded cached Spotify token")
        except Exception as e:
            logger.warning(f"Token cache load failed: {e}")

    def _save(self, record: CredentialRecord) -> None:
        if self._file is None:
            return
        try:
            write_token_file(self._file, record)
        except Exception as e:
            logger.error(f"Token cache save failed: {e}")
