"""
Foundry Ontology Client

Applies actions, fetches objects, pushes stream records and provides a
change feed for an object type over the Foundry REST API.

The change feed here is a polling transport: it lists the object type on a
fixed interval and reports the difference from the previous listing as
ADDED_OR_UPDATED / REMOVED changes. The client remembers the last listing
per object type, so a feed opened after a teardown diffs against what the
previous feed delivered and changes made in between are still reported. Only the
very first listing of a type is a silent baseline. A failed listing is
reported as a closed subscription, which leaves reconnecting to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

import requests

from spotify_ontology_sync.core.config import StreamTarget
from spotify_ontology_sync.core.models import SubscriptionClosed, TransientUpstreamError

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30
PAGE_SIZE = 1000


@dataclass
class SubscriptionError:
    """Error reported to a change feed listener."""
    subscription_closed: bool
    errors: list[Any] = field(default_factory=list)


@dataclass
class SubscriptionListener:
    on_change: Callable[[dict], None]
    on_successful_subscription: Callable[[], None] = lambda: None
    on_out_of_date: Callable[[], None] = lambda: None
    on_error: Callable[[SubscriptionError], None] = lambda error: None


class SubscriptionHandle(Protocol):
    def unsubscribe(self) -> None: ...


class OntologyClientProtocol(Protocol):
    def subscribe(self, object_type: str, listener: SubscriptionListener) -> SubscriptionHandle: ...
    async def apply_action(self, action: str, params: dict) -> Any: ...
    async def fetch_one(self, object_type: str, primary_key: str) -> dict | None: ...
    async def publish_stream_records(self, target: StreamTarget, records: list[dict]) -> Any: ...


def _primary_key(obj: dict) -> str | None:
    key = obj.get("__primaryKey", obj.get("$primaryKey"))
    return None if key is None else str(key)


def _by_key(objects: list[dict]) -> dict[str, dict]:
    keyed = {}
    for obj in objects:
        key = _primary_key(obj)
        if key is not None:
            keyed[key] = obj
    return keyed


class PollingObjectFeed:
    """Change feed handle backed by periodic listing of one object type."""

    def __init__(self, client: "FoundryOntologyClient", object_type: str,
                 listener: SubscriptionListener, interval: float,
                 listings: dict[str, dict[str, dict]] | None = None):
        self._client = client
        self._object_type = object_type
        self._listener = listener
        self._interval = interval
        self._listings = {} if listings is None else listings
        self._subscribed = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    def unsubscribe(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                objects = await self._client.list_objects(self._object_type)
            except Exception as e:
                closed = SubscriptionClosed(f"Change feed for {self._object_type} failed: {e}")
                logger.warning(str(closed))
                self._task = None
                self._listener.on_error(SubscriptionError(subscription_closed=True, errors=[closed]))
                return

            current = _by_key(objects)
            if not self._subscribed:
                self._subscribed = True
                self._listener.on_successful_subscription()

            previous = self._listings.get(self._object_type)
            self._listings[self._object_type] = current
            if previous is not None:
                self._emit_diff(previous, current)
            await asyncio.sleep(self._interval)

    def _emit_diff(self, previous: dict[str, dict], current: dict[str, dict]) -> None:
        for key, obj in current.items():
            if previous.get(key) != obj:
                self._listener.on_change({"state": "ADDED_OR_UPDATED", "object": obj})
        for key, obj in previous.items():
            if key not in current:
                self._listener.on_change({"state": "REMOVED", "object": obj})


class FoundryOntologyClient:
    def __init__(self, foundry_url: str, token: str, ontology: str,
                 feed_interval: float = 2.0, session: requests.Session | None = None):
        if not foundry_url.startswith("http"):
            foundry_url = f"https://{foundry_url}"
        self._base_url = foundry_url.rstrip("/")
        self._ontology = ontology
        self._token = token
        self._feed_interval = feed_interval
        self._listings: dict[str, dict[str, dict]] = {}
        self._session = session or requests.Session()
        logger.info("Ontology client initialized")

    def _ontology_url(self, path: str) -> str:
        return f"{self._base_url}/api/v2/ontologies/{self._ontology}/{path}"

    def _send(self, method: str, url: str, allow_404: bool = False, **kwargs) -> Any:
        try:
            response = self._session.request(
                method,
                url,
                headers={"Authorization": f"Bearer {self._token}"},
                timeout=REQUEST_TIMEOUT,
                **kwargs,
            )
        except requests.RequestException as e:
            raise TransientUpstreamError(f"{method} {url} failed: {e}") from e

        if allow_404 and response.status_code == 404:
            return None
        if response.status_code >= 400:
            logger.error(f"Ontology error {response.status_code}: {response.text[:200]}")
            raise TransientUpstreamError(
                f"{method} {url} failed: {response.status_code}",
                status=response.status_code,
            )
        if not response.content:
            return None
        return response.json()

    def subscribe(self, object_type: str, listener: SubscriptionListener) -> PollingObjectFeed:
        return PollingObjectFeed(self, object_type, listener, self._feed_interval, self._listings)

    async def list_objects(self, object_type: str) -> list[dict]:
        objects: list[dict] = []
        page_token = None
        while True:
            params = {"pageSize": PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            page = await asyncio.to_thread(
                self._send, "GET", self._ontology_url(f"objects/{object_type}"), params=params
            ) or {}
            objects.extend(page.get("data", []))
            page_token = page.get("nextPageToken")
            if not page_token:
                return objects

    async def fetch_one(self, object_type: str, primary_key: str) -> dict | None:
        return await asyncio.to_thread(
            self._send, "GET", self._ontology_url(f"objects/{object_type}/{primary_key}"), allow_404=True
        )

    async def apply_action(self, action: str, params: dict) -> Any:
        return await asyncio.to_thread(
            self._send,
            "POST",
            self._ontology_url(f"actions/{action}/apply"),
            json={"parameters": params, "options": {"returnEdits": "ALL"}},
        )

    async def publish_stream_records(self, target: StreamTarget, records: list[dict]) -> Any:
        url = (f"{self._base_url}/stream-proxy/api/streams/{target.stream_rid}"
               f"/views/{target.view_rid}/jsonRecords")
        return await asyncio.to_thread(
            self._send, "POST", url, json=[{"value": record} for record in records]
        )
