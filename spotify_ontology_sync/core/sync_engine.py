"""
Sync Engine

Builds the components once and owns their lifecycle. Everything shared
(clients, credential cache, event bus, snapshot cache) is passed in
explicitly; there is no module-level state.

Wiring
------
Spotify side:
    PollingEmitter --bus--> PlaylistReconciler  (upsert/delete in ontology)
                    --bus--> NowPlayingPublisher (stream rows)

Ontology side:
    playlist feed       --> PlaylistReconciler  (create/modify on Spotify)
    playlist-track feed --> OperationBatcher --flush--> SpotifyWriter

stop() releases every timer: subscriptions are unsubscribed, pollers and
the batcher stopped. Pending track operations are not flushed.
"""

import asyncio
import logging

from spotify_ontology_sync.clients.ontology import FoundryOntologyClient, OntologyClientProtocol
from spotify_ontology_sync.clients.spotify import (
    SpotifyClient,
    SpotifyClientProtocol,
    SpotifyTokenEndpoint,
)
from spotify_ontology_sync.core.batcher import OperationBatcher
from spotify_ontology_sync.core.config import SyncConfig
from spotify_ontology_sync.core.emitter import PollingEmitter
from spotify_ontology_sync.core.events import EventBus
from spotify_ontology_sync.core.now_playing import NowPlayingPublisher
from spotify_ontology_sync.core.reconciler import PlaylistReconciler
from spotify_ontology_sync.core.subscription import (
    PlaylistFeed,
    PlaylistTrackFeed,
    ReconnectingSubscription,
)
from spotify_ontology_sync.core.token_cache import CredentialCache
from spotify_ontology_sync.core.writers import OntologyWriter, SpotifyWriter

logger = logging.getLogger(__name__)


class SyncEngine:
    """Bidirectional playlist sync between Spotify and the ontology."""

    def __init__(self, spotify: SpotifyClientProtocol,
                 ontology: OntologyClientProtocol, config: SyncConfig):
        self._config = config
        self.spotify = spotify
        self.ontology = ontology
        self.bus = EventBus()
        self._stopped = asyncio.Event()
        self._running = False

        self.spotify_writer = SpotifyWriter(spotify)
        self.ontology_writer = OntologyWriter(
            ontology,
            create_action=config.create_playlist_action,
            modify_action=config.modify_playlist_action,
            delete_action=config.delete_playlist_action,
        )

        self.emitter = PollingEmitter(
            spotify,
            self.bus,
            playlist_interval=config.playlist_poll_interval,
            playback_interval=config.playback_poll_interval,
        )
        self.reconciler = PlaylistReconciler(
            lambda: self.emitter.playlist_cache,
            self.spotify_writer,
            ontology,
            self.ontology_writer,
            playlist_object_type=config.playlist_object_type,
        )
        self.batcher = OperationBatcher(
            spotify,
            self.spotify_writer,
            flush_interval=config.flush_interval,
            name_filter=config.name_filter(),
        )
        self.publisher = NowPlayingPublisher(
            ontology,
            now_playing=config.now_playing_stream,
            tracks=config.tracks_stream,
            track_features=config.track_features_stream,
            playlists=config.playlists_stream,
        )

        self.playlist_subscription = ReconnectingSubscription(
            ontology,
            PlaylistFeed(self.reconciler, config.playlist_object_type),
            refresh_interval=config.subscription_refresh_interval,
        )
        self.track_subscription = ReconnectingSubscription(
            ontology,
            PlaylistTrackFeed(self.batcher, config.playlist_track_object_type),
            refresh_interval=config.subscription_refresh_interval,
        )

        self.reconciler.register(self.bus)
        self.publisher.register(self.bus)

    @classmethod
    def from_config(cls, config: SyncConfig) -> "SyncEngine":
        token_endpoint = SpotifyTokenEndpoint(
            config.spotify_client_id,
            config.spotify_client_secret,
            token_url=config.spotify_token_url,
        )
        credentials = CredentialCache.from_tokens(
            config.spotify_access_token,
            config.spotify_refresh_token,
            token_endpoint.refresh,
            scope=config.spotify_scope,
            token_file=config.token_file,
        )
        spotify = SpotifyClient(credentials, api_url=config.spotify_api_url)
        ontology = FoundryOntologyClient(
            config.foundry_url,
            config.foundry_token,
            config.ontology,
            feed_interval=config.feed_poll_interval,
        )
        return cls(spotify, ontology, config)

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> "SyncEngine":
        if self._running:
            logger.warning("Sync engine already running")
            return self
        logger.info("=" * 50)
        logger.info("Starting sync engine")
        self._running = True
        self._stopped.clear()
        self.emitter.start()
        self.batcher.start()
        self.playlist_subscription.start()
        self.track_subscription.start()
        return self

    def stop(self) -> None:
        if not self._running:
            return
        logger.info("Stopping sync engine")
        self.playlist_subscription.unsubscribe()
        self.track_subscription.unsubscribe()
        self.emitter.stop()
        self.batcher.stop()
        self._running = False
        self._stopped.set()
        logger.info("=" * 50)

    async def wait_stopped(self) -> None:
        await self._stopped.wait()
