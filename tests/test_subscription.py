"""Tests for ReconnectingSubscription and the two change feeds."""

import pytest

from spotify_ontology_sync.clients.ontology import SubscriptionError
from spotify_ontology_sync.core.batcher import OperationBatcher
from spotify_ontology_sync.core.models import (
    DataStale,
    SubscriptionClosed,
    SubscriptionStatus,
    TrackOperation,
)
from spotify_ontology_sync.core.reconciler import PlaylistReconciler
from spotify_ontology_sync.core.subscription import (
    MAX_RECONNECT_DELAY,
    PlaylistFeed,
    PlaylistTrackFeed,
    ReconnectingSubscription,
    reconnect_delay,
)
from spotify_ontology_sync.core.writers import OntologyWriter, SpotifyWriter

CLOSED = SubscriptionError(subscription_closed=True, errors=["socket closed"])


@pytest.fixture
def batcher(fake_spotify):
    return OperationBatcher(fake_spotify, SpotifyWriter(fake_spotify))


@pytest.fixture
async def subscription(fake_ontology, batcher):
    sub = ReconnectingSubscription(fake_ontology, PlaylistTrackFeed(batcher))
    yield sub
    sub.unsubscribe()


def track_object(key, playlist_id="p1"):
    return {"__primaryKey": key, "playlistId": playlist_id, "songId": f"spotify:track:{key}"}


def test_reconnect_delay_is_capped_exponential():
    assert [reconnect_delay(n) for n in range(7)] == [1, 2, 4, 8, 16, 30, 30]
    assert reconnect_delay(50) == MAX_RECONNECT_DELAY


class TestLifecycle:
    async def test_start_opens_one_subscription(self, subscription, fake_ontology):
        subscription.start()

        assert subscription.status == SubscriptionStatus.SUBSCRIBING
        handles = fake_ontology.live_handles()
        assert len(handles) == 1
        assert handles[0].object_type == "SpotifyPlaylistTrack"

        handles[0].listener.on_successful_subscription()
        assert subscription.status == SubscriptionStatus.ACTIVE

    async def test_closed_errors_back_off(self, subscription, fake_ontology):
        subscription.start()
        delays = []
        for _ in range(6):
            fake_ontology.live_handles()[0].listener.on_error(CLOSED)
            assert subscription.status == SubscriptionStatus.RECONNECTING
            assert fake_ontology.live_handles() == []
            delays.append(subscription.last_reconnect_delay)
            subscription._reconnect()

        assert delays == [1, 2, 4, 8, 16, 30]
        assert len(fake_ontology.live_handles()) == 1

    async def test_success_resets_backoff(self, subscription, fake_ontology):
        subscription.start()
        for _ in range(3):
            fake_ontology.live_handles()[0].listener.on_error(CLOSED)
            subscription._reconnect()

        fake_ontology.live_handles()[0].listener.on_successful_subscription()
        assert subscription.reconnect_attempts == 0

        fake_ontology.live_handles()[0].listener.on_error(CLOSED)
        assert subscription.last_reconnect_delay == 1

    async def test_non_fatal_error_keeps_subscription(self, subscription, fake_ontology):
        subscription.start()
        handle = fake_ontology.live_handles()[0]
        handle.listener.on_successful_subscription()

        handle.listener.on_error(SubscriptionError(subscription_closed=False, errors=["hiccup"]))

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert fake_ontology.live_handles() == [handle]

    async def test_closed_and_stale_feeds_are_recorded(self, subscription, fake_ontology):
        subscription.start()
        handle = fake_ontology.live_handles()[0]

        handle.listener.on_out_of_date()
        assert isinstance(subscription.last_error, DataStale)
        assert subscription.status == SubscriptionStatus.SUBSCRIBING

        handle.listener.on_error(CLOSED)
        assert isinstance(subscription.last_error, SubscriptionClosed)

    async def test_reconnect_while_active_is_a_no_op(self, subscription, fake_ontology):
        subscription.start()
        subscription._reconnect()
        assert len(fake_ontology.handles) == 1

    async def test_subscribe_failure_schedules_reconnect(self, subscription, fake_ontology):
        fake_ontology.fail_subscribe = True
        subscription.start()

        assert subscription.status == SubscriptionStatus.RECONNECTING
        assert subscription.last_reconnect_delay == 1
        assert isinstance(subscription.last_error, SubscriptionClosed)

        fake_ontology.fail_subscribe = False
        subscription._reconnect()
        assert len(fake_ontology.live_handles()) == 1

    async def test_refresh_replaces_handle_and_ignores_stale_callbacks(
            self, subscription, fake_ontology, batcher):
        subscription.start()
        old = fake_ontology.live_handles()[0]
        old.listener.on_successful_subscription()

        subscription.refresh()

        assert old.unsubscribed
        new = fake_ontology.live_handles()
        assert len(new) == 1 and new[0] is not old

        old.listener.on_change({"state": "ADDED_OR_UPDATED", "object": track_object("a")})
        old.listener.on_error(CLOSED)
        assert batcher.pending == {}
        assert subscription.status == SubscriptionStatus.SUBSCRIBING
        assert subscription.reconnect_attempts == 0

    async def test_unsubscribe_is_idempotent_and_cancels_reconnect(self, subscription, fake_ontology):
        subscription.start()
        fake_ontology.live_handles()[0].listener.on_error(CLOSED)
        assert subscription._reconnect_timer is not None

        subscription.unsubscribe()
        subscription.unsubscribe()

        assert subscription.status == SubscriptionStatus.UNSUBSCRIBED
        assert subscription._reconnect_timer is None
        subscription._reconnect()
        assert fake_ontology.live_handles() == []

    async def test_refresh_after_unsubscribe_does_nothing(self, subscription, fake_ontology):
        subscription.start()
        subscription.unsubscribe()
        subscription.refresh()
        assert fake_ontology.live_handles() == []


class TestFeeds:
    async def test_track_changes_go_to_batcher(self, subscription, fake_ontology, batcher):
        subscription.start()
        listener = fake_ontology.live_handles()[0].listener
        listener.on_successful_subscription()

        listener.on_change({"state": "ADDED_OR_UPDATED", "object": track_object("a")})
        listener.on_change({"state": "REMOVED", "object": track_object("b")})

        assert batcher.pending["p1"]["a"].operation == TrackOperation.ADD
        assert batcher.pending["p1"]["b"].operation == TrackOperation.DELETE

    async def test_malformed_change_is_dropped(self, subscription, fake_ontology, batcher):
        subscription.start()
        listener = fake_ontology.live_handles()[0].listener

        listener.on_change({"state": "ADDED_OR_UPDATED", "object": {"playlistId": "p1"}})
        listener.on_change({"state": "SOMETHING_ELSE", "object": track_object("a")})

        assert batcher.pending == {}
        assert len(fake_ontology.live_handles()) == 1

    async def test_playlist_changes_go_to_reconciler(self, fake_spotify, fake_ontology):
        reconciler = PlaylistReconciler(
            lambda: {}, SpotifyWriter(fake_spotify), fake_ontology, OntologyWriter(fake_ontology)
        )
        sub = ReconnectingSubscription(fake_ontology, PlaylistFeed(reconciler))
        sub.start()
        listener = fake_ontology.live_handles("SpotifyPlaylist")[0].listener
        playlist = {
            "__primaryKey": "P9", "playlistId": "P9", "name": "From ontology",
            "description": "d", "owner": "owner1", "tracksCount": "0",
        }

        listener.on_change({"state": "ADDED_OR_UPDATED", "object": playlist})
        listener.on_change({"state": "REMOVED", "object": playlist})
        await sub.drain()
        sub.unsubscribe()

        assert fake_spotify.mutations() == [("create", "owner1", "From ontology", "d")]
