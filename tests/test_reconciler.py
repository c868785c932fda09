"""Tests for PlaylistReconciler decisions and both sync directions."""

import pytest

from spotify_ontology_sync.core.events import (
    EventBus,
    PlaylistCreated,
    PlaylistDeleted,
    PlaylistModified,
)
from spotify_ontology_sync.core.models import OntologyPlaylist, PlaylistSnapshot
from spotify_ontology_sync.core.reconciler import Decision, PlaylistReconciler, playlist_matches
from spotify_ontology_sync.core.writers import OntologyWriter, SpotifyWriter


def snapshot(playlist_id="P1", name="Mix", description="d", count=5, owner="u1"):
    return PlaylistSnapshot(
        id=playlist_id,
        name=name,
        description=description,
        track_count=count,
        owner_id=owner,
        owner_display_name=owner.upper(),
    )


def ontology_playlist(playlist_id="P1", name="Mix", description="d", count="5", owner="u1"):
    return OntologyPlaylist(
        playlist_id=playlist_id,
        name=name,
        description=description,
        owner=owner,
        tracks_count=count,
    )


@pytest.fixture
def cache():
    return {"P1": snapshot()}


@pytest.fixture
def reconciler(fake_spotify, fake_ontology, cache):
    return PlaylistReconciler(
        lambda: cache,
        SpotifyWriter(fake_spotify),
        fake_ontology,
        OntologyWriter(fake_ontology),
    )


class TestDecision:
    def test_string_and_int_counts_match(self):
        assert playlist_matches(ontology_playlist(count="5"), snapshot(count=5))
        assert playlist_matches(ontology_playlist(count=" 5 "), snapshot(count=5))
        assert not playlist_matches(ontology_playlist(count="6"), snapshot(count=5))

    @pytest.mark.parametrize("changes", [
        {"name": "Other"},
        {"description": "new"},
        {"owner": "u2"},
        {"count": "7"},
    ])
    def test_any_field_difference_is_update(self, reconciler, changes):
        assert reconciler.decide(ontology_playlist(**changes)) == Decision.UPDATE

    def test_identical_is_noop(self, reconciler):
        assert reconciler.decide(ontology_playlist()) == Decision.NOOP

    def test_unknown_playlist_is_create(self, reconciler):
        assert reconciler.decide(ontology_playlist(playlist_id="P9")) == Decision.CREATE

    def test_no_baseline_is_skip(self, fake_spotify, fake_ontology):
        reconciler = PlaylistReconciler(
            lambda: None, SpotifyWriter(fake_spotify), fake_ontology, OntologyWriter(fake_ontology)
        )
        assert reconciler.decide(ontology_playlist(playlist_id="P9")) == Decision.SKIP


class TestOntologyToSpotify:
    async def test_noop_makes_no_calls(self, reconciler, fake_spotify):
        assert await reconciler.reconcile_ontology_playlist(ontology_playlist()) == Decision.NOOP
        assert fake_spotify.calls == []

    async def test_update_modifies_details(self, reconciler, fake_spotify):
        playlist = ontology_playlist(name="Renamed", description="new")
        assert await reconciler.reconcile_ontology_playlist(playlist) == Decision.UPDATE
        assert fake_spotify.calls == [("modify", "P1", "Renamed", "new")]

    async def test_create_under_owner(self, reconciler, fake_spotify):
        playlist = ontology_playlist(playlist_id="P9", name="Fresh", owner="u3")
        assert await reconciler.reconcile_ontology_playlist(playlist) == Decision.CREATE
        assert fake_spotify.calls == [("create", "u3", "Fresh", "d")]

    async def test_redelivered_create_is_not_deduplicated(self, reconciler, fake_spotify):
        playlist = ontology_playlist(playlist_id="P9", name="Fresh")
        await reconciler.reconcile_ontology_playlist(playlist)
        await reconciler.reconcile_ontology_playlist(playlist)
        assert [call[0] for call in fake_spotify.calls] == ["create", "create"]

    async def test_skip_makes_no_calls(self, fake_spotify, fake_ontology):
        reconciler = PlaylistReconciler(
            lambda: None, SpotifyWriter(fake_spotify), fake_ontology, OntologyWriter(fake_ontology)
        )
        assert await reconciler.reconcile_ontology_playlist(ontology_playlist()) == Decision.SKIP
        assert fake_spotify.calls == []


class TestSpotifyToOntology:
    async def test_created_on_spotify_creates_object(self, reconciler, fake_ontology):
        result = await reconciler.on_playlist_created(PlaylistCreated(snapshot(playlist_id="P2")))

        assert result == Decision.CREATE
        assert fake_ontology.actions == [("create-new-spotify-playlist", {
            "playlist_id": "P2",
            "name": "Mix",
            "description": "d",
            "owner": "u1",
            "tracks_count": 5,
        })]

    async def test_existing_object_is_modified(self, reconciler, fake_ontology):
        fake_ontology.objects[("SpotifyPlaylist", "P1")] = {"playlistId": "P1", "name": "Old"}

        result = await reconciler.on_playlist_modified(PlaylistModified(snapshot(count=6)))

        assert result == Decision.UPDATE
        assert fake_ontology.actions == [("modify-spotify-playlist", {
            "spotify_playlist": "P1",
            "name": "Mix",
            "description": "d",
            "owner": "u1",
            "tracks_count": "6",
        })]

    async def test_modified_but_missing_is_created(self, reconciler, fake_ontology):
        result = await reconciler.on_playlist_modified(PlaylistModified(snapshot()))
        assert result == Decision.CREATE
        assert fake_ontology.actions[0][0] == "create-new-spotify-playlist"

    async def test_deleted_applies_delete_action(self, reconciler, fake_ontology):
        await reconciler.on_playlist_deleted(PlaylistDeleted(snapshot()))
        assert fake_ontology.actions == [("delete-spotify-playlist", {"spotify_playlist": "P1"})]

    async def test_action_failure_is_logged_not_raised(self, reconciler, fake_ontology, caplog):
        fake_ontology.fail_actions = True
        await reconciler.on_playlist_deleted(PlaylistDeleted(snapshot()))
        assert "Failed to apply delete-spotify-playlist" in caplog.text

    async def test_bus_routes_playlist_events(self, reconciler, fake_ontology):
        bus = EventBus()
        reconciler.register(bus)

        bus.publish(PlaylistCreated(snapshot(playlist_id="P2")))
        bus.publish(PlaylistDeleted(snapshot(playlist_id="P3")))
        await bus.drain()

        assert sorted(action for action, _ in fake_ontology.actions) == [
            "create-new-spotify-playlist",
            "delete-spotify-playlist",
        ]
