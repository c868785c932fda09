"""Test configuration and fixtures"""

import pytest

from spotify_ontology_sync.core.config import SyncConfig
from tests.fakes import FakeOntology, FakeSpotify


@pytest.fixture
def fake_spotify():
    return FakeSpotify()


@pytest.fixture
def fake_ontology():
    return FakeOntology()


@pytest.fixture
def config(tmp_path):
    return SyncConfig(
        spotify_client_id="client-id",
        spotify_client_secret="client-secret",
        spotify_access_token="access",
        spotify_refresh_token="refresh",
        foundry_url="https://example.palantirfoundry.com",
        foundry_token="foundry-token",
        ontology="ri.ontology.main.ontology.test",
        data_dir=tmp_path,
    )
