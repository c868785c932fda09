"""Bidirectional playlist and now-playing sync between Spotify and a Foundry ontology."""

__version__ = "1.0.0"
