"""Artifact persistence: checksums, entities and the SQLite store."""
