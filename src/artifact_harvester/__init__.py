"""
Artifact Harvester - versioned artifact extraction from source repositories.

Turns a repository's full commit history into a resumable stream of
normalized commit and file artifacts, stored with content-addressed
versioning so repeated harvests never duplicate history.
"""

__version__ = "0.4.0"
