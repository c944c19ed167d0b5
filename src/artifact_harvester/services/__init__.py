"""Harvest services: git history extraction and run orchestration."""
