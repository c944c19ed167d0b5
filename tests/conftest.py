"""
Shared pytest fixtures for Artifact Harvester tests.

Provides throwaway git repositories built with the real git binary, plus a
store and configuration rooted in the test's tmp_path.
"""

import os
import subprocess
from pathlib import Path
from typing import Dict, Optional, Union

import pytest

from artifact_harvester.config import HarvestConfig, Source
from artifact_harvester.storage.artifact_store import ArtifactStore


class GitRepo:
    """Small driver for building fixture histories commit by commit."""

    def __init__(self, path: Path, branch: str = "main"):
        self.path = path
        self.path.mkdir(parents=True, exist_ok=True)
        self._tick = 0
        self.git("init", "--quiet")
        self.git("symbolic-ref", "HEAD", f"refs/heads/{branch}")
        self.git("config", "user.name", "Test")
        self.git("config", "user.email", "test@test.com")
        self.git("config", "commit.gpgsign", "false")

    def _env(self) -> Dict[str, str]:
        # Strictly increasing dates keep "newest"/"oldest" ordering stable
        self._tick += 1
        date = f"2024-01-01T00:{self._tick // 60:02d}:{self._tick % 60:02d}+00:00"
        env = os.environ.copy()
        env["GIT_AUTHOR_DATE"] = date
        env["GIT_COMMITTER_DATE"] = date
        return env

    def git(self, *args: str, check: bool = True) -> str:
        result = subprocess.run(
            ["git", *args],
            cwd=self.path,
            capture_output=True,
            text=True,
            check=check,
            env=self._env(),
        )
        return result.stdout.strip()

    def write(self, name: str, content: Union[str, bytes]) -> None:
        target = self.path / name
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding="utf-8")
        self.git("add", name)

    def remove(self, name: str) -> None:
        self.git("rm", "--quiet", name)

    def move(self, old: str, new: str) -> None:
        self.git("mv", old, new)

    def commit(self, message: str, author: Optional[str] = None) -> str:
        args = ["commit", "--quiet", "-m", message]
        if author:
            args.extend(["--author", author])
        self.git(*args)
        return self.head()

    def head(self) -> str:
        return self.git("rev-parse", "HEAD")

    def checkout(self, branch: str, create: bool = False) -> None:
        if create:
            self.git("checkout", "--quiet", "-b", branch)
        else:
            self.git("checkout", "--quiet", branch)

    def merge(self, branch: str, message: Optional[str] = None) -> str:
        self.git("merge", "--no-ff", "--quiet", "-m", message or f"Merge {branch}", branch)
        return self.head()

    def merge_with_conflict(self, branch: str, resolutions: Dict[str, str]) -> str:
        """Merge ``branch`` expecting conflicts and resolve them with ``resolutions``."""
        self.git("merge", "--no-ff", "--quiet", branch, check=False)
        for name, content in resolutions.items():
            self.write(name, content)
        self.git("commit", "--quiet", "--no-edit")
        return self.head()

    def blob_id(self, name: str, rev: str = "HEAD") -> str:
        return self.git("rev-parse", f"{rev}:{name}")


@pytest.fixture
def git_repo(tmp_path):
    """Factory for fixture repositories under tmp_path."""

    def _create(name: str = "origin", branch: str = "main") -> GitRepo:
        return GitRepo(tmp_path / name, branch=branch)

    return _create


@pytest.fixture
def harvest_config(tmp_path) -> HarvestConfig:
    return HarvestConfig(
        store_path=tmp_path / "store" / "artifacts.db",
        workdir_root=tmp_path / "work",
        batch_size=3,
    )


@pytest.fixture
def store(harvest_config) -> ArtifactStore:
    return ArtifactStore(harvest_config.store_path)


@pytest.fixture
def make_source():
    def _make(repo: Union[GitRepo, str], source_id: str = "src-1", **options) -> Source:
        repo_url = str(repo.path) if isinstance(repo, GitRepo) else repo
        return Source(id=source_id, name="fixture", options={"repo_url": repo_url, **options})

    return _make
