"""
Ephemeral working copies of remote repositories.

RepositoryStager.stage() is a context manager: it clones the source into a
private temporary directory and removes that directory (and any SSH key
material) when the block exits, whether it exits normally, by exception,
timeout or cancellation.
"""

import logging
import os
import shlex
import shutil
import stat
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, Optional
from urllib.parse import quote, urlsplit, urlunsplit

from ...config import GitSourceOptions
from ...errors import CloneFailure, GitCommandError
from ...utils.git_runner import Deadline, run_git_command

logger = logging.getLogger(__name__)

TOKEN_USERNAME = "x-access-token"


@dataclass
class StagedRepository:
    """A cloned working copy plus the environment its git calls need."""

    path: Path
    env: Dict[str, str] = field(default_factory=dict)


def embed_token(repo_url: str, token: str) -> str:
    """Return ``repo_url`` with ``token`` embedded as HTTPS credentials.

    An existing username is kept and the token becomes its password;
    otherwise a placeholder username is used.
    """
    parts = urlsplit(repo_url)
    if parts.scheme not in ("http", "https"):
        raise CloneFailure(
            f"Token authentication requires an http(s) URL, got {parts.scheme or 'none'}"
        )
    username = parts.username or TOKEN_USERNAME
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"{quote(username, safe='')}:{quote(token, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def redact(text: str, secret: Optional[str]) -> str:
    """Replace every occurrence of ``secret`` (raw and URL-quoted) in ``text``."""
    if not secret:
        return text
    for variant in {secret, quote(secret, safe="")}:
        text = text.replace(variant, "***")
    return text


def write_private_key(key_dir: Path, private_key: str) -> Path:
    """Write an SSH private key readable by its owner only."""
    key_path = key_dir / "id_harvester"
    if not private_key.endswith("\n"):
        private_key += "\n"
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(private_key)
    os.chmod(key_path, stat.S_IRUSR)
    return key_path


def build_ssh_command(key_path: Path) -> str:
    """ssh invocation that uses only ``key_path``: no agent, no host prompts."""
    return " ".join(
        [
            "ssh",
            "-i",
            shlex.quote(str(key_path)),
            "-o",
            "IdentitiesOnly=yes",
            "-o",
            "IdentityAgent=none",
            "-o",
            "BatchMode=yes",
            "-o",
            "StrictHostKeyChecking=no",
            "-o",
            "UserKnownHostsFile=/dev/null",
        ]
    )


class RepositoryStager:
    """Materializes a private, ephemeral clone of a source repository."""

    def __init__(
        self,
        options: GitSourceOptions,
        workdir_root: Optional[Path] = None,
        clone_timeout: Optional[float] = None,
        deadline: Optional[Deadline] = None,
    ):
        self.options = options
        self.workdir_root = workdir_root
        self.clone_timeout = clone_timeout
        self.deadline = deadline or Deadline()

    @contextmanager
    def stage(self) -> Iterator[StagedRepository]:
        """Clone the repository and yield it; always remove it afterwards.

        Raises:
            CloneFailure: If the clone cannot be produced
            HarvestTimeout: If the clone exceeds its timeout or the run deadline
        """
        if self.workdir_root is not None:
            Path(self.workdir_root).mkdir(parents=True, exist_ok=True)
        workdir = Path(tempfile.mkdtemp(prefix="harvester-git-", dir=self.workdir_root))
        key_dir: Optional[Path] = None
        try:
            env: Dict[str, str] = {}
            clone_url = self.options.repo_url

            if self.options.auth_token:
                clone_url = embed_token(clone_url, self.options.auth_token)
            elif self.options.ssh_private_key:
                key_dir = Path(tempfile.mkdtemp(prefix="harvester-ssh-"))
                key_path = write_private_key(key_dir, self.options.ssh_private_key)
                env["GIT_SSH_COMMAND"] = build_ssh_command(key_path)

            repo_path = workdir / "repo"
            self._clone(clone_url, repo_path, workdir, env)
            yield StagedRepository(path=repo_path, env=env)
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
            if key_dir is not None:
                shutil.rmtree(key_dir, ignore_errors=True)
            logger.debug(f"Removed working copy {workdir}")

    def _clone(
        self, clone_url: str, repo_path: Path, workdir: Path, env: Dict[str, str]
    ) -> None:
        self.deadline.check()
        display_url = redact(self.options.repo_url, self.options.auth_token)
        logger.info(f"Cloning {display_url}")
        try:
            run_git_command(
                [
                    "git",
                    "clone",
                    "--no-checkout",
                    "--quiet",
                    clone_url,
                    str(repo_path),
                ],
                cwd=workdir,
                check=True,
                timeout=self.deadline.timeout_for(self.clone_timeout),
                env=env,
            )
        except GitCommandError as e:
            message = redact(e.stderr or str(e), self.options.auth_token)
            # the chained error carries the tokenized clone URL
            raise CloneFailure(f"Failed to clone {display_url}: {message}") from None
        except OSError as e:
            raise CloneFailure(f"Failed to clone {display_url}: {e}") from e
