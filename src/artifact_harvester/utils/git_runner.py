"""
Narrow interface for invoking git plumbing commands.

Every git call in the harvester goes through GitRunner.run(), which returns
raw stdout bytes or raises a typed error. Parsing code therefore never
touches process-spawning details and can be tested against captured byte
fixtures with a fake runner.

The environment handling keeps git usable when the working copy is owned by
a different user (containers, CI workers) and disables interactive prompts
so a missing credential fails fast instead of blocking a worker.
"""

import logging
import os
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from ..errors import GitCallTimeout, GitCommandError, HarvestCancelled, HarvestTimeout

logger = logging.getLogger(__name__)


class Deadline:
    """Whole-run deadline plus a cooperative cancel flag.

    A Deadline without ``seconds`` never expires; it can still be
    cancelled through ``cancel()`` or the shared ``cancel_event``.
    """

    def __init__(
        self,
        seconds: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds if seconds else None
        self._cancel_event = cancel_event or threading.Event()

    def remaining(self) -> Optional[float]:
        """Seconds left before expiry, or None when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def cancel(self) -> None:
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def check(self) -> None:
        """Raise if the run was cancelled or the deadline has passed."""
        if self._cancel_event.is_set():
            raise HarvestCancelled("Harvest run was cancelled")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise HarvestTimeout(f"Harvest run exceeded its {self.seconds}s deadline")

    def timeout_for(self, cap: Optional[float]) -> Optional[float]:
        """Timeout for a single blocking call: the smaller of cap and remaining."""
        remaining = self.remaining()
        if remaining is None:
            return cap
        if cap is None:
            return remaining
        return min(cap, remaining)


def get_git_environment(
    project_dir: Path, extra: Optional[Mapping[str, str]] = None
) -> Dict[str, str]:
    """
    Get environment variables for git commands.

    Marks ``project_dir`` as a safe directory (dubious ownership) while
    preserving GIT_CONFIG_* entries already present in the calling
    environment, and disables terminal credential prompts.

    Args:
        project_dir: Path to the working copy
        extra: Additional variables, e.g. GIT_SSH_COMMAND

    Returns:
        Dictionary of environment variables for git commands
    """
    env = os.environ.copy()

    existing = 0
    count_value = os.environ.get("GIT_CONFIG_COUNT", "0")
    if count_value.isdigit():
        existing = int(count_value)

    # Append after any inherited entries so they keep their indexes
    env[f"GIT_CONFIG_KEY_{existing}"] = "safe.directory"
    env[f"GIT_CONFIG_VALUE_{existing}"] = str(project_dir.resolve())
    env["GIT_CONFIG_COUNT"] = str(existing + 1)

    env["GIT_TERMINAL_PROMPT"] = "0"

    if extra:
        env.update(extra)

    return env


def run_git_command(
    cmd: List[str],
    cwd: Path,
    check: bool = True,
    timeout: Optional[float] = None,
    env: Optional[Mapping[str, str]] = None,
    input: Optional[bytes] = None,
) -> subprocess.CompletedProcess:
    """
    Run a git command and capture raw stdout/stderr bytes.

    Args:
        cmd: Git command as a list (e.g., ["git", "rev-list", "main"])
        cwd: Working directory for the command
        check: Whether to raise GitCommandError on non-zero exit
        timeout: Optional timeout in seconds
        env: Extra environment variables merged over the git environment
        input: Bytes written to the command's stdin

    Returns:
        CompletedProcess instance with bytes stdout and stderr

    Raises:
        GitCommandError: If check=True and the command fails
        GitCallTimeout: If the timeout is exceeded (the child is killed)
    """
    if not cmd or cmd[0] != "git":
        raise ValueError("Command must start with 'git'")

    full_env = get_git_environment(cwd, extra=env)

    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            timeout=timeout,
            env=full_env,
            input=input,
        )
    except subprocess.TimeoutExpired as e:
        raise GitCallTimeout(
            f"{' '.join(cmd[:3])} timed out after {e.timeout:.0f}s"
        ) from e

    if check and result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace")
        raise GitCommandError(cmd, result.returncode, stderr)

    return result


class GitRunner:
    """Runs git plumbing commands against one working copy.

    A runner is owned by a single harvest run; git is not safe for
    concurrent invocation against the same clone, so calls are sequential.
    """

    def __init__(
        self,
        repo_path: Path,
        deadline: Optional[Deadline] = None,
        command_timeout: Optional[float] = None,
        env: Optional[Mapping[str, str]] = None,
    ):
        self.repo_path = Path(repo_path)
        self.deadline = deadline or Deadline()
        self.command_timeout = command_timeout
        self.env = dict(env or {})

    def run(
        self,
        args: List[str],
        timeout: Optional[float] = None,
        input: Optional[bytes] = None,
    ) -> bytes:
        """Run ``git <args>`` and return stdout bytes.

        Raises:
            GitCommandError: On non-zero exit
            GitCallTimeout: When only this call exceeded its own cap
            HarvestTimeout: When the run deadline expired
            HarvestCancelled: When the run was cancelled
        """
        self.deadline.check()
        effective = self.deadline.timeout_for(
            timeout if timeout is not None else self.command_timeout
        )
        try:
            result = run_git_command(
                ["git", *args],
                cwd=self.repo_path,
                check=True,
                timeout=effective,
                env=self.env,
                input=input,
            )
        except GitCallTimeout:
            # the call may have been cut short by the run deadline or a cancel
            self.deadline.check()
            raise
        return result.stdout

    def run_text(self, args: List[str], timeout: Optional[float] = None) -> str:
        """Run ``git <args>`` and decode stdout as UTF-8."""
        return self.run(args, timeout=timeout).decode("utf-8", errors="replace")
