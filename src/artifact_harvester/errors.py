"""Error taxonomy for harvest runs.

Run-fatal errors (CloneFailure, an unresolvable explicit branch list, the
run deadline, persistence errors) propagate to the extraction service,
which marks the run FAILED. Per-commit errors (BlobReadFailure, or a
GitCallTimeout while diffing or reading blobs) drop one commit.
DiffComputationFailure and per-branch BranchResolutionFailure are absorbed
with a logged warning.
"""

from typing import List, Optional


class HarvestError(Exception):
    """Base class for all harvest errors."""

    pass


class SourceConfigurationError(HarvestError):
    """Raised when source options cannot be normalized."""

    pass


class GitCommandError(HarvestError):
    """Raised when a git plumbing command exits non-zero."""

    def __init__(self, command: List[str], returncode: int, stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(
            f"{' '.join(self.command)} failed (rc={returncode}): {self.stderr}"
        )


class CloneFailure(HarvestError):
    """Raised when the working copy could not be produced."""

    pass


class BranchResolutionFailure(HarvestError):
    """Raised when none of the explicitly requested branches resolve."""

    def __init__(self, message: str, branches: Optional[List[str]] = None):
        super().__init__(message)
        self.branches = branches or []


class DiffComputationFailure(HarvestError):
    """Raised when a diff strategy fails for a single commit."""

    pass


class BlobReadFailure(HarvestError):
    """Raised when the content objects of a commit cannot be read."""

    def __init__(self, message: str, commit_hash: Optional[str] = None):
        super().__init__(message)
        self.commit_hash = commit_hash


class PersistenceFailure(HarvestError):
    """Raised when the artifact store rejects a write."""

    pass


class HarvestTimeout(HarvestError):
    """Raised when the run deadline expires."""

    pass


class HarvestCancelled(HarvestError):
    """Raised when the run is cancelled from outside."""

    pass


class GitCallTimeout(HarvestTimeout):
    """Raised when a single git call exceeds its own time cap.

    The run deadline is still intact when this escapes GitRunner, so
    per-commit steps may drop the commit instead of failing the run.
    """

    pass
