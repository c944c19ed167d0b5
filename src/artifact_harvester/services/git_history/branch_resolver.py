"""Determine which branches a harvest traverses."""

import logging
from typing import List, Optional

from ...errors import GitCommandError
from ...utils.git_runner import GitRunner

logger = logging.getLogger(__name__)

REMOTE_PREFIX = "refs/remotes/origin/"
LOCAL_PREFIX = "refs/heads/"


class BranchResolver:
    """Resolves the ordered list of branch names to walk.

    Precedence: the explicit allow-list verbatim; otherwise every remote
    branch of the clone; otherwise every local branch; otherwise the
    configured default branch.
    """

    def __init__(self, runner: GitRunner, default_branch: str = "main"):
        self.runner = runner
        self.default_branch = default_branch

    def resolve(self, allow_list: Optional[List[str]] = None) -> List[str]:
        if allow_list:
            return list(dict.fromkeys(allow_list))

        branches = self._list_refs(REMOTE_PREFIX)
        if not branches:
            logger.debug("No remote branches found, trying local branches")
            branches = self._list_refs(LOCAL_PREFIX)
        if not branches:
            logger.info(
                f"No branches found, falling back to default branch {self.default_branch}"
            )
            branches = [self.default_branch]
        return branches

    def _list_refs(self, prefix: str) -> List[str]:
        try:
            output = self.runner.run_text(
                ["for-each-ref", "--format=%(refname)", prefix]
            )
        except GitCommandError as e:
            logger.warning(f"Listing {prefix} failed: {e}")
            return []

        names = []
        for line in output.splitlines():
            ref = line.strip()
            if not ref.startswith(prefix):
                continue
            name = ref[len(prefix) :]
            # origin/HEAD is a symbolic alias of the default branch
            if name and name != "HEAD":
                names.append(name)
        return names

    @staticmethod
    def ref_candidates(branch: str) -> List[str]:
        """Refs tried, in order, when resolving a branch name to a commit."""
        return [f"{REMOTE_PREFIX}{branch}", f"{LOCAL_PREFIX}{branch}", branch]
