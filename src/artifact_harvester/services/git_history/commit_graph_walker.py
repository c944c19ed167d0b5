"""
Commit enumeration across branches.

Each branch tip is resolved and its ancestry listed oldest-first with
``git rev-list --reverse --topo-order``. The per-branch lists are merged by
first occurrence, which keeps every commit after all of its parents: a
commit first seen on a later branch either has its ancestors on an earlier
branch (already emitted) or earlier in its own branch's list.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from ...errors import BranchResolutionFailure, GitCommandError
from ...utils.git_runner import GitRunner
from .branch_resolver import BranchResolver
from .models import CommitInfo, Signature

logger = logging.getLogger(__name__)

# %x1f (unit separator) between fields, NUL between records (-z)
COMMIT_FORMAT = "%H%x1f%T%x1f%P%x1f%an%x1f%ae%x1f%aI%x1f%cn%x1f%ce%x1f%cI%x1f%B"
_FIELD_SEP = "\x1f"
_FIELD_COUNT = 10
_READ_CHUNK = 500


@dataclass
class CommitGraph:
    """Oldest-first commit order plus branch membership."""

    order: List[str] = field(default_factory=list)
    membership: Dict[str, List[str]] = field(default_factory=dict)
    resolved_branches: List[str] = field(default_factory=list)
    failed_branches: Dict[str, str] = field(default_factory=dict)

    def branches_of(self, commit_hash: str) -> List[str]:
        return self.membership.get(commit_hash, [])


class CommitGraphWalker:
    """Walks the commit graph of a working copy."""

    def __init__(self, runner: GitRunner):
        self.runner = runner

    def walk(self, branches: List[str], explicit: bool = False) -> CommitGraph:
        """Build the de-duplicated oldest-first commit list for ``branches``.

        Args:
            branches: Branch names from BranchResolver
            explicit: True when ``branches`` is a user allow-list

        Raises:
            BranchResolutionFailure: If ``explicit`` and no branch resolved
        """
        graph = CommitGraph()
        seen = set()

        for branch in branches:
            tip = self.resolve_tip(branch)
            if tip is None:
                graph.failed_branches[branch] = "ref not found"
                logger.warning(f"Skipping branch {branch}: ref not found")
                continue
            try:
                hashes = self._rev_list(tip)
            except GitCommandError as e:
                graph.failed_branches[branch] = str(e)
                logger.warning(f"Skipping branch {branch}: {e}")
                continue

            graph.resolved_branches.append(branch)
            for commit_hash in hashes:
                graph.membership.setdefault(commit_hash, []).append(branch)
                if commit_hash not in seen:
                    seen.add(commit_hash)
                    graph.order.append(commit_hash)

        if explicit and branches and not graph.resolved_branches:
            raise BranchResolutionFailure(
                f"None of the requested branches could be resolved: {', '.join(branches)}",
                branches=branches,
            )

        logger.info(
            f"Walked {len(graph.resolved_branches)} branch(es), "
            f"{len(graph.order)} unique commit(s)"
        )
        return graph

    def resolve_tip(self, branch: str) -> Optional[str]:
        """Commit hash a branch name points at, or None."""
        for ref in BranchResolver.ref_candidates(branch):
            try:
                output = self.runner.run_text(
                    ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"]
                )
            except GitCommandError:
                continue
            tip = output.strip()
            if tip:
                return tip
        return None

    def _rev_list(self, tip: str) -> List[str]:
        output = self.runner.run_text(["rev-list", "--reverse", "--topo-order", tip])
        return [line.strip() for line in output.splitlines() if line.strip()]

    def read_commits(
        self,
        hashes: Iterable[str],
        membership: Optional[Dict[str, List[str]]] = None,
    ) -> Dict[str, CommitInfo]:
        """Read metadata of ``hashes`` in batches via ``git log --stdin``."""
        wanted = list(dict.fromkeys(hashes))
        membership = membership or {}
        commits: Dict[str, CommitInfo] = {}

        for i in range(0, len(wanted), _READ_CHUNK):
            chunk = wanted[i : i + _READ_CHUNK]
            output = self.runner.run(
                ["log", "--no-walk=unsorted", "-z", f"--format={COMMIT_FORMAT}", "--stdin"],
                input=("\n".join(chunk) + "\n").encode("ascii"),
            )
            for commit in parse_commit_records(output, membership):
                commits[commit.hash] = commit

        missing = [h for h in wanted if h not in commits]
        if missing:
            logger.warning(f"Metadata missing for {len(missing)} commit(s)")
        return commits


def parse_commit_records(
    output: bytes, membership: Optional[Dict[str, List[str]]] = None
) -> List[CommitInfo]:
    """Parse NUL-terminated records produced with COMMIT_FORMAT."""
    membership = membership or {}
    commits = []
    for record in output.decode("utf-8", errors="replace").split("\x00"):
        record = record.lstrip("\n")
        if not record:
            continue
        fields = record.split(_FIELD_SEP, _FIELD_COUNT - 1)
        if len(fields) < _FIELD_COUNT:
            logger.warning(f"Ignoring malformed commit record: {record[:80]!r}")
            continue

        commit_hash = fields[0]
        commits.append(
            CommitInfo(
                hash=commit_hash,
                tree_hash=fields[1],
                parent_hashes=tuple(fields[2].split()),
                author=Signature(name=fields[3], email=fields[4], date=fields[5]),
                committer=Signature(name=fields[6], email=fields[7], date=fields[8]),
                message=fields[9].rstrip("\n"),
                branches=tuple(membership.get(commit_hash, ())),
            )
        )
    return commits
