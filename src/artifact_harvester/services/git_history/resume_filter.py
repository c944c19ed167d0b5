"""Drops commits a previous run already harvested."""

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Set

from .models import ArtifactKind

logger = logging.getLogger(__name__)

ExistingIdsLookup = Callable[[List[str], str], Set[str]]


@dataclass
class ResumeResult:
    pending: List[str] = field(default_factory=list)
    already_harvested: List[str] = field(default_factory=list)


class IncrementalResumeFilter:
    """Filters a commit order down to the commits without a stored record.

    ``lookup(external_ids, kind)`` returns the subset of ``external_ids``
    stored for the source with the given artifact kind.
    """

    def __init__(self, lookup: ExistingIdsLookup, external_id: Callable[[str], str]):
        self.lookup = lookup
        self.external_id = external_id

    def filter(self, order: Iterable[str]) -> ResumeResult:
        order = list(order)
        ids = {commit_hash: self.external_id(commit_hash) for commit_hash in order}
        existing = self.lookup(list(ids.values()), ArtifactKind.COMMIT.value)

        result = ResumeResult()
        for commit_hash in order:
            if ids[commit_hash] in existing:
                result.already_harvested.append(commit_hash)
            else:
                result.pending.append(commit_hash)

        if result.already_harvested:
            logger.info(
                f"Resuming: {len(result.already_harvested)} commit(s) already harvested, "
                f"{len(result.pending)} pending"
            )
        return result
