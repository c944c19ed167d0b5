"""Concurrent harvesting of several sources."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from ..config import Source
from ..storage.models import ExtractionRun
from ..utils.git_runner import Deadline
from .extraction_service import ExtractionService

logger = logging.getLogger(__name__)


@dataclass
class HarvestOutcome:
    """Result of harvesting one source: its run, or the error that ended it."""

    source_id: str
    run: Optional[ExtractionRun] = None
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class HarvestPool:
    """Runs one extraction per source on a thread pool.

    Every source gets its own working copy and snapshot state, so workers
    share nothing but the store. A failing source does not affect the others.
    """

    def __init__(
        self,
        service: ExtractionService,
        max_workers: int = 2,
        run_timeout_seconds: Optional[float] = None,
    ):
        self.service = service
        self.max_workers = max_workers
        self.run_timeout_seconds = run_timeout_seconds
        self._cancel_event = threading.Event()

    def cancel(self) -> None:
        """Ask every running harvest to stop at its next git call or commit."""
        self._cancel_event.set()

    def harvest_all(self, sources: Iterable[Source]) -> List[HarvestOutcome]:
        """Harvest ``sources`` concurrently; each source id at most once."""
        unique: Dict[str, Source] = {}
        for source in sources:
            if source.id in unique:
                logger.info(f"Source {source.id} submitted twice; harvesting once")
                continue
            unique[source.id] = source

        outcomes: List[HarvestOutcome] = []
        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="harvest"
        ) as executor:
            futures: Dict[str, Future] = {
                source_id: executor.submit(self._harvest_one, source)
                for source_id, source in unique.items()
            }
            for future in futures.values():
                outcomes.append(future.result())

        failed = sum(1 for outcome in outcomes if not outcome.succeeded)
        logger.info(f"Harvested {len(outcomes)} source(s), {failed} failed")
        return outcomes

    def _harvest_one(self, source: Source) -> HarvestOutcome:
        deadline = Deadline(self.run_timeout_seconds, cancel_event=self._cancel_event)
        try:
            run = self.service.run_extraction(source, deadline=deadline)
        except Exception as e:
            logger.warning(f"Harvest of source {source.id} failed: {e}")
            return HarvestOutcome(source_id=source.id, error=e)
        return HarvestOutcome(source_id=source.id, run=run)
