"""Tests for HarvestPool: concurrency, isolation of failures and cancellation."""

import threading
from unittest.mock import Mock

import pytest

from artifact_harvester.config import Source
from artifact_harvester.errors import CloneFailure, HarvestCancelled
from artifact_harvester.services.extraction_service import ExtractionService
from artifact_harvester.services.harvest_pool import HarvestPool
from artifact_harvester.storage.models import ExtractionRun, RunStatus
from artifact_harvester.utils.git_runner import Deadline


def make_run(source_id: str) -> ExtractionRun:
    return ExtractionRun(id=f"run-{source_id}", source_id=source_id, status=RunStatus.SUCCESS)


class TestHarvestPool:
    def test_every_source_harvested_once(self):
        service = Mock(spec=ExtractionService)
        service.run_extraction.side_effect = lambda source, deadline: make_run(source.id)
        pool = HarvestPool(service, max_workers=3)

        outcomes = pool.harvest_all(
            [Source(id="a"), Source(id="b"), Source(id="a"), Source(id="c")]
        )

        assert [o.source_id for o in outcomes] == ["a", "b", "c"]
        assert all(o.succeeded for o in outcomes)
        assert service.run_extraction.call_count == 3

    def test_failure_does_not_affect_other_sources(self):
        service = Mock(spec=ExtractionService)

        def run(source, deadline):
            if source.id == "broken":
                raise CloneFailure("Failed to clone broken")
            return make_run(source.id)

        service.run_extraction.side_effect = run
        outcomes = HarvestPool(service).harvest_all(
            [Source(id="ok-1"), Source(id="broken"), Source(id="ok-2")]
        )

        by_id = {o.source_id: o for o in outcomes}
        assert by_id["ok-1"].run.status == RunStatus.SUCCESS
        assert by_id["ok-2"].succeeded
        assert not by_id["broken"].succeeded
        assert isinstance(by_id["broken"].error, CloneFailure)
        assert by_id["broken"].run is None

    def test_each_run_gets_its_own_deadline(self):
        service = Mock(spec=ExtractionService)
        deadlines = []

        def run(source, deadline):
            deadlines.append(deadline)
            return make_run(source.id)

        service.run_extraction.side_effect = run
        HarvestPool(service, run_timeout_seconds=60).harvest_all(
            [Source(id="a"), Source(id="b")]
        )

        assert len(deadlines) == 2
        assert deadlines[0] is not deadlines[1]
        assert all(isinstance(d, Deadline) and d.seconds == 60 for d in deadlines)

    def test_cancel_reaches_running_harvests(self):
        service = Mock(spec=ExtractionService)
        started = threading.Event()

        def run(source, deadline):
            started.set()
            for _ in range(500):
                deadline.check()
                threading.Event().wait(0.01)
            return make_run(source.id)

        service.run_extraction.side_effect = run
        pool = HarvestPool(service, max_workers=1)

        result = {}
        worker = threading.Thread(
            target=lambda: result.setdefault("outcomes", pool.harvest_all([Source(id="slow")]))
        )
        worker.start()
        assert started.wait(5)
        pool.cancel()
        worker.join(10)

        [outcome] = result["outcomes"]
        assert isinstance(outcome.error, HarvestCancelled)

    @pytest.mark.parametrize("max_workers", [1, 4])
    def test_real_service_harvests_repositories(
        self, max_workers, git_repo, store, harvest_config, make_source
    ):
        sources = []
        for name in ("one", "two"):
            repo = git_repo(name)
            repo.write(f"{name}.txt", f"{name}\n")
            repo.commit(f"Add {name}")
            sources.append(make_source(repo, source_id=name))

        outcomes = HarvestPool(
            ExtractionService(store, harvest_config), max_workers=max_workers
        ).harvest_all(sources)

        assert all(o.succeeded for o in outcomes)
        assert store.list_commits("one")["total"] == 1
        assert store.list_commits("two")["total"] == 1
