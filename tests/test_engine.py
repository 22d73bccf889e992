"""Unit tests for the pipeline engine: trigger gate, run, supersede."""

from __future__ import annotations

import threading
import time

import pytest

from fakes import FakeCheckout, FakeInstaller
from flowci.dsl import job, on_push, pipeline, sh
from flowci.engine import PipelineEngine, scheduler_factory
from flowci.model import Event, EventKind, JobStatus


@pytest.fixture
def make_engine(tmp_path, cache_manager):
    def _make(definition, **overrides) -> PipelineEngine:
        kwargs = dict(
            workspace=tmp_path,
            cache=cache_manager,
            checkout=FakeCheckout(),
            installer=FakeInstaller(),
        )
        kwargs.update(overrides)
        return PipelineEngine(definition, scheduler_factory(**kwargs))

    return _make


def ci(*jobs):
    return pipeline(*jobs, name="CI", triggers=[on_push("master")])


class TestPipelineEngine:
    def test_unmatched_event_runs_nothing(self, make_engine, tmp_path):
        engine = make_engine(ci(job("a", sh("x", "touch ran"))))
        assert engine.handle(Event(kind=EventKind.PUSH, branch="dev")) is None
        assert not (tmp_path / "ran").exists()

    def test_matched_event_runs_pipeline(self, make_engine):
        engine = make_engine(ci(job("rustfmt", sh("x", "exit 1")), job("test", sh("x", "true"))))
        report = engine.handle(Event(kind=EventKind.PUSH, branch="master", ref="abc"))
        assert report.status is JobStatus.FAILED
        assert report.exit_code == 1
        assert {j.name: j.status for j in report.jobs} == {
            "rustfmt": JobStatus.FAILED,
            "test": JobStatus.SUCCEEDED,
        }

    def test_event_reaches_commands(self, make_engine, tmp_path):
        engine = make_engine(ci(job("a", sh("x", 'echo "$FLOWCI_EVENT $FLOWCI_SHA"'))))
        report = engine.handle(Event(kind=EventKind.PUSH, branch="master", ref="abc"))
        assert "push abc" in report.job("a").steps[0].output

    def test_pipeline_env_is_applied(self, make_engine):
        definition = pipeline(
            job("a", sh("x", 'test "$MODE" = release')),
            triggers=[on_push()],
            env={"MODE": "release"},
        )
        report = make_engine(definition).handle(Event(kind=EventKind.PUSH, branch="any"))
        assert report.status is JobStatus.SUCCEEDED

    def test_isolated_workspaces(self, make_engine, tmp_path):
        engine = make_engine(ci(job("a", sh("x", "touch marker"))), isolate=True)
        engine.handle(Event(kind=EventKind.PUSH, branch="master"))
        assert (tmp_path / "master" / "a" / "marker").exists()

    def test_new_event_supersedes_running_branch(self, make_engine):
        """A second event for the same branch aborts the run still in progress."""
        engine = make_engine(ci(job("build", sh("x", 'if [ "$FLOWCI_SHA" = one ]; then sleep 30; fi'))))
        results = {}

        def first():
            results["first"] = engine.handle(Event(kind=EventKind.PUSH, branch="master", ref="one"))

        t = threading.Thread(target=first)
        t.start()
        time.sleep(0.5)
        second = engine.handle(Event(kind=EventKind.PUSH, branch="master", ref="two"))
        t.join(timeout=15)

        assert not t.is_alive()
        assert results["first"].status is JobStatus.CANCELLED
        assert second.status is JobStatus.SUCCEEDED

    def test_abort_counts_active_runs(self, make_engine):
        engine = make_engine(ci(job("slow", sh("x", "sleep 30"))))
        t = threading.Thread(target=engine.handle, args=(Event(kind=EventKind.PUSH, branch="master"),))
        t.start()
        time.sleep(0.5)
        assert engine.abort(branch="dev") == 0
        assert engine.abort() == 1
        t.join(timeout=15)
        assert not t.is_alive()
