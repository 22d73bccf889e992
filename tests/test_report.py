"""Unit tests for result aggregation and exit codes."""

from __future__ import annotations

import pytest

from flowci.errors import DefinitionError
from flowci.model import ActionKind, JobRun, JobStatus, StepResult, StepStatus
from flowci.report import aggregate, definition_error_report, exit_code_for, summarize


def finished(name: str, status: JobStatus, reason: str = "") -> JobRun:
    run = JobRun(name=name)
    run.start()
    run.finish(status, reason)
    return run


class TestAggregate:
    """failed > cancelled > succeeded."""

    def test_all_succeeded(self):
        report = aggregate([finished("a", JobStatus.SUCCEEDED), finished("b", JobStatus.SUCCEEDED)])
        assert report.status is JobStatus.SUCCEEDED
        assert report.exit_code == 0

    def test_any_failure_fails(self):
        report = aggregate(
            [
                finished("a", JobStatus.SUCCEEDED),
                finished("b", JobStatus.CANCELLED),
                finished("c", JobStatus.FAILED),
            ]
        )
        assert report.status is JobStatus.FAILED
        assert report.exit_code == 1

    def test_cancelled_without_failure(self):
        report = aggregate([finished("a", JobStatus.SUCCEEDED), finished("b", JobStatus.CANCELLED)])
        assert report.status is JobStatus.CANCELLED
        assert report.exit_code == 2

    def test_empty_is_success(self):
        report = aggregate([])
        assert report.status is JobStatus.SUCCEEDED
        assert report.jobs == ()

    def test_preserves_order_and_leaves_runs_alone(self):
        runs = [finished("z", JobStatus.SUCCEEDED), finished("a", JobStatus.FAILED)]
        runs[1].steps.append(StepResult(name="s", kind=ActionKind.RUN_COMMAND, status=StepStatus.FAILED))
        report = aggregate(runs)
        assert [j.name for j in report.jobs] == ["z", "a"]
        assert report.job("a").failed_step.name == "s"
        assert runs[1].status is JobStatus.FAILED
        assert len(runs[1].steps) == 1

    def test_non_terminal_run_is_rejected(self):
        with pytest.raises(ValueError):
            aggregate([JobRun(name="still-pending")])

    def test_to_dict(self):
        data = aggregate([finished("a", JobStatus.FAILED, "step 'x' failed")]).to_dict()
        assert data["status"] == "failed"
        assert data["exit_code"] == 1
        assert data["jobs"][0]["reason"] == "step 'x' failed"
        assert "error" not in data


class TestHelpers:
    def test_exit_codes(self):
        assert exit_code_for(JobStatus.SUCCEEDED) == 0
        assert exit_code_for(JobStatus.FAILED) == 1
        assert exit_code_for(JobStatus.CANCELLED) == 2
        with pytest.raises(ValueError):
            exit_code_for(JobStatus.RUNNING)

    def test_summarize_requires_terminal(self):
        run = JobRun(name="a")
        run.start()
        with pytest.raises(ValueError):
            summarize(run)

    def test_job_run_cannot_finish_twice(self):
        run = finished("a", JobStatus.SUCCEEDED)
        with pytest.raises(RuntimeError):
            run.finish(JobStatus.FAILED)

    def test_definition_error_report(self):
        report = definition_error_report(DefinitionError("cycle detected", location="jobs"))
        assert report.status is JobStatus.FAILED
        assert report.exit_code == 3
        assert report.to_dict()["error"] == "jobs: cycle detected"
