# report.py
from __future__ import annotations

from typing import Iterable

from .model import (
    EXIT_CANCELLED,
    EXIT_DEFINITION_ERROR,
    EXIT_FAILED,
    EXIT_SUCCEEDED,
    JobRun,
    JobStatus,
    JobSummary,
    PipelineReport,
)

# Process exit codes:
#   0 succeeded, 1 failed, 2 cancelled/aborted, 3 definition error
_EXIT_CODES = {
    JobStatus.SUCCEEDED: EXIT_SUCCEEDED,
    JobStatus.FAILED: EXIT_FAILED,
    JobStatus.CANCELLED: EXIT_CANCELLED,
}


def exit_code_for(status: JobStatus) -> int:
    try:
        return _EXIT_CODES[status]
    except KeyError:
        raise ValueError(f"no exit code for non-terminal status {status.value!r}") from None


def summarize(run: JobRun) -> JobSummary:
    if not run.status.terminal:
        raise ValueError(f"job '{run.name}' is still {run.status.value}")
    return JobSummary(
        name=run.name,
        status=run.status,
        steps=tuple(run.steps),
        duration=run.duration,
        reason=run.reason,
    )


def aggregate(job_runs: Iterable[JobRun]) -> PipelineReport:
    """
    Merge terminal JobRuns into a PipelineReport.

    failed if any job failed; else cancelled if any job was cancelled;
    else succeeded (an empty job set succeeds). Inputs are only read.
    """
    summaries = tuple(summarize(r) for r in job_runs)
    statuses = {s.status for s in summaries}

    if JobStatus.FAILED in statuses:
        status = JobStatus.FAILED
    elif JobStatus.CANCELLED in statuses:
        status = JobStatus.CANCELLED
    else:
        status = JobStatus.SUCCEEDED

    return PipelineReport(status=status, jobs=summaries, exit_code=exit_code_for(status))


def definition_error_report(error: Exception) -> PipelineReport:
    """A pipeline that never started because its definition is malformed."""
    return PipelineReport(
        status=JobStatus.FAILED,
        jobs=(),
        exit_code=EXIT_DEFINITION_ERROR,
        error=str(error),
    )
