"""Console output formatting utilities for flowci."""

from __future__ import annotations

import sys
import threading
from typing import Optional

from ..model import JobStatus, PipelineReport, StepResult, StepStatus


_STATUS_LABEL = {
    JobStatus.SUCCEEDED: "SUCCESS",
    JobStatus.FAILED: "FAILED",
    JobStatus.CANCELLED: "CANCELLED",
    JobStatus.PENDING: "PENDING",
    JobStatus.RUNNING: "RUNNING",
}


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, suppress progress lines (errors and warnings still print)
        """
        self.debug = debug
        self.quiet = quiet
        # jobs print from worker threads
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def _progress(self, *lines: str) -> None:
        if not self.quiet:
            self._out(*lines)

    def print_run_started(
        self,
        pipeline: str,
        event: str,
        branch: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._progress(
            "",
            "RUN STARTED",
            f"Pipeline: {pipeline}",
            f"Event: {event} ({branch})",
            f"Jobs: {job_count}",
            "",
        )

    def print_not_triggered(self, event: str, branch: str) -> None:
        self._progress(f"No trigger matched {event} on '{branch}', nothing to run.")

    def print_job_start(self, name: str) -> None:
        self._progress(f"[{name}] JOB STARTED")

    def print_step(self, job: str, name: str) -> None:
        self._progress(f"[{job}] ▶ {name}")

    def print_step_result(self, job: str, result: StepResult) -> None:
        if result.status is StepStatus.SUCCEEDED:
            self._progress(f"[{job}] ✓ {result.name} ({result.duration:.1f}s)")
            return
        lines = [f"[{job}] ✗ {result.name}: {result.status.value}"]
        if result.exit_code is not None:
            lines.append(f"[{job}]   exit code: {result.exit_code}")
        if self.debug and result.output:
            lines.extend(f"[{job}]   {line}" for line in result.output.splitlines()[-20:])
        self._progress(*lines)

    def print_job_finished(self, name: str, status: JobStatus, reason: str = "") -> None:
        suffix = f" ({reason})" if reason else ""
        self._progress(f"[{name}] JOB {_STATUS_LABEL[status]}{suffix}")

    def print_cache_hit(self, job: str, key: str) -> None:
        self._progress(f"[{job}] CACHE: hit ({_short(key)})")

    def print_cache_miss(self, job: str, key: str) -> None:
        self._progress(f"[{job}] CACHE: miss ({_short(key)})")

    def print_cache_saved(self, job: str, key: str) -> None:
        self._progress(f"[{job}] CACHE: saved ({_short(key)})")

    def print_results(self, report: PipelineReport) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for job in report.jobs:
            lines.append(f"  {job.name}: {_STATUS_LABEL[job.status]} ({job.duration:.1f}s)")
            failed = job.failed_step
            if failed is not None:
                lines.append(f"    failed step: {failed.name}")
                tail = failed.output.strip().splitlines()[-10:]
                lines.extend(f"      {line}" for line in tail)
            elif job.reason:
                lines.append(f"    {job.reason}")
        lines.append("-" * 40)
        lines.append(f"  PIPELINE: {_STATUS_LABEL[report.status]} (exit code {report.exit_code})")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


def _short(key: str) -> str:
    return key[:40] + "..." if len(key) > 40 else key


# Global console instance (initialized by the CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
