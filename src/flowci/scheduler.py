# scheduler.py
from __future__ import annotations

import os
import queue
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Deque, Dict, List, Optional, Set

from .dag import build_dag, topo_levels
from .executor import ExecutorFactory
from .model import JobDefinition, JobRun, JobStatus, PipelineDefinition, PipelineReport
from .report import aggregate
from .ui.console import get_console


def default_workers() -> int:
    # at least 2 so a pair of independent jobs always runs side by side
    return max(2, (os.cpu_count() or 2) - 1)


class JobScheduler:
    """
    Runs a pipeline's job graph.

    - Jobs with no pending dependencies run concurrently on a thread pool.
    - Workers never touch shared state: each one posts its finished JobRun
      on a result channel that only the scheduler loop reads.
    - fail_fast=False: a failed job never stops its siblings.
      fail_fast=True: the first failure cancels every job still pending/running.
      A job's own `fail_fast` (strategy.fail-fast) cancels its matrix group only.
    - A job whose dependency did not succeed is cancelled without running,
      unless it is marked run_always.

    One scheduler per pipeline run.
    """

    def __init__(
        self,
        executor_factory: ExecutorFactory,
        *,
        max_workers: Optional[int] = None,
        fail_fast: bool = False,
    ):
        self.executor_factory = executor_factory
        self.max_workers = max_workers or default_workers()
        self.fail_fast = fail_fast

        self._abort = threading.Event()
        self._lock = threading.Lock()
        self._cancel_events: Dict[str, threading.Event] = {}
        self._groups: Dict[str, str] = {}
        self._tripped = False
        self._tripped_groups: Set[str] = set()

    # ------------------------------------------------------------------
    # External control
    # ------------------------------------------------------------------

    def abort(self) -> None:
        """
        Cancel the run: nothing new starts, running jobs are signalled.

        Safe to call from any thread. Sub-processes are asked to terminate;
        the report does not wait for them to be gone.
        """
        self._abort.set()
        with self._lock:
            for ev in self._cancel_events.values():
                ev.set()

    @property
    def aborted(self) -> bool:
        return self._abort.is_set()

    def _cancel_where(self, predicate) -> None:
        with self._lock:
            for name, ev in self._cancel_events.items():
                if predicate(name):
                    ev.set()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, definition: PipelineDefinition) -> PipelineReport:
        jobs = list(definition.jobs)
        if not jobs:
            return aggregate([])

        by_name = {j.name: j for j in jobs}
        adj, indeg = build_dag(jobs)
        topo_levels(adj, indeg)  # cycle check before anything starts
        indeg = dict(indeg)
        self._groups = {j.name: j.group or j.name for j in jobs}

        order = {j.name: i for i, j in enumerate(jobs)}
        ready: Deque[str] = deque(sorted((n for n, d in indeg.items() if d == 0), key=order.get))
        runs: Dict[str, JobRun] = {}
        channel: "queue.Queue[JobRun]" = queue.Queue()
        in_flight = 0

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="flowci-job") as pool:
            while ready or in_flight:
                # launch everything that is currently ready
                while ready:
                    name = ready.popleft()
                    job = by_name[name]
                    reason = self._blocked_reason(job, runs)
                    if reason:
                        runs[name] = self._never_started(name, reason)
                        self._release(name, adj, indeg, ready, order)
                        continue

                    cancel = threading.Event()
                    with self._lock:
                        self._cancel_events[name] = cancel
                    if self._abort.is_set():
                        cancel.set()
                    pool.submit(self._worker, job, cancel, channel)
                    in_flight += 1

                if not in_flight:
                    break

                # wait for one completion, then loop to schedule newly-ready jobs
                run = channel.get()
                in_flight -= 1
                runs[run.name] = run
                with self._lock:
                    self._cancel_events.pop(run.name, None)

                if run.status is JobStatus.FAILED:
                    self._on_failure(by_name[run.name])
                self._release(run.name, adj, indeg, ready, order)

        return aggregate(runs[j.name] for j in jobs)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _worker(self, job: JobDefinition, cancel: threading.Event, channel: "queue.Queue[JobRun]") -> None:
        if cancel.is_set():
            channel.put(self._never_started(job.name, "cancelled before start"))
            return
        try:
            run = self.executor_factory(job, cancel).execute(job)
        except Exception as e:  # noqa: BLE001 - a crashed worker must still report
            get_console().print_exception(e)
            run = JobRun(name=job.name)
            run.finish(JobStatus.FAILED, f"internal error: {e}")
        channel.put(run)

    def _blocked_reason(self, job: JobDefinition, runs: Dict[str, JobRun]) -> str:
        if self._abort.is_set():
            return "pipeline aborted"
        if self._tripped:
            return "cancelled by fail-fast"
        group = self._groups.get(job.name, job.name)
        if job.fail_fast and group in self._tripped_groups:
            return f"cancelled by fail-fast in '{group}'"
        if not job.run_always:
            for dep in job.needs:
                dep_status = runs[dep].status
                if dep_status is not JobStatus.SUCCEEDED:
                    return f"dependency '{dep}' {dep_status.value}"
        return ""

    def _on_failure(self, job: JobDefinition) -> None:
        if self.fail_fast:
            self._tripped = True
            self._cancel_where(lambda _name: True)
            return
        if job.fail_fast:
            group = self._groups.get(job.name, job.name)
            self._tripped_groups.add(group)
            self._cancel_where(lambda name: self._groups.get(name) == group)

    @staticmethod
    def _never_started(name: str, reason: str) -> JobRun:
        run = JobRun(name=name)
        run.cancel(reason)
        get_console().print_job_finished(name, run.status, reason)
        return run

    @staticmethod
    def _release(
        name: str,
        adj: Dict[str, Set[str]],
        indeg: Dict[str, int],
        ready: Deque[str],
        order: Dict[str, int],
    ) -> None:
        newly: List[str] = []
        for nxt in adj[name]:
            indeg[nxt] -= 1
            if indeg[nxt] == 0:
                newly.append(nxt)
        ready.extend(sorted(newly, key=order.get))
