# engine.py
from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Dict, Optional

from .executor import slug, executor_factory
from .model import Event, PipelineDefinition, PipelineReport
from .scheduler import JobScheduler
from .trigger import evaluate
from .ui.console import get_console

# Builds the scheduler for one run of `definition` triggered by `event`.
SchedulerFactory = Callable[[PipelineDefinition, Event], JobScheduler]


class PipelineEngine:
    """
    Event in, report out.

    The definition is an immutable value handed in once. A new event for a
    branch supersedes (aborts) the run still in progress for that branch.
    """

    def __init__(self, definition: PipelineDefinition, scheduler_factory: SchedulerFactory):
        self.definition = definition
        self.scheduler_factory = scheduler_factory
        self._lock = threading.Lock()
        self._active: Dict[str, JobScheduler] = {}

    def matches(self, event: Event) -> bool:
        return evaluate(event, self.definition.triggers)

    def handle(self, event: Event) -> Optional[PipelineReport]:
        """Run the pipeline for `event`. Returns None when no trigger matches."""
        console = get_console()
        if not self.matches(event):
            console.print_not_triggered(event.kind.value, event.branch)
            return None

        scheduler = self.scheduler_factory(self.definition, event)
        group = event.branch
        with self._lock:
            previous = self._active.get(group)
            self._active[group] = scheduler
        if previous is not None:
            console.print_info(f"Superseding the running pipeline for '{event.branch}'")
            previous.abort()

        console.print_run_started(
            pipeline=self.definition.name,
            event=event.kind.value,
            branch=event.branch,
            job_count=len(self.definition.jobs),
        )
        try:
            return scheduler.run(self.definition)
        finally:
            with self._lock:
                if self._active.get(group) is scheduler:
                    del self._active[group]

    def abort(self, branch: Optional[str] = None) -> int:
        """Abort running pipelines (all, or those of one branch). Returns how many."""
        with self._lock:
            targets = [
                s for g, s in self._active.items()
                if branch is None or g == branch
            ]
        for s in targets:
            s.abort()
        return len(targets)


def scheduler_factory(
    *,
    workspace,
    cache,
    checkout,
    installer,
    max_workers: Optional[int] = None,
    fail_fast: bool = False,
    isolate: bool = False,
) -> SchedulerFactory:
    """Wire executors and a scheduler together for each run."""

    def factory(definition: PipelineDefinition, event: Event) -> JobScheduler:
        return JobScheduler(
            executor_factory(
                workspace=Path(workspace) / slug(event.branch) if isolate else workspace,
                cache=cache,
                checkout=checkout,
                installer=installer,
                event=event,
                pipeline_env=definition.env,
                isolate=isolate,
            ),
            max_workers=max_workers,
            fail_fast=fail_fast,
        )

    return factory
