# executor.py
from __future__ import annotations

import os
import platform
import re
import signal
import subprocess
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .actions import Checkout, ToolchainInstaller, ToolchainSpec
from .cache import CacheManager, KeyContext, pack_paths, unpack_blob
from .errors import ExternalToolError, StepFailure
from .model import (
    ActionKind,
    Event,
    JobDefinition,
    JobRun,
    JobStatus,
    StepDefinition,
    StepResult,
    StepStatus,
)
from .ui.console import get_console


OUTPUT_LIMIT = 64_000
TERMINATE_GRACE = 5.0

SHELLS: Dict[str, List[str]] = {
    "bash": ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c"],
    "sh": ["sh", "-e", "-c"],
}


@dataclass
class _JobState:
    """Per-job scratch state carried from step to step."""
    toolchain: str = ""
    # (step name, key, scope, paths) saved after the job if every step succeeded
    post_saves: List[Tuple[str, str, Optional[str], List[str]]] = field(default_factory=list)


class _Interrupted(Exception):
    """The cancel token fired while a collaborator was still working."""


@dataclass
class _Outcome:
    status: StepStatus
    output: str = ""
    exit_code: Optional[int] = None


def _tail(text: str, limit: int = OUTPUT_LIMIT) -> str:
    return text[-limit:] if len(text) > limit else text


def _as_list(value) -> List[str]:
    """`with:` values may be a list or a newline/comma separated string."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    return [p.strip() for p in re.split(r"[\n,]", str(value)) if p.strip()]


class StepExecutor:
    """
    Runs one job's steps in order.

    The first failing step ends the job (status=failed) and every later step
    is recorded as skipped. Failures are values on the JobRun, never raised.
    """

    def __init__(
        self,
        *,
        workspace: str | Path,
        cache: CacheManager,
        checkout: Checkout,
        installer: ToolchainInstaller,
        event: Optional[Event] = None,
        pipeline_env: Optional[Dict[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
        poll_interval: float = 0.1,
    ):
        self.workspace = Path(workspace).resolve()
        self.cache = cache
        self.checkout = checkout
        self.installer = installer
        self.event = event
        self.pipeline_env = dict(pipeline_env or {})
        self.cancel_event = cancel_event or threading.Event()
        self.poll_interval = poll_interval

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    def execute(self, job: JobDefinition) -> JobRun:
        console = get_console()
        run = JobRun(name=job.name)
        run.start()
        console.print_job_start(job.name)

        state = _JobState()
        deadline = time.monotonic() + job.timeout if job.timeout else None
        status, reason = JobStatus.SUCCEEDED, ""

        for idx, step in enumerate(job.steps):
            if self.cancel_event.is_set():
                status, reason = JobStatus.CANCELLED, "cancelled before step"
                self._skip_rest(run, job.steps[idx:])
                break
            if deadline is not None and time.monotonic() >= deadline:
                status, reason = JobStatus.FAILED, f"job timed out after {job.timeout:g}s"
                console.print_warning(f"[{job.name}] {reason}")
                self._skip_rest(run, job.steps[idx:])
                break

            console.print_step(job.name, step.name)
            result = self._run_step(job, step, state, deadline)
            run.steps.append(result)
            console.print_step_result(job.name, result)

            if result.status is StepStatus.FAILED:
                status, reason = JobStatus.FAILED, f"step '{step.name}' failed"
                self._skip_rest(run, job.steps[idx + 1:])
                break
            if result.status is StepStatus.CANCELLED:
                status, reason = JobStatus.CANCELLED, f"cancelled during step '{step.name}'"
                self._skip_rest(run, job.steps[idx + 1:])
                break

        if status is JobStatus.SUCCEEDED:
            for name, key, scope, paths in state.post_saves:
                run.steps.append(self._post_save(job, name, key, scope, paths))

        run.finish(status, reason)
        console.print_job_finished(job.name, status, reason)
        return run

    @staticmethod
    def _skip_rest(run: JobRun, steps) -> None:
        for s in steps:
            run.steps.append(StepResult(name=s.name, kind=s.kind, status=StepStatus.SKIPPED))

    # ------------------------------------------------------------------
    # Step
    # ------------------------------------------------------------------

    def _run_step(
        self,
        job: JobDefinition,
        step: StepDefinition,
        state: _JobState,
        job_deadline: Optional[float],
    ) -> StepResult:
        started = time.monotonic()
        outputs: List[str] = []
        attempts = 0

        while True:
            attempts += 1
            deadline = job_deadline
            if step.timeout:
                step_deadline = time.monotonic() + step.timeout
                deadline = step_deadline if deadline is None else min(deadline, step_deadline)

            try:
                outcome = self._dispatch(job, step, state, deadline)
            except _Interrupted:
                outcome = _Outcome(StepStatus.CANCELLED, "cancelled")
            except StepFailure as e:
                outcome = _Outcome(StepStatus.FAILED, e.output or e.message, e.exit_code)
                if e.output and e.message not in e.output:
                    outcome.output = f"{e.output}\n{e.message}"
            except ExternalToolError as e:
                outcome = _Outcome(StepStatus.FAILED, str(e))

            outputs.append(outcome.output)
            retry = (
                outcome.status is StepStatus.FAILED
                and attempts <= step.retries
                and not self.cancel_event.is_set()
            )
            if not retry:
                break
            get_console().print_info(f"[{job.name}] retrying '{step.name}' ({attempts}/{step.retries})")

        return StepResult(
            name=step.name,
            kind=step.kind,
            status=outcome.status,
            output=_tail("\n".join(o for o in outputs if o)),
            duration=time.monotonic() - started,
            exit_code=outcome.exit_code,
            attempts=attempts,
        )

    def _dispatch(
        self,
        job: JobDefinition,
        step: StepDefinition,
        state: _JobState,
        deadline: Optional[float],
    ) -> _Outcome:
        if step.kind is ActionKind.RUN_COMMAND:
            return self._run_command(job, step, deadline)
        if step.kind is ActionKind.CHECKOUT:
            return self._checkout(job, step, deadline)
        if step.kind is ActionKind.TOOLCHAIN_INSTALL:
            return self._install_toolchain(job, step, state, deadline)
        if step.kind is ActionKind.CACHE_RESTORE:
            return self._cache_restore(job, step, state, deadline)
        if step.kind is ActionKind.CACHE_SAVE:
            return self._cache_save(job, step, state)
        raise StepFailure(job=job.name, step=step.name, message=f"unknown action kind {step.kind!r}")

    def _bounded(
        self,
        job: JobDefinition,
        step: StepDefinition,
        deadline: Optional[float],
        fn: Callable[..., Any],
        *args: Any,
    ) -> Any:
        """
        Call a collaborator on a daemon thread and wait for it under the step deadline.

        Expiry raises StepFailure("timed out"); the cancel token raises _Interrupted.
        A collaborator that never returns is abandoned, not joined.
        """
        future: Future = Future()

        def _target() -> None:
            try:
                future.set_result(fn(*args))
            except Exception as e:  # noqa: BLE001 - re-raised by future.result()
                future.set_exception(e)

        threading.Thread(target=_target, name=f"flowci-{slug(step.name)}", daemon=True).start()

        while True:
            wait = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise StepFailure(job=job.name, step=step.name, message="timed out")
                wait = min(wait, remaining)
            try:
                return future.result(timeout=wait)
            except FutureTimeout:
                if future.done():
                    raise
                if self.cancel_event.is_set():
                    raise _Interrupted()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _checkout(self, job: JobDefinition, step: StepDefinition, deadline: Optional[float]) -> _Outcome:
        ref = step.with_.get("ref") or (self.event.ref if self.event else "")
        res = self._bounded(job, step, deadline, self.checkout.checkout, self.workspace, ref)
        if not res.ok:
            raise StepFailure(job=job.name, step=step.name, message="checkout failed", output=res.output)
        return _Outcome(StepStatus.SUCCEEDED, res.output)

    def _install_toolchain(
        self, job: JobDefinition, step: StepDefinition, state: _JobState, deadline: Optional[float]
    ) -> _Outcome:
        spec = ToolchainSpec(
            toolchain=str(step.with_.get("toolchain") or "stable"),
            components=tuple(_as_list(step.with_.get("components"))),
            targets=tuple(_as_list(step.with_.get("targets"))),
        )
        res = self._bounded(job, step, deadline, self.installer.install, spec, self.workspace)
        if not res.ok:
            raise StepFailure(
                job=job.name, step=step.name, message=f"toolchain {spec.toolchain} install failed", output=res.output
            )
        state.toolchain = res.identity or spec.toolchain
        return _Outcome(StepStatus.SUCCEEDED, res.output)

    def _key_context(self, job: JobDefinition, state: _JobState) -> KeyContext:
        return KeyContext(
            workspace=self.workspace,
            runner_os=platform.system(),
            ref_name=self.event.branch if self.event else "",
            sha=self.event.ref if self.event else "",
            toolchain=state.toolchain,
            matrix=job.matrix,
            env=self._env(job, None),
        )

    def _cache_target(self, job: JobDefinition, step: StepDefinition, state: _JobState):
        key = self.cache.derive_key(
            step.with_.get("key"),
            self._key_context(job, state),
            lockfiles=_as_list(step.with_.get("lockfiles")) or None,
        )
        scope = step.with_.get("scope") or job.cache_scope or job.group or job.name
        paths = _as_list(step.with_.get("path"))
        return key, scope, paths

    def _cache_restore(
        self, job: JobDefinition, step: StepDefinition, state: _JobState, deadline: Optional[float]
    ) -> _Outcome:
        console = get_console()
        key, scope, paths = self._cache_target(job, step, state)
        hit = self._bounded(job, step, deadline, self.cache.restore, key, scope)

        restored = False
        if hit.hit and hit.blob is not None:
            try:
                unpack_blob(hit.blob, self.workspace)
                restored = True
            except (OSError, ValueError) as e:
                console.print_warning(f"[{job.name}] cache entry {key} could not be unpacked: {e}")

        if restored:
            console.print_cache_hit(job.name, key)
        else:
            console.print_cache_miss(job.name, key)
            if step.post_save:
                state.post_saves.append((step.name, key, scope, paths))

        return _Outcome(StepStatus.SUCCEEDED, f"{'cache hit' if restored else 'cache miss'}: {scope}/{key}")

    def _cache_save(self, job: JobDefinition, step: StepDefinition, state: _JobState) -> _Outcome:
        key, scope, paths = self._cache_target(job, step, state)
        _saved, msg = self._save_paths(job, key, scope, paths)
        return _Outcome(StepStatus.SUCCEEDED, msg)

    def _post_save(self, job: JobDefinition, name: str, key: str, scope: Optional[str], paths: List[str]) -> StepResult:
        started = time.monotonic()
        _saved, msg = self._save_paths(job, key, scope, paths)
        return StepResult(
            name=f"Post {name}",
            kind=ActionKind.CACHE_SAVE,
            status=StepStatus.SUCCEEDED,
            output=msg,
            duration=time.monotonic() - started,
            attempts=1,
        )

    def _save_paths(self, job: JobDefinition, key: str, scope: Optional[str], paths: List[str]) -> Tuple[bool, str]:
        """Best effort: any failure is logged and reported in the step output only."""
        console = get_console()
        try:
            blob = pack_paths(self.workspace, paths)
        except OSError as e:
            console.print_warning(f"[{job.name}] could not archive {paths}: {e}")
            return False, f"cache save skipped: {e}"
        if not self.cache.save(key, blob, scope=scope):
            return False, f"cache save failed (ignored): {scope}/{key}"
        console.print_cache_saved(job.name, key)
        return True, f"cache saved: {scope}/{key}"

    # ------------------------------------------------------------------
    # run-command
    # ------------------------------------------------------------------

    def _env(self, job: JobDefinition, step: Optional[StepDefinition]) -> Dict[str, str]:
        env = os.environ.copy()
        env["CI"] = "true"
        env["FLOWCI_JOB"] = job.name
        env["FLOWCI_WORKSPACE"] = str(self.workspace)
        if self.event:
            env["FLOWCI_EVENT"] = self.event.kind.value
            env["FLOWCI_BRANCH"] = self.event.branch
            env["FLOWCI_SHA"] = self.event.ref
        env.update(self.pipeline_env)
        env.update(job.env)
        if step is not None:
            env.update(step.env)
        return env

    def _run_command(self, job: JobDefinition, step: StepDefinition, deadline: Optional[float]) -> _Outcome:
        cwd = (self.workspace / (step.working_directory or ".")).resolve()
        if not cwd.is_dir():
            raise StepFailure(job=job.name, step=step.name, message=f"working directory not found: {cwd}")

        cmd = step.run or ""
        if step.shell:
            args, use_shell = [*SHELLS[step.shell], cmd], False
        else:
            args, use_shell = cmd, True

        try:
            proc = subprocess.Popen(
                args,
                shell=use_shell,
                cwd=str(cwd),
                env=self._env(job, step),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            raise StepFailure(job=job.name, step=step.name, message=f"could not start process: {e}")

        while True:
            try:
                out, _ = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if self.cancel_event.is_set():
                    out = self._terminate(proc)
                    return _Outcome(StepStatus.CANCELLED, _tail(out), proc.returncode)
                if deadline is not None and time.monotonic() >= deadline:
                    out = self._terminate(proc)
                    raise StepFailure(
                        job=job.name,
                        step=step.name,
                        message="timed out",
                        exit_code=proc.returncode,
                        output=_tail(out),
                    )

        if proc.returncode != 0:
            raise StepFailure(
                job=job.name,
                step=step.name,
                message=f"command exited with {proc.returncode}: {cmd}",
                exit_code=proc.returncode,
                output=_tail(out or ""),
            )
        return _Outcome(StepStatus.SUCCEEDED, _tail(out or ""), 0)

    @staticmethod
    def _signal_group(proc: subprocess.Popen, sig: int) -> None:
        try:
            os.killpg(proc.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass

    def _terminate(self, proc: subprocess.Popen) -> str:
        """Ask the process group to stop, escalate after a grace period. Returns captured output."""
        self._signal_group(proc, signal.SIGTERM)
        try:
            out, _ = proc.communicate(timeout=TERMINATE_GRACE)
        except subprocess.TimeoutExpired:
            self._signal_group(proc, signal.SIGKILL)
            out, _ = proc.communicate()
        return out or ""


def slug(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "-", name).strip("-") or "job"


ExecutorFactory = Callable[[JobDefinition, threading.Event], StepExecutor]


def executor_factory(
    *,
    workspace: str | Path,
    cache: CacheManager,
    checkout: Checkout,
    installer: ToolchainInstaller,
    event: Optional[Event] = None,
    pipeline_env: Optional[Dict[str, str]] = None,
    isolate: bool = False,
) -> ExecutorFactory:
    """
    Build the per-job executor factory handed to the scheduler.

    isolate=True gives every job its own workspace directory (<workspace>/<job>),
    which is what a fresh clone per job needs.
    """
    root = Path(workspace)

    def factory(job: JobDefinition, cancel_event: threading.Event) -> StepExecutor:
        ws = root / slug(job.name) if isolate else root
        if isolate:
            ws.mkdir(parents=True, exist_ok=True)
        return StepExecutor(
            workspace=ws,
            cache=cache,
            checkout=checkout,
            installer=installer,
            event=event,
            pipeline_env=pipeline_env,
            cancel_event=cancel_event,
        )

    return factory
