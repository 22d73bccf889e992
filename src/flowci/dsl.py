# dsl.py
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional

from .dag import validate
from .model import (
    ActionKind,
    EventKind,
    JobDefinition,
    PipelineDefinition,
    StepDefinition,
    TriggerRule,
)


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    shell: str | None = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float | None = None,
    retries: int = 0,
) -> StepDefinition:
    """Create a run-command step."""
    return StepDefinition(
        name=name,
        kind=ActionKind.RUN_COMMAND,
        run=cmd,
        shell=shell,
        working_directory=cwd,
        env=dict(env or {}),
        timeout=timeout,
        retries=retries,
    )


def checkout(name: str = "Checkout", *, ref: str | None = None) -> StepDefinition:
    return StepDefinition(
        name=name,
        kind=ActionKind.CHECKOUT,
        with_={"ref": ref} if ref else {},
    )


def toolchain(
    toolchain: str = "stable",
    *,
    name: str = "Install toolchain",
    components: Iterable[str] = (),
    targets: Iterable[str] = (),
) -> StepDefinition:
    return StepDefinition(
        name=name,
        kind=ActionKind.TOOLCHAIN_INSTALL,
        with_={"toolchain": toolchain, "components": list(components), "targets": list(targets)},
    )


def cache(
    *paths: str,
    name: str = "Cache",
    key: str | None = None,
    scope: str | None = None,
    lockfiles: Optional[List[str]] = None,
    save_after: bool = True,
) -> StepDefinition:
    """
    Restore `paths` from the cache; with save_after=True they are saved again
    once every step of the job succeeded (unless the restore was a hit).
    """
    params: Dict[str, Any] = {"path": list(paths)}
    if key:
        params["key"] = key
    if scope:
        params["scope"] = scope
    if lockfiles:
        params["lockfiles"] = list(lockfiles)
    return StepDefinition(name=name, kind=ActionKind.CACHE_RESTORE, with_=params, post_save=save_after)


def cache_save(*paths: str, name: str = "Save cache", key: str | None = None, scope: str | None = None) -> StepDefinition:
    params: Dict[str, Any] = {"path": list(paths)}
    if key:
        params["key"] = key
    if scope:
        params["scope"] = scope
    return StepDefinition(name=name, kind=ActionKind.CACHE_SAVE, with_=params)


# ---------------------------------------------------------------------
# Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: StepDefinition,  # allow: job("x", sh(...), sh(...))
    needs: Optional[List[str]] = None,
    run_always: bool = False,
    fail_fast: bool = False,
    group: str | None = None,
    env: Optional[Dict[str, str]] = None,
    cache_scope: str | None = None,
    timeout: float | None = None,
    matrix: Optional[Dict[str, Any]] = None,
) -> JobDefinition:
    if not steps:
        raise ValueError(f"job({name!r}) must have at least one step")
    return JobDefinition(
        name=name,
        steps=tuple(steps),
        needs=tuple(needs or ()),
        run_always=run_always,
        fail_fast=fail_fast,
        group=group or name,
        env=dict(env or {}),
        cache_scope=cache_scope,
        timeout=timeout,
        matrix=dict(matrix or {}),
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("toolchain", ["stable", "nightly"]).jobs(
            lambda v: job(f"test ({v})", toolchain(v), sh("Test", "cargo test"), group="test")
        )
    """

    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], JobDefinition]) -> List[JobDefinition]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Triggers + pipeline
# ---------------------------------------------------------------------

def on_push(*branches: str) -> TriggerRule:
    return TriggerRule(event=EventKind.PUSH, branches=tuple(branches) if branches else None)


def on_pull_request(*branches: str) -> TriggerRule:
    return TriggerRule(event=EventKind.PULL_REQUEST, branches=tuple(branches) if branches else None)


def pipeline(
    *jobs: JobDefinition,
    name: str = "pipeline",
    triggers: Iterable[TriggerRule] = (),
    env: Optional[Dict[str, str]] = None,
) -> PipelineDefinition:
    """Assemble and validate a pipeline (duplicate names, unknown needs, cycles)."""
    definition = PipelineDefinition(
        name=name,
        triggers=tuple(triggers),
        jobs=tuple(jobs),
        env=dict(env or {}),
    )
    validate(definition.jobs)
    return definition
