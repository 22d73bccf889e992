# loader.py
from __future__ import annotations

import itertools
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .dag import validate
from .errors import DefinitionError
from .model import (
    ActionKind,
    EventKind,
    JobDefinition,
    PipelineDefinition,
    StepDefinition,
    TriggerRule,
)
from .ui.console import get_console

Scalar = Union[str, int, float, bool]

# ----------------------------------------------------------------------
# Raw document schema (what the YAML must look like)
# ----------------------------------------------------------------------


class StepDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: Optional[str] = None
    name: Optional[str] = None
    uses: Optional[str] = None
    run: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, Scalar] = Field(default_factory=dict)
    shell: Optional[str] = None
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    retries: int = Field(default=0, ge=0)

    @field_validator("shell")
    @classmethod
    def _known_shell(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ("bash", "sh"):
            raise ValueError(f"unsupported shell {v!r} (use bash or sh)")
        return v

    @model_validator(mode="after")
    def _uses_xor_run(self) -> "StepDoc":
        if (self.uses is None) == (self.run is None):
            raise ValueError("a step needs exactly one of 'uses' or 'run'")
        return self


class StrategyDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    fail_fast: bool = Field(default=True, alias="fail-fast")
    matrix: Dict[str, List[Scalar]] = Field(default_factory=dict)

    @field_validator("matrix")
    @classmethod
    def _plain_axes(cls, v: Dict[str, List[Scalar]]) -> Dict[str, List[Scalar]]:
        for axis, values in v.items():
            if axis in ("include", "exclude"):
                raise ValueError(f"matrix '{axis}' is not supported")
            if not values:
                raise ValueError(f"matrix axis '{axis}' is empty")
        return v


class JobDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    runs_on: Any = Field(default=None, alias="runs-on")
    needs: Union[str, List[str]] = Field(default_factory=list)
    if_: Optional[str] = Field(default=None, alias="if")
    env: Dict[str, Scalar] = Field(default_factory=dict)
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    strategy: Optional[StrategyDoc] = None
    cache_scope: Optional[str] = Field(default=None, alias="cache-scope")
    steps: List[StepDoc] = Field(min_length=1)


class WorkflowDoc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = None
    on: Any = None
    env: Dict[str, Scalar] = Field(default_factory=dict)
    permissions: Any = None
    concurrency: Any = None
    jobs: Dict[str, JobDoc] = Field(default_factory=dict)


# ----------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------

_MATRIX_EXPR = re.compile(r"\$\{\{\s*matrix\.([A-Za-z0-9_-]+)\s*\}\}")
_ALWAYS = re.compile(r"^\s*(\$\{\{\s*)?always\(\)(\s*\}\})?\s*$")
_SUCCESS = re.compile(r"^\s*(\$\{\{\s*)?success\(\)(\s*\}\})?\s*$")


def _str_env(env: Mapping[str, Scalar]) -> Dict[str, str]:
    out = {}
    for k, v in env.items():
        if isinstance(v, bool):
            out[k] = "true" if v else "false"
        else:
            out[k] = str(v)
    return out


def _subst(value: Any, matrix: Mapping[str, Any]) -> Any:
    """Replace ${{ matrix.<axis> }} inside strings, lists and dicts."""
    if not matrix:
        return value
    if isinstance(value, str):
        return _MATRIX_EXPR.sub(lambda m: str(matrix.get(m.group(1), m.group(0))), value)
    if isinstance(value, list):
        return [_subst(v, matrix) for v in value]
    if isinstance(value, dict):
        return {k: _subst(v, matrix) for k, v in value.items()}
    return value


def _str_tuple(value: Any, loc: str) -> Optional[Tuple[str, ...]]:
    if value is None:
        return None
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise DefinitionError("expected a string or a list of strings", location=loc)


def _validation_message(e: ValidationError, prefix: str = "") -> Tuple[str, str]:
    errors = e.errors()
    first = errors[0]
    loc = ".".join(str(p) for p in (prefix, *first["loc"]) if p != "")
    msg = first["msg"]
    if len(errors) > 1:
        msg += f" (+{len(errors) - 1} more)"
    return msg, loc


# ----------------------------------------------------------------------
# Triggers
# ----------------------------------------------------------------------

_TRIGGER_FILTERS = {"branches", "branches-ignore"}
# accepted for compatibility with hosted definitions, but never evaluated
_IGNORED_FILTERS = {"paths", "paths-ignore", "tags", "tags-ignore", "types"}


def _parse_triggers(on: Any) -> Tuple[TriggerRule, ...]:
    if on is None:
        raise DefinitionError("missing trigger section", location="on")
    if isinstance(on, str):
        on = {on: None}
    elif isinstance(on, list):
        on = {str(k): None for k in on}
    elif not isinstance(on, dict):
        raise DefinitionError("expected an event name, a list or a mapping", location="on")

    rules: List[TriggerRule] = []
    for kind, cfg in on.items():
        try:
            event = EventKind(kind)
        except ValueError:
            # other platform events are accepted but can never start this engine
            continue
        cfg = cfg or {}
        loc = f"on.{kind}"
        if not isinstance(cfg, dict):
            raise DefinitionError("expected a mapping", location=loc)
        ignored = sorted(set(cfg) & _IGNORED_FILTERS)
        if ignored:
            get_console().print_warning(f"{loc}: ignoring unsupported filter(s) {ignored}")
        unknown = set(cfg) - _TRIGGER_FILTERS - _IGNORED_FILTERS
        if unknown:
            raise DefinitionError(f"unsupported filter(s): {sorted(unknown)}", location=loc)
        if "branches" in cfg and "branches-ignore" in cfg:
            raise DefinitionError("use either 'branches' or 'branches-ignore', not both", location=loc)
        branches = _str_tuple(cfg.get("branches"), f"{loc}.branches")
        if branches is None and "branches-ignore" not in cfg and ("tags" in cfg or "tags-ignore" in cfg):
            # a tag-only push trigger never fires for branch pushes
            branches = ()
        rules.append(
            TriggerRule(
                event=event,
                branches=branches,
                branches_ignore=_str_tuple(cfg.get("branches-ignore"), f"{loc}.branches-ignore"),
            )
        )
    return tuple(rules)


# ----------------------------------------------------------------------
# Steps
# ----------------------------------------------------------------------

# refs of the toolchain action that are not toolchain names
_NON_TOOLCHAIN_REFS = {"master", "main", "v1"}


def _resolve_uses(uses: str, with_: Dict[str, Any], loc: str) -> Tuple[ActionKind, Dict[str, Any], bool]:
    """Map a `uses:` reference onto an action kind. Returns (kind, params, post_save)."""
    action, _, ref = uses.partition("@")
    action = action.strip().lower()
    params = dict(with_)

    if action == "actions/checkout":
        return ActionKind.CHECKOUT, params, False

    if action.endswith("/rust-toolchain") or action == "actions-rs/toolchain":
        if not params.get("toolchain"):
            if not ref or ref in _NON_TOOLCHAIN_REFS:
                raise DefinitionError(f"{uses} needs 'with.toolchain'", location=loc)
            params["toolchain"] = ref
        return ActionKind.TOOLCHAIN_INSTALL, params, False

    if action == "swatinem/rust-cache":
        params.setdefault("path", ["target"])
        params.setdefault("lockfiles", ["**/Cargo.lock", "**/Cargo.toml"])
        shared = params.pop("shared-key", None)
        if shared:
            params["scope"] = f"rust-{shared}"
        params.pop("key", None)
        return ActionKind.CACHE_RESTORE, params, True

    if action in ("actions/cache", "actions/cache/restore", "actions/cache/save"):
        for required in ("path", "key"):
            if not params.get(required):
                raise DefinitionError(f"{uses} needs 'with.{required}'", location=loc)
        if action == "actions/cache/save":
            return ActionKind.CACHE_SAVE, params, False
        return ActionKind.CACHE_RESTORE, params, action == "actions/cache"

    raise DefinitionError(f"unsupported action '{uses}'", location=loc)


def _step_name(doc: StepDoc) -> str:
    if doc.name:
        return doc.name
    if doc.run:
        return f"Run {doc.run.strip().splitlines()[0]}"
    return f"Run {doc.uses}"


def _build_step(doc: StepDoc, matrix: Mapping[str, Any], loc: str) -> StepDefinition:
    with_ = _subst(doc.with_, matrix)
    if doc.uses is not None:
        kind, params, post_save = _resolve_uses(_subst(doc.uses, matrix), with_, loc)
    else:
        kind, params, post_save = ActionKind.RUN_COMMAND, with_, False

    return StepDefinition(
        name=_subst(_step_name(doc), matrix),
        kind=kind,
        run=_subst(doc.run, matrix),
        uses=doc.uses,
        with_=params,
        env=_str_env(_subst(doc.env, matrix)),
        shell=doc.shell,
        working_directory=_subst(doc.working_directory, matrix),
        timeout=doc.timeout_minutes * 60 if doc.timeout_minutes else None,
        retries=doc.retries,
        post_save=post_save,
    )


# ----------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------

def _matrix_rows(strategy: Optional[StrategyDoc]) -> List[Dict[str, Any]]:
    if strategy is None or not strategy.matrix:
        return [{}]
    axes = list(strategy.matrix)
    return [dict(zip(axes, combo)) for combo in itertools.product(*(strategy.matrix[a] for a in axes))]


def _run_always(doc: JobDoc, loc: str) -> bool:
    if doc.if_ is None or _SUCCESS.match(doc.if_):
        return False
    if _ALWAYS.match(doc.if_):
        return True
    raise DefinitionError(f"unsupported condition {doc.if_!r} (only always() / success())", location=f"{loc}.if")


def _build_jobs(jobs: Dict[str, JobDoc]) -> Tuple[JobDefinition, ...]:
    expanded: Dict[str, List[str]] = {}
    built: List[Tuple[str, JobDoc, str, Dict[str, Any]]] = []

    for job_id, doc in jobs.items():
        rows = _matrix_rows(doc.strategy)
        names = []
        for row in rows:
            name = f"{job_id} ({', '.join(str(v) for v in row.values())})" if row else job_id
            names.append(name)
            built.append((job_id, doc, name, row))
        expanded[job_id] = names

    out: List[JobDefinition] = []
    for job_id, doc, name, row in built:
        loc = f"jobs.{job_id}"
        needs_ids = [doc.needs] if isinstance(doc.needs, str) else list(doc.needs)
        needs: List[str] = []
        for dep in needs_ids:
            if dep not in expanded:
                raise DefinitionError(f"needs unknown job '{dep}'", location=f"{loc}.needs")
            needs.extend(expanded[dep])

        steps = tuple(
            _build_step(s, row, f"{loc}.steps.{i}") for i, s in enumerate(doc.steps)
        )
        out.append(
            JobDefinition(
                name=name,
                steps=steps,
                needs=tuple(needs),
                run_always=_run_always(doc, loc),
                fail_fast=doc.strategy.fail_fast if doc.strategy else False,
                group=job_id,
                env=_str_env(_subst(doc.env, row)),
                cache_scope=doc.cache_scope,
                timeout=doc.timeout_minutes * 60 if doc.timeout_minutes else None,
                matrix=row,
            )
        )
    return tuple(out)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def parse_definition(source: Union[str, Mapping[str, Any]], *, name: str = "pipeline") -> PipelineDefinition:
    """
    Parse a pipeline document (YAML text or an already-loaded mapping).

    Any problem raises DefinitionError; a definition is either fully valid
    or nothing runs.
    """
    if isinstance(source, str):
        try:
            raw = yaml.safe_load(source)
        except yaml.YAMLError as e:
            raise DefinitionError(f"invalid YAML: {e}") from e
    else:
        raw = source

    if not isinstance(raw, dict):
        raise DefinitionError("pipeline document must be a mapping")

    raw = dict(raw)
    # YAML 1.1 reads a bare `on:` key as boolean true
    if True in raw and "on" not in raw:
        raw["on"] = raw.pop(True)

    try:
        doc = WorkflowDoc.model_validate(raw)
    except ValidationError as e:
        msg, loc = _validation_message(e)
        raise DefinitionError(msg, location=loc or None) from e

    definition = PipelineDefinition(
        name=doc.name or name,
        triggers=_parse_triggers(doc.on),
        jobs=_build_jobs(doc.jobs),
        env=_str_env(doc.env),
    )
    validate(definition.jobs)
    return definition


def load_definition(path: str | Path) -> PipelineDefinition:
    """Load a pipeline definition from a YAML file."""
    p = Path(path).expanduser()
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise DefinitionError(f"cannot read pipeline definition: {e}", location=str(p)) from e
    return parse_definition(text, name=p.stem)
