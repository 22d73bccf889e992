from .dsl import cache, checkout, job, matrix, on_pull_request, on_push, pipeline, sh, toolchain
from .engine import PipelineEngine
from .loader import load_definition, parse_definition
from .model import Event, EventKind, JobStatus, PipelineReport
from .report import aggregate
from .scheduler import JobScheduler
from .trigger import evaluate

__all__ = [
    "cache",
    "checkout",
    "job",
    "matrix",
    "on_pull_request",
    "on_push",
    "pipeline",
    "sh",
    "toolchain",
    "PipelineEngine",
    "load_definition",
    "parse_definition",
    "Event",
    "EventKind",
    "JobStatus",
    "PipelineReport",
    "aggregate",
    "JobScheduler",
    "evaluate",
]
