# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class FlowError(Exception):
    """Base class for flowci errors."""


class DefinitionError(FlowError):
    """Malformed pipeline definition. Fatal: nothing runs."""

    def __init__(self, message: str, location: str | None = None):
        self.message = message
        self.location = location
        super().__init__(f"{location}: {message}" if location else message)


@dataclass
class StepFailure(FlowError):
    """
    Raised by action handlers inside the executor.

    Never escapes the executor: it is turned into a failed StepResult.
    """
    job: str
    step: str
    message: str
    exit_code: int | None = None
    output: str = ""

    def __str__(self) -> str:
        code = f" (exit={self.exit_code})" if self.exit_code is not None else ""
        return f"[{self.job}] step '{self.step}' failed{code}: {self.message}"


@dataclass
class ExternalToolError(FlowError):
    """A collaborator (git, toolchain installer) reported failure."""
    tool: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.tool}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class CacheWriteError(FlowError):
    """A cache store could not persist a blob. Logged, never fails a job."""
