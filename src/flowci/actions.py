# actions.py
# External collaborators used by checkout / toolchain-install steps.
from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, Tuple

from .errors import ExternalToolError
from .git_facts.git import clone_or_update


@dataclass(frozen=True)
class ActionResult:
    """What a collaborator reports back: success plus diagnostic text."""
    ok: bool
    output: str = ""
    identity: str = ""   # e.g. toolchain version, fed into default cache keys


@dataclass(frozen=True)
class ToolchainSpec:
    toolchain: str = "stable"
    components: Tuple[str, ...] = field(default_factory=tuple)
    targets: Tuple[str, ...] = field(default_factory=tuple)


class Checkout(Protocol):
    def checkout(self, workspace: Path, ref: str) -> ActionResult: ...


class ToolchainInstaller(Protocol):
    def install(self, spec: ToolchainSpec, workspace: Path) -> ActionResult: ...


# ---------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------

class WorkspaceCheckout:
    """Run in place: the workspace already holds the sources."""

    def checkout(self, workspace: Path, ref: str) -> ActionResult:
        if not workspace.is_dir():
            return ActionResult(ok=False, output=f"workspace not found: {workspace}")
        return ActionResult(ok=True, output=f"using working tree at {workspace}")


class GitCheckout:
    """Clone (or fetch) `repo_url` into the job workspace and check out the event ref."""

    def __init__(self, repo_url: str):
        self.repo_url = repo_url

    def checkout(self, workspace: Path, ref: str) -> ActionResult:
        try:
            out = clone_or_update(self.repo_url, ref, workspace)
        except ExternalToolError as e:
            return ActionResult(ok=False, output=str(e))
        return ActionResult(ok=True, output=out)


# ---------------------------------------------------------------------
# Toolchain
# ---------------------------------------------------------------------

def _tool_version(tool: str, cwd: Path | None = None) -> str:
    """Best-effort `<tool> --version`, whitespace-normalized for stable hashing."""
    try:
        completed = subprocess.run(
            [tool, "--version"],
            cwd=str(cwd) if cwd else None,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError:
        return ""
    text = (completed.stdout or completed.stderr or "").strip()
    return " ".join(text.split()) if completed.returncode == 0 else ""


class RustupInstaller:
    """Installs a Rust toolchain through rustup."""

    def __init__(self, rustup: str = "rustup"):
        self.rustup = rustup

    def _run(self, args: list[str], workspace: Path) -> str:
        proc = subprocess.run(
            [self.rustup, *args],
            cwd=str(workspace),
            text=True,
            capture_output=True,
            check=False,
        )
        out = (proc.stdout + proc.stderr).strip()
        if proc.returncode != 0:
            raise ExternalToolError(
                tool="rustup",
                message=f"rustup {' '.join(args)} failed (exit={proc.returncode})",
                details={"output": out[-2000:]},
            )
        return out

    def install(self, spec: ToolchainSpec, workspace: Path) -> ActionResult:
        if shutil.which(self.rustup) is None:
            raise ExternalToolError(
                tool="rustup",
                message="rustup is not available",
                details={"hint": "Install rustup (https://rustup.rs) or fix PATH."},
            )

        args = ["toolchain", "install", spec.toolchain, "--profile", "minimal", "--no-self-update"]
        for c in spec.components:
            args += ["--component", c]
        for t in spec.targets:
            args += ["--target", t]

        log = [self._run(args, workspace)]
        log.append(self._run(["override", "set", spec.toolchain], workspace))
        identity = _tool_version("rustc", workspace)
        return ActionResult(ok=True, output="\n".join(log), identity=identity or spec.toolchain)
