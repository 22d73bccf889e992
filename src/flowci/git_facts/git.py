# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from ..errors import ExternalToolError


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Every other function builds on top of this one.

    Raises:
        ExternalToolError: git is missing or exited non-zero. The error
        carries git's stderr so callers can surface it as diagnostics.
    """
    try:
        proc = subprocess.run(
            ["git", *args],
            cwd=str(cwd) if cwd is not None else None,
            text=True,
            capture_output=True,
            check=False,
        )
    except FileNotFoundError:
        raise ExternalToolError(
            tool="git",
            message="git command not found",
            details={"hint": "Install Git or fix PATH."},
        )

    if proc.returncode != 0:
        raise ExternalToolError(
            tool="git",
            message=f"git {' '.join(args)} failed (exit={proc.returncode})",
            details={"stderr": proc.stderr.strip()},
        )
    return proc.stdout.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of HEAD."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """
    Name of the checked-out branch.

    A detached HEAD reports "HEAD", which is what `git rev-parse
    --abbrev-ref` prints in that state.
    """
    return _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)


def remote_url(remote: str = "origin", cwd: Optional[str | Path] = None) -> str:
    """Fetch URL configured for `remote`."""
    return _git(["remote", "get-url", remote], cwd=cwd)


def clone_or_update(repo_url: str, ref: str, dest: Path) -> str:
    """
    Make `dest` a checkout of `repo_url` at `ref`.

    Clones when `dest` does not exist yet, fetches otherwise. Returns the
    combined git output for step diagnostics.
    """
    log = []
    if (dest / ".git").exists():
        log.append(_git(["fetch", "--tags", "origin"], cwd=dest))
    else:
        dest.parent.mkdir(parents=True, exist_ok=True)
        log.append(_git(["clone", repo_url, str(dest)]))

    if ref:
        log.append(_git(["checkout", "--force", ref], cwd=dest))
    log.append(f"HEAD is now at {head_sha(cwd=dest)}")
    return "\n".join(line for line in log if line)
