# trigger.py
from __future__ import annotations

import re
from functools import lru_cache
from typing import Iterable, Sequence

from .model import Event, TriggerRule


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern:
    """
    Translate a branch glob into a regex.

      *   any run of characters except '/'
      **  any run of characters, '/' included
      ?   one character except '/'
    """
    out = []
    i = 0
    while i < len(pattern):
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out) + r"\Z")


def branch_matches(branch: str, pattern: str) -> bool:
    if branch == pattern:
        return True
    return _compile(pattern).match(branch) is not None


def _filter_allows(branch: str, patterns: Sequence[str]) -> bool:
    # Patterns are applied in order; a "!pattern" un-matches what came before.
    allowed = False
    for p in patterns:
        if p.startswith("!"):
            if branch_matches(branch, p[1:]):
                allowed = False
        elif branch_matches(branch, p):
            allowed = True
    return allowed


def rule_matches(event: Event, rule: TriggerRule) -> bool:
    if rule.event != event.kind:
        return False
    if rule.branches is not None and not _filter_allows(event.branch, rule.branches):
        return False
    if rule.branches_ignore is not None and any(
        branch_matches(event.branch, p) for p in rule.branches_ignore
    ):
        return False
    return True


def evaluate(event: Event, rules: Iterable[TriggerRule]) -> bool:
    """
    True if any rule accepts the event.

    Pure: no I/O, no state. A False result is a no-run outcome, not an error.
    """
    return any(rule_matches(event, r) for r in rules)
