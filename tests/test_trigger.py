"""Unit tests for trigger matching."""

from __future__ import annotations

import pytest

from flowci.model import Event, EventKind, TriggerRule
from flowci.trigger import branch_matches, evaluate


PUSH_MASTER = TriggerRule(event=EventKind.PUSH, branches=("master",))
PR_MASTER = TriggerRule(event=EventKind.PULL_REQUEST, branches=("master",))


def push(branch: str) -> Event:
    return Event(kind=EventKind.PUSH, branch=branch, ref="deadbeef")


def pull_request(branch: str) -> Event:
    return Event(kind=EventKind.PULL_REQUEST, branch=branch, ref="deadbeef")


class TestEvaluate:
    """Tests for evaluate()."""

    def test_push_to_master_matches(self):
        """Push to master matches a push/master rule."""
        assert evaluate(push("master"), [PUSH_MASTER]) is True

    def test_push_to_other_branch_does_not_match(self):
        """Push to dev does not match a push/master rule."""
        assert evaluate(push("dev"), [PUSH_MASTER]) is False

    def test_event_kind_must_match(self):
        """A pull_request rule never matches a push."""
        assert evaluate(push("master"), [PR_MASTER]) is False
        assert evaluate(pull_request("master"), [PR_MASTER]) is True

    def test_any_rule_is_enough(self):
        """The rule list matches when any one rule matches."""
        rules = [PR_MASTER, PUSH_MASTER]
        assert evaluate(push("master"), rules) is True
        assert evaluate(pull_request("master"), rules) is True

    def test_no_rules_never_match(self):
        """An empty rule set starts nothing."""
        assert evaluate(push("master"), []) is False

    def test_rule_without_branch_filter_matches_every_branch(self):
        """branches=None means any branch."""
        rule = TriggerRule(event=EventKind.PUSH)
        assert evaluate(push("feature/x"), [rule]) is True

    def test_empty_branch_list_matches_nothing(self):
        """An explicit empty branch list filters everything out."""
        rule = TriggerRule(event=EventKind.PUSH, branches=())
        assert evaluate(push("master"), [rule]) is False

    def test_branches_ignore(self):
        """branches_ignore excludes matching branches."""
        rule = TriggerRule(event=EventKind.PUSH, branches_ignore=("dependabot/**",))
        assert evaluate(push("master"), [rule]) is True
        assert evaluate(push("dependabot/cargo/serde-1.0"), [rule]) is False

    def test_negated_pattern_unmatches(self):
        """A later '!' pattern removes branches an earlier pattern admitted."""
        rule = TriggerRule(event=EventKind.PUSH, branches=("release/*", "!release/old"))
        assert evaluate(push("release/v2"), [rule]) is True
        assert evaluate(push("release/old"), [rule]) is False

    def test_deterministic(self):
        """Repeated calls with the same inputs give the same answer."""
        rules = [PUSH_MASTER, TriggerRule(event=EventKind.PUSH, branches=("feat-*",))]
        for branch in ("master", "dev", "feat-1", "feat/1"):
            first = evaluate(push(branch), rules)
            assert all(evaluate(push(branch), rules) == first for _ in range(5))

    def test_inputs_are_not_mutated(self):
        """evaluate() leaves the event and rules untouched."""
        event = push("master")
        rules = [PUSH_MASTER]
        evaluate(event, rules)
        assert event == push("master")
        assert rules == [PUSH_MASTER]


class TestBranchMatches:
    """Tests for branch glob patterns."""

    @pytest.mark.parametrize(
        "branch,pattern,expected",
        [
            ("master", "master", True),
            ("master", "main", False),
            ("feat-1", "feat-*", True),
            ("feat/1", "feat-*", False),
            ("release/v1", "release/*", True),
            ("release/v1/hotfix", "release/*", False),
            ("release/v1/hotfix", "release/**", True),
            ("v1", "v?", True),
            ("v10", "v?", False),
            ("a.b", "a.b", True),
            ("axb", "a.b", False),
        ],
    )
    def test_patterns(self, branch, pattern, expected):
        """Literal, single-level and multi-level globs."""
        assert branch_matches(branch, pattern) is expected
