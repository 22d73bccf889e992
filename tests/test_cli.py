"""CLI tests driven through click's CliRunner."""

from __future__ import annotations

import json
import shutil
import subprocess
import textwrap

import pytest
from click.testing import CliRunner

from flowci.cache import FileCacheStore
from flowci.cli import cli


PIPELINE = textwrap.dedent(
    """
    name: CI
    on:
      push:
        branches: [master]
    jobs:
      rustfmt:
        steps:
          - name: Check formatting
            run: {fmt}
      test:
        steps:
          - name: Run Tests
            run: "true"
    """
)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def write_pipeline(tmp_path):
    def _write(fmt: str = "'true'", text: str | None = None):
        path = tmp_path / "ci.yml"
        path.write_text(text if text is not None else PIPELINE.format(fmt=fmt), encoding="utf-8")
        return str(path)

    return _write


def run_args(tmp_path, definition, *extra):
    return [
        "run",
        "--definition", definition,
        "--workspace", str(tmp_path),
        "--cache-dir", str(tmp_path / "cache"),
        "--branch", "master",
        "--ref", "abc123",
        *extra,
    ]


class TestRun:
    def test_success_exits_zero(self, runner, tmp_path, write_pipeline):
        result = runner.invoke(cli, run_args(tmp_path, write_pipeline()))
        assert result.exit_code == 0, result.output
        assert "PIPELINE: SUCCESS" in result.output

    def test_failed_job_exits_one(self, runner, tmp_path, write_pipeline):
        result = runner.invoke(cli, run_args(tmp_path, write_pipeline(fmt="'echo Diff in lib.rs; exit 1'")))
        assert result.exit_code == 1
        assert "failed step: Check formatting" in result.output
        assert "Diff in lib.rs" in result.output

    def test_json_report(self, runner, tmp_path, write_pipeline):
        result = runner.invoke(
            cli, ["--quiet", *run_args(tmp_path, write_pipeline(fmt="'exit 1'"), "--json")]
        )
        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["status"] == "failed"
        assert {j["name"]: j["status"] for j in data["jobs"]} == {"rustfmt": "failed", "test": "succeeded"}

    def test_untriggered_branch_exits_zero(self, runner, tmp_path, write_pipeline):
        args = run_args(tmp_path, write_pipeline(fmt="'touch ran'"))
        args[args.index("master")] = "dev"
        result = runner.invoke(cli, ["--quiet", *args, "--json"])
        assert result.exit_code == 0
        assert json.loads(result.output) == {"triggered": False}
        assert not (tmp_path / "ran").exists()

    def test_invalid_definition_exits_three(self, runner, tmp_path, write_pipeline):
        path = write_pipeline(text="on: push\njobs:\n  a:\n    needs: b\n    steps:\n      - run: 'true'\n")
        result = runner.invoke(cli, run_args(tmp_path, path, "--json"))
        assert result.exit_code == 3
        assert '"exit_code": 3' in result.output

    def test_missing_definition_exits_three(self, runner, tmp_path):
        result = runner.invoke(cli, run_args(tmp_path, str(tmp_path / "missing.yml")))
        assert result.exit_code == 3
        assert "Invalid pipeline definition" in result.output


class TestCheck:
    def test_lists_jobs_and_steps(self, runner, write_pipeline):
        result = runner.invoke(cli, ["check", "--definition", write_pipeline()])
        assert result.exit_code == 0, result.output
        assert "on push: master" in result.output
        assert "job rustfmt: 1 step(s)" in result.output
        assert "- Run Tests [run-command]" in result.output

    def test_evaluates_trigger(self, runner, write_pipeline):
        path = write_pipeline()
        hit = runner.invoke(cli, ["check", "-d", path, "--event", "push", "--branch", "master"])
        miss = runner.invoke(cli, ["check", "-d", path, "--event", "pull_request", "--branch", "master"])
        assert "would run" in hit.output
        assert "would not run" in miss.output

    def test_event_requires_branch(self, runner, write_pipeline):
        result = runner.invoke(cli, ["check", "-d", write_pipeline(), "--event", "push"])
        assert result.exit_code == 2


class TestCacheCommands:
    def test_ls_and_prune(self, runner, tmp_path):
        cache_dir = tmp_path / "cache"
        store = FileCacheStore(cache_dir)
        for i in range(4):
            store.put(f"test/k{i}", b"x")

        listed = runner.invoke(cli, ["cache", "ls", "--cache-dir", str(cache_dir)])
        assert sorted(listed.output.split()) == ["test/k0", "test/k1", "test/k2", "test/k3"]

        pruned = runner.invoke(cli, ["cache", "prune", "--cache-dir", str(cache_dir), "--keep", "1"])
        assert pruned.exit_code == 0
        assert "Removed 3 cache entries" in pruned.output
        assert len(store.entries()) == 1


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestServe:
    @pytest.fixture
    def served(self, monkeypatch):
        """Replace uvicorn.run; returns the list of apps it was asked to serve."""
        import uvicorn

        apps = []
        monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: apps.append(app))
        return apps

    @pytest.fixture
    def checkout_dir(self, tmp_path, monkeypatch):
        repo = tmp_path / "checkout"
        repo.mkdir()
        subprocess.run(["git", "init", "-q"], cwd=repo, check=True, capture_output=True)
        monkeypatch.chdir(repo)
        return repo

    def test_repo_defaults_to_origin(self, runner, write_pipeline, served, checkout_dir):
        subprocess.run(
            ["git", "remote", "add", "origin", "https://example.invalid/ci.git"],
            cwd=checkout_dir, check=True, capture_output=True,
        )
        result = runner.invoke(cli, ["serve", "-d", write_pipeline(), "--work-dir", str(checkout_dir / "work")])
        assert result.exit_code == 0, result.output
        assert "Cloning https://example.invalid/ci.git for every run" in result.output
        assert len(served) == 1

    def test_no_origin_exits_one(self, runner, write_pipeline, served, checkout_dir):
        result = runner.invoke(cli, ["serve", "-d", write_pipeline()])
        assert result.exit_code == 1
        assert "Could not determine the repository to clone" in result.output
        assert served == []
