import os

import pytest
from click.testing import CliRunner

from gateci.cli import cli

pytestmark = pytest.mark.skipif(os.name != "posix", reason="runs POSIX shell commands")

PIPELINE = """
name: demo
jobs:
  build:
    run: echo building
  test:
    needs: build
    matrix:
      shard: [1, 2]
    run: "echo shard ${{ matrix.shard }}"
  publish:
    needs: test
    if: "event == 'release'"
    run: echo publishing
"""


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("GATECI_WORKFLOW", raising=False)
    return tmp_path


def _invoke(*args):
    return CliRunner().invoke(cli, list(args), catch_exceptions=False)


def test_run_succeeds_and_skips_publish(workspace):
    (workspace / "gateci.yml").write_text(PIPELINE)
    result = _invoke("run", "--event", "push", "--ref", "refs/heads/main")

    assert result.exit_code == 0
    assert "build: SUCCESS" in result.output
    assert "test[shard=2]: SUCCESS" in result.output
    assert "publish: SKIPPED" in result.output
    assert "RUN SUCCEEDED" in result.output


def test_release_runs_publish(workspace):
    (workspace / "gateci.yml").write_text(PIPELINE)
    result = _invoke("--quiet", "run", "--event", "release", "--action", "published", "--ref", "refs/tags/v1")
    assert result.exit_code == 0
    assert "publish: SUCCESS" in result.output


def test_failing_job_exits_one(workspace):
    (workspace / "ci.yml").write_text(PIPELINE.replace("echo building", "exit 7"))
    result = _invoke("run", "--workflow", "ci.yml", "--event", "push", "--ref", "refs/heads/main")

    assert result.exit_code == 1
    assert "build: FAILED" in result.output
    assert "test[shard=1]: SKIPPED" in result.output
    assert "RUN FAILED" in result.output


def test_invalid_definition_exits_three(workspace):
    (workspace / "ci.yml").write_text("jobs:\n  a:\n    run: x\n    needs: missing\n")
    assert _invoke("run", "--workflow", "ci.yml").exit_code == 3
    assert _invoke("plan", "--workflow", "ci.yml").exit_code == 3


def test_missing_workflow_exits_three(workspace):
    assert _invoke("run").exit_code == 3
    assert _invoke("run", "--workflow", "nope.yml").exit_code == 3


def test_plan_prints_stages(workspace):
    (workspace / "gateci.yml").write_text(PIPELINE)
    result = _invoke("plan")

    assert result.exit_code == 0
    assert "Stage 1:\n  build" in result.output
    assert "Stage 2:\n  test[shard=1]\n  test[shard=2]" in result.output
    assert "Stage 3:\n  publish" in result.output


def test_workflow_from_environment(workspace, monkeypatch):
    (workspace / "pipelines.yml").write_text(PIPELINE)
    monkeypatch.setenv("GATECI_WORKFLOW", "pipelines.yml")
    assert _invoke("plan").exit_code == 0


@pytest.mark.parametrize("name,value", [("GATECI_MAX_WORKERS", "many"), ("GATECI_CANCEL_GRACE", "soon")])
def test_bad_setting_exits_three(workspace, monkeypatch, name, value):
    (workspace / "gateci.yml").write_text(PIPELINE)
    monkeypatch.setenv(name, value)
    result = _invoke("run", "--event", "push", "--ref", "refs/heads/main")
    assert result.exit_code == 3
    assert "build: SUCCESS" not in result.output
