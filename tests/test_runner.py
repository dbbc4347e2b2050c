import random

import pytest

from gateci.dag import build_graph
from gateci.dsl import job, matrix, pipeline, sh
from gateci.errors import CancellationError, CyclicDependency, InstanceFailure
from gateci.model import EventKind, Outcome, RunContext, RunStatus
from gateci.runner import Run, Scheduler, run_pipeline
from gateci.triggers import TriggerRule, action, event

PUSH = RunContext(event=EventKind.PUSH, ref="refs/heads/master", workflow="CI")
RELEASE = RunContext(event=EventKind.RELEASE, ref="refs/tags/v1.0.0", action="published", workflow="CI")


def test_push_skips_publish_and_succeeds(ci_pipeline, fake_runner):
    runner = fake_runner()
    result = run_pipeline(ci_pipeline(), PUSH, runner=runner, max_workers=4)

    assert result.status == RunStatus.SUCCEEDED
    assert result.exit_code == 0
    assert result.outcomes() == {
        "fmt": Outcome.SUCCEEDED,
        "lint": Outcome.SUCCEEDED,
        "verify[x=1]": Outcome.SUCCEEDED,
        "verify[x=2]": Outcome.SUCCEEDED,
        "gate": Outcome.SUCCEEDED,
        "publish": Outcome.SKIPPED,
    }
    assert "publish" not in runner.started
    assert "condition false" in result.results["publish"].reason


def test_release_runs_publish(ci_pipeline, fake_runner):
    runner = fake_runner()
    result = run_pipeline(ci_pipeline(), RELEASE, runner=runner)

    assert result.status == RunStatus.SUCCEEDED
    assert result.outcome("publish") == Outcome.SUCCEEDED
    assert runner.started[-1] == "publish"


def test_failed_matrix_instance_skips_gate_and_publish(ci_pipeline, fake_runner):
    runner = fake_runner(exit_codes={"verify[x=1]": 101}, delays={"verify[x=2]": 0.05})
    result = run_pipeline(ci_pipeline(), RELEASE, runner=runner, max_workers=4)

    assert result.status == RunStatus.FAILED
    assert result.exit_code == 1
    assert result.outcome("verify[x=1]") == Outcome.FAILED
    assert result.outcome("verify[x=2]") == Outcome.SUCCEEDED
    assert result.outcome("gate") == Outcome.SKIPPED
    assert result.outcome("publish") == Outcome.SKIPPED
    assert "verify[x=2]" in runner.finished
    assert "gate" not in runner.started
    assert "publish" not in runner.started

    failure = result.results["verify[x=1]"].error
    assert isinstance(failure, InstanceFailure)
    assert failure.exit_code == 101
    assert "verify[x=1]" in result.results["gate"].reason


def test_dependents_wait_for_every_matrix_instance(ci_pipeline, fake_runner):
    runner = fake_runner(delays={"verify[x=1]": 0.1})
    run_pipeline(ci_pipeline(), PUSH, runner=runner, max_workers=4)

    gate_at = runner.started.index("gate")
    assert runner.started.index("verify[x=1]") < gate_at
    assert runner.started.index("verify[x=2]") < gate_at


def test_continue_on_error_dependent_still_runs(fake_runner):
    p = pipeline(
        "p",
        job("build", sh("b", "make")),
        job("report", sh("r", "report"), needs=["build"], continue_on_error=True),
    )
    runner = fake_runner(exit_codes={"build": 2})
    result = run_pipeline(p, PUSH, runner=runner)

    assert result.outcome("build") == Outcome.FAILED
    assert result.outcome("report") == Outcome.SUCCEEDED
    # build is required, so the run still fails
    assert result.status == RunStatus.FAILED


def test_optional_failure_does_not_fail_run(fake_runner):
    p = pipeline(
        "p",
        job("check", sh("c", "cargo ${{ matrix.command }}"),
            matrix=matrix(include=[{"command": "check"}, {"command": "nightly", "skip-error": "true"}]),
            continue_on_error="skip-error"),
    )
    runner = fake_runner(exit_codes={"check[command=nightly, skip-error=true]": 1})
    result = run_pipeline(p, PUSH, runner=runner)

    assert result.outcome("check[command=nightly, skip-error=true]") == Outcome.FAILED
    assert result.outcome("check[command=check]") == Outcome.SUCCEEDED
    assert result.status == RunStatus.SUCCEEDED


def test_skipped_dependency_does_not_block(fake_runner):
    p = pipeline(
        "p",
        job("docs", sh("d", "mkdocs"), when=event("release")),
        job("after", sh("a", "true"), needs=["docs"]),
    )
    result = run_pipeline(p, PUSH, runner=fake_runner())
    assert result.outcome("docs") == Outcome.SKIPPED
    assert result.outcome("after") == Outcome.SUCCEEDED
    assert result.status == RunStatus.SUCCEEDED


def test_pipeline_trigger_false_skips_everything(ci_pipeline, fake_runner):
    p = ci_pipeline(on=[TriggerRule(EventKind.RELEASE, actions=("published",))])
    runner = fake_runner()
    result = run_pipeline(p, PUSH, runner=runner)

    assert result.status == RunStatus.SKIPPED
    assert result.exit_code == 0
    assert runner.started == []
    assert set(result.outcomes().values()) == {Outcome.SKIPPED}


def test_publish_requires_release_published(fake_runner):
    p = pipeline(
        "p",
        job("gate", sh("g", "echo pass")),
        job("publish", sh("p", "publish"), needs=["gate"], when=event("release") & action("published")),
    )
    created = RunContext(event=EventKind.RELEASE, action="created")
    assert run_pipeline(p, created, runner=fake_runner()).outcome("publish") == Outcome.SKIPPED
    assert run_pipeline(p, RELEASE, runner=fake_runner()).outcome("publish") == Outcome.SUCCEEDED


def test_timeout_settles_timed_out(fake_runner):
    p = pipeline(
        "p",
        job("slow", sh("s", "sleep 100"), timeout=0.1),
        job("after", sh("a", "true"), needs=["slow"]),
    )
    runner = fake_runner(blocking=["slow"])
    result = run_pipeline(p, PUSH, runner=runner, cancel_grace=5)

    assert result.outcome("slow") == Outcome.TIMED_OUT
    assert result.outcome("after") == Outcome.SKIPPED
    assert result.status == RunStatus.FAILED
    err = result.results["slow"].error
    assert isinstance(err, InstanceFailure) and err.timed_out


def test_timeout_forced_when_command_ignores_stop(fake_runner):
    p = pipeline("p", job("stuck", sh("s", "sleep"), timeout=0.05))
    runner = fake_runner(stubborn=["stuck"], delays={"stuck": 1.0})
    result = run_pipeline(p, PUSH, runner=runner, cancel_grace=0.05)

    assert result.outcome("stuck") == Outcome.TIMED_OUT
    assert "forced" in result.results["stuck"].reason


def test_runner_exception_is_a_failure(fake_runner):
    def boom(inst, stop):
        raise FileNotFoundError("cwd not found")

    p = pipeline("p", job("a", sh("a", "x")), job("b", sh("b", "y"), needs=["a"]))
    result = run_pipeline(p, PUSH, runner=boom)

    assert result.outcome("a") == Outcome.FAILED
    assert "cwd not found" in str(result.results["a"].error)
    assert result.outcome("b") == Outcome.SKIPPED


def test_cancel_before_start_cancels_everything(ci_pipeline, fake_runner):
    run = Run("r1")
    run.cancel("superseded")
    run.cancel("again")
    runner = fake_runner()
    result = run_pipeline(ci_pipeline(), PUSH, run=run, runner=runner)

    assert result.status == RunStatus.CANCELLED
    assert result.exit_code == 4
    assert runner.started == []
    assert all(isinstance(r.error, CancellationError) for r in result.results.values())
    assert result.results["fmt"].reason == "superseded"


def test_max_workers_bounds_parallelism(fake_runner):
    p = pipeline("p", *[job(f"j{i}", sh("s", "true")) for i in range(8)])
    runner = fake_runner(delays={f"j{i}": 0.02 for i in range(8)})
    result = run_pipeline(p, PUSH, runner=runner, max_workers=2)

    assert result.status == RunStatus.SUCCEEDED
    assert runner.max_parallel <= 2


def test_definition_errors_surface_before_dispatch(fake_runner):
    p = pipeline("p", job("a", sh("a", "x"), needs=["b"]), job("b", sh("b", "y"), needs=["a"]))
    runner = fake_runner()
    with pytest.raises(CyclicDependency):
        run_pipeline(p, PUSH, runner=runner)
    assert runner.started == []


def test_run_handle_receives_result(ci_pipeline, fake_runner):
    run = Run()
    result = run_pipeline(ci_pipeline(), PUSH, run=run, runner=fake_runner())
    assert run.done
    assert run.wait(0) is result


def _random_pipeline(rng: random.Random, n: int):
    jobs = []
    for i in range(n):
        needs = [f"j{k}" for k in range(i) if rng.random() < 0.3]
        m = matrix(v=[1, 2]) if rng.random() < 0.3 else None
        jobs.append(job(f"j{i}", sh("s", "true"), needs=needs, matrix=m,
                        continue_on_error=rng.random() < 0.2))
    rng.shuffle(jobs)
    return pipeline("fuzz", *jobs)


@pytest.mark.parametrize("seed", range(12))
def test_random_dags_never_start_before_dependencies_settle(seed, fake_runner):
    rng = random.Random(seed)
    p = _random_pipeline(rng, rng.randint(3, 12))
    graph = build_graph(p.jobs)
    deps = {
        graph.instances[i].id: [graph.instances[j].id for j in graph.deps[i]]
        for i in range(len(graph))
    }
    exit_codes = {iid: (1 if rng.random() < 0.15 else 0) for iid in deps}
    delays = {iid: rng.choice([0, 0.001, 0.005]) for iid in deps}
    runner = fake_runner(exit_codes=exit_codes, delays=delays, deps=deps)

    result = run_pipeline(p, PUSH, runner=runner, max_workers=rng.randint(1, 4))

    assert runner.violations == []
    assert set(result.results) == set(deps)
    for iid, dep_ids in deps.items():
        if iid in runner.started:
            for d in dep_ids:
                # every dependency is terminal and was either run to completion or never started
                assert d in result.results
                if d in runner.started:
                    assert d in runner.finished
                    assert runner.started.index(d) < runner.started.index(iid)
        for d in dep_ids:
            if result.outcome(d).is_failure and iid in runner.started:
                assert graph.instances[graph.index_of(iid)].continue_on_error


def test_scheduler_exposes_run_id(ci_pipeline, fake_runner):
    graph = build_graph(ci_pipeline().jobs)
    s = Scheduler(graph, PUSH, run=Run("abc"), runner=fake_runner())
    assert s.execute().run_id == "abc"


def test_abandoned_command_keeps_its_worker_slot(fake_runner):
    p = pipeline(
        "p",
        job("stuck", sh("s", "sleep"), timeout=0.1),
        job("quick", sh("q", "true"), timeout=0.4),
    )
    runner = fake_runner(stubborn=["stuck"], delays={"stuck": 0.6, "quick": 0.05})
    result = run_pipeline(p, PUSH, runner=runner, max_workers=1, cancel_grace=0.05)

    assert result.outcome("stuck") == Outcome.TIMED_OUT
    # quick only starts once the stuck thread frees the single worker
    assert result.outcome("quick") == Outcome.SUCCEEDED
    assert runner.started == ["stuck", "quick"]
