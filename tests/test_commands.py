import os
import threading
import time

import pytest

from gateci.commands import ShellRunner, StopSignal, hint_for
from gateci.dsl import job, sh
from gateci.matrix import expand

pytestmark = pytest.mark.skipif(os.name != "posix", reason="uses POSIX shell commands")


def _instance(*steps, env=None):
    (inst,) = expand(job("j", *steps, env=env or {}))
    return inst


def test_all_steps_succeed(tmp_path):
    runner = ShellRunner(tmp_path)
    result = runner(_instance(sh("one", "echo one > out.txt"), sh("two", "cat out.txt")), StopSignal())
    assert result.exit_code == 0
    assert (tmp_path / "out.txt").read_text().strip() == "one"


def test_first_failing_step_stops_the_job(tmp_path):
    runner = ShellRunner(tmp_path)
    inst = _instance(sh("ok", "true"), sh("broken", "echo boom; exit 3"), sh("never", "touch never.txt"))
    result = runner(inst, StopSignal())

    assert result.exit_code == 3
    assert result.step == "broken"
    assert "boom" in result.output
    assert not (tmp_path / "never.txt").exists()


def test_instance_env_is_passed(tmp_path):
    runner = ShellRunner(tmp_path)
    inst = _instance(sh("env", 'test "$GREETING" = hello'), env={"GREETING": "hello"})
    assert runner(inst, StopSignal()).exit_code == 0


def test_missing_cwd_raises(tmp_path):
    runner = ShellRunner(tmp_path)
    with pytest.raises(FileNotFoundError):
        runner(_instance(sh("x", "true", cwd="does-not-exist")), StopSignal())


def test_stop_signal_terminates_running_step(tmp_path):
    runner = ShellRunner(tmp_path, poll_interval=0.02, kill_grace=1.0)
    stop = StopSignal()
    threading.Timer(0.2, stop.set, args=("timeout",)).start()

    started = time.monotonic()
    result = runner(_instance(sh("sleep", "sleep 30")), stop)

    assert time.monotonic() - started < 10
    assert result.exit_code != 0


def test_stop_before_start_runs_nothing(tmp_path):
    stop = StopSignal()
    stop.set("cancelled")
    result = ShellRunner(tmp_path)(_instance(sh("touch", "touch ran.txt")), stop)
    assert result.exit_code != 0
    assert not (tmp_path / "ran.txt").exists()


def test_stop_signal_keeps_first_reason():
    stop = StopSignal()
    stop.set("timeout")
    stop.set("cancelled")
    assert stop.is_set() and stop.reason == "timeout"


def test_hints_only_for_command_not_found():
    assert hint_for("cargo test", 127) == "Install Rust (rustup) or fix PATH."
    assert hint_for("cargo test", 1) is None
    assert hint_for("unknown-tool", 127) is None
