# commands.py
# Command execution boundary. The scheduler hands each job instance to a
# CommandRunner and only looks at the exit status it returns.

from __future__ import annotations

import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from .model import JobInstance
from .ui.console import get_console


class StopSignal:
    """
    Cooperative stop request for one running instance.

    Set by the scheduler on timeout or cancellation. Runners poll it (or
    wait on it) and terminate their work when it fires.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def set(self, reason: str) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


@dataclass
class CommandResult:
    exit_code: int
    step: str | None = None
    output: str = ""


CommandRunner = Callable[[JobInstance, StopSignal], Union[int, CommandResult]]


TOOL_HINTS = {
    "cargo": "Install Rust (rustup) or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
}


def hint_for(cmd: str, exit_code: int) -> Optional[str]:
    """Shell exit 127 means command not found."""
    if exit_code != 127:
        return None
    tool = cmd.strip().split(" ", 1)[0] if cmd.strip() else ""
    return TOOL_HINTS.get(tool)


class ShellRunner:
    """
    Runs an instance's steps one after another with `sh -c`.

    The first non-zero exit stops the job. On a stop signal the current
    process group gets SIGTERM, then SIGKILL after `kill_grace` seconds.
    """

    def __init__(
        self,
        repo_root: str | Path = ".",
        *,
        poll_interval: float = 0.1,
        kill_grace: float = 5.0,
        output_tail: int = 4000,
    ):
        self.repo_root = Path(repo_root).resolve()
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace
        self.output_tail = output_tail

    def __call__(self, instance: JobInstance, stop: StopSignal) -> CommandResult:
        console = get_console()
        env = os.environ.copy()
        env.update(instance.env_dict)

        for step in instance.steps:
            if stop.is_set():
                return CommandResult(exit_code=-1, step=step.name)

            cwd = (self.repo_root / (step.cwd or ".")).resolve()
            if not cwd.exists():
                raise FileNotFoundError(f"[{instance.id}] step '{step.name}' cwd not found: {cwd}")

            console.print_step(instance.id, step.name)
            code, output = self._run_step(step.run, cwd, env, stop)
            if code != 0:
                hint = hint_for(step.run, code)
                if hint:
                    output = f"{output}\nHint: {hint}".lstrip()
                return CommandResult(exit_code=code, step=step.name, output=output)

        return CommandResult(exit_code=0)

    def _run_step(self, cmd: str, cwd: Path, env: dict, stop: StopSignal) -> tuple[int, str]:
        proc = subprocess.Popen(
            cmd,
            shell=True,
            cwd=str(cwd),
            env=env,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=(os.name == "posix"),
        )
        chunks: list[str] = []
        while True:
            try:
                out, _ = proc.communicate(timeout=self.poll_interval)
                if out:
                    chunks.append(out)
                break
            except subprocess.TimeoutExpired:
                if stop.is_set():
                    self._terminate(proc)
                    out, _ = proc.communicate()
                    if out:
                        chunks.append(out)
                    break
        output = "".join(chunks)
        return proc.returncode, output[-self.output_tail:]

    def _terminate(self, proc: subprocess.Popen) -> None:
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace)
        except subprocess.TimeoutExpired:
            self._signal(proc, signal.SIGKILL if os.name == "posix" else signal.SIGTERM)

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass
