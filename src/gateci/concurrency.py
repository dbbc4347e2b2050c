# concurrency.py
from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol

from .expressions import interpolate
from .model import RunContext


class Cancellable(Protocol):
    run_id: str

    def cancel(self, reason: str = ...) -> None: ...


def resolve_group_key(template: str, context: RunContext) -> str:
    """
    Render a concurrency group template against the run context, e.g.
    "${{ workflow }}-${{ pr_number || ref }}" -> "CI-refs/heads/master".
    Both bare names and `github.`-prefixed names are accepted.
    """
    scope = context.as_scope()
    scope["github"] = dict(scope, event={"pull_request": {"number": scope["pr_number"]}, "action": scope["action"]})
    return interpolate(template, scope)


class ConcurrencyGroups:
    """
    At most one run token per group key.

    A new run acquiring a held key supersedes the holder: the holder is sent
    a cancellation signal (non-blocking) and the token moves to the new run
    in the same critical section. Runs under different keys never interact.
    """

    def __init__(self) -> None:
        self._holders: Dict[str, Cancellable] = {}
        self._cond = threading.Condition()

    def acquire(
        self,
        key: str,
        run: Cancellable,
        *,
        cancel_in_progress: bool = True,
        timeout: float | None = None,
    ) -> Optional[Cancellable]:
        """
        Take the token for `key`.

        Returns the superseded run, if any. With cancel_in_progress=False the
        call instead waits for the current holder to release; it raises
        TimeoutError if `timeout` elapses first.
        """
        with self._cond:
            if not cancel_in_progress:
                free = self._cond.wait_for(lambda: key not in self._holders, timeout=timeout)
                if not free:
                    raise TimeoutError(f"concurrency group {key!r} still held by {self._holders[key].run_id}")
            previous = self._holders.get(key)
            self._holders[key] = run
        # signal outside the lock; cancel() only sets flags and posts a message
        if previous is not None and previous is not run:
            previous.cancel(f"superseded by run {run.run_id} in group {key!r}")
            return previous
        return None

    def release(self, key: str, run: Cancellable) -> bool:
        """Free `key` if `run` still holds it."""
        with self._cond:
            if self._holders.get(key) is run:
                del self._holders[key]
                self._cond.notify_all()
                return True
            return False

    def holder(self, key: str) -> Optional[Cancellable]:
        with self._cond:
            return self._holders.get(key)

    def active(self) -> Dict[str, str]:
        with self._cond:
            return {k: r.run_id for k, r in self._holders.items()}
