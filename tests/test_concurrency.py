import threading

import pytest

from gateci.concurrency import ConcurrencyGroups, resolve_group_key
from gateci.model import EventKind, RunContext
from gateci.runner import Run


def test_acquire_transfers_token_and_signals_previous():
    groups = ConcurrencyGroups()
    old, new = Run("old"), Run("new")

    assert groups.acquire("CI-main", old) is None
    assert groups.holder("CI-main") is old

    superseded = groups.acquire("CI-main", new)
    assert superseded is old
    assert groups.holder("CI-main") is new
    assert groups.active() == {"CI-main": "new"}
    assert old.cancelled
    assert "superseded by run new" in old.cancel_reason
    assert not new.cancelled


def test_release_only_by_holder():
    groups = ConcurrencyGroups()
    old, new = Run("old"), Run("new")
    groups.acquire("k", old)
    groups.acquire("k", new)

    # the superseded run finishing must not free the new run's token
    assert groups.release("k", old) is False
    assert groups.holder("k") is new
    assert groups.release("k", new) is True
    assert groups.holder("k") is None


def test_different_keys_do_not_interact():
    groups = ConcurrencyGroups()
    a, b = Run("a"), Run("b")
    groups.acquire("pr-1", a)
    groups.acquire("pr-2", b)
    assert not a.cancelled and not b.cancelled


def test_concurrent_acquires_leave_exactly_one_holder():
    groups = ConcurrencyGroups()
    runs = [Run(f"r{i}") for i in range(16)]
    barrier = threading.Barrier(len(runs))

    def take(run):
        barrier.wait()
        groups.acquire("hot", run)

    threads = [threading.Thread(target=take, args=(r,)) for r in runs]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    holder = groups.holder("hot")
    assert holder in runs
    assert not holder.cancelled
    assert sum(1 for r in runs if not r.cancelled) == 1


def test_wait_mode_times_out_while_held():
    groups = ConcurrencyGroups()
    groups.acquire("deploy", Run("a"), cancel_in_progress=False)
    with pytest.raises(TimeoutError):
        groups.acquire("deploy", Run("b"), cancel_in_progress=False, timeout=0.05)


@pytest.mark.parametrize(
    "ctx,expected",
    [
        (RunContext(event=EventKind.PULL_REQUEST, ref="refs/pull/9/merge", pr_number=9, workflow="CI"), "CI-9"),
        (RunContext(event=EventKind.PUSH, ref="refs/heads/master", workflow="CI"), "CI-refs/heads/master"),
    ],
)
def test_group_key_templates(ctx, expected):
    assert resolve_group_key("${{ workflow }}-${{ pr_number || ref }}", ctx) == expected
    github_style = "${{ github.workflow }}-${{ github.event.pull_request.number || github.ref }}"
    assert resolve_group_key(github_style, ctx) == expected
