# git.py
# Small, focused wrapper around the Git CLI.
# The CLI uses it to fill in a default run context (ref, sha) when the
# caller does not pass one explicitly.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.
    """
    # A non-zero exit raises CalledProcessError; callers decide how to fall back.
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str] = None) -> str:
    """Full SHA of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_current_ref(cwd: Optional[str] = None) -> str:
    """
    Return the current ref in fully qualified form.

    On a branch this is `refs/heads/<branch>`. On a detached HEAD that
    sits exactly on a tag it is `refs/tags/<tag>`; otherwise the bare SHA.
    """
    # `symbolic-ref` fails on a detached HEAD
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd=cwd)
    except subprocess.CalledProcessError:
        pass

    try:
        tag = _git(["describe", "--tags", "--exact-match", "HEAD"], cwd=cwd)
        return f"refs/tags/{tag}"
    except subprocess.CalledProcessError:
        return head_sha(cwd=cwd)


def get_remote_url(remote: str = "origin", cwd: Optional[str] = None) -> str:
    """URL configured for `remote`."""
    return _git(["remote", "get-url", remote], cwd=cwd)
