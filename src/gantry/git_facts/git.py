# git.py
# Small wrapper around the Git CLI. Used to fill in trigger metadata
# (ref, sha, actor) when the caller does not pass it explicitly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero (e.g. not a repository)
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA of the HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd)


def current_ref(cwd: Optional[str | Path] = None) -> str:
    """
    Fully qualified ref of HEAD: refs/heads/<branch>, or the exact tag
    (refs/tags/<tag>) on a detached HEAD, or the bare SHA as a last resort.
    """
    try:
        return _git(["symbolic-ref", "-q", "HEAD"], cwd)
    except subprocess.CalledProcessError:
        pass
    try:
        return "refs/tags/" + _git(["describe", "--tags", "--exact-match"], cwd)
    except subprocess.CalledProcessError:
        return head_sha(cwd)


def actor(cwd: Optional[str | Path] = None) -> str:
    """Configured user.name, or "" if unset."""
    try:
        return _git(["config", "user.name"], cwd)
    except subprocess.CalledProcessError:
        return ""
