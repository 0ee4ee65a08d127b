# git.py
# Small, focused wrapper around the Git CLI.
# The CLI uses it to default the trigger branch and to label a run with its
# commit when no event is passed explicitly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this
    file. If git exits with a non-zero status, CalledProcessError is raised;
    a missing git binary raises FileNotFoundError.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,   # return output as str instead of bytes
        stderr=subprocess.DEVNULL,
    )

    # Strip trailing newlines so callers can do clean string comparisons
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """
    Return the absolute path to the root of the current Git repository.

    Returns:
        Path object pointing to the repository root directory.
    """
    # `git rev-parse --show-toplevel` prints the repo root directory
    # regardless of where the command is run from inside the repo.
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """
    Return the full SHA hash of the current HEAD commit.

    Returns:
        Full commit SHA as a string.
    """
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """
    Return the checked-out branch name, or None on a detached HEAD.

    This is what a local `pipegate run` treats as the pushed branch when no
    --branch is given.
    """
    # `--abbrev-ref HEAD` prints "HEAD" when detached
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    return None if name == "HEAD" else name
