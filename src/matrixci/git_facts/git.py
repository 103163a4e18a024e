# git.py
# Small, focused wrapper around the Git CLI.
# Trigger events built from a local checkout get their branch and changed
# paths from here; nothing else in matrixci shells out to git directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero.
        FileNotFoundError: git is not installed.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def _lines(out: str) -> List[str]:
    return out.splitlines() if out else []


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def current_branch(cwd: Optional[str | Path] = None) -> str:
    """
    Name of the checked-out branch.

    On a detached HEAD this falls back to the commit SHA, which will not
    match any branch pattern, so branch-filtered triggers reject it.
    """
    name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if name == "HEAD":
        return head_sha(cwd=cwd)
    return name


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Full SHA hash of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def is_dirty(cwd: Optional[str | Path] = None) -> bool:
    """
    Check whether the working tree has uncommitted changes
    (modified, staged or untracked files).
    """
    # `git status --porcelain` prints nothing at all for a clean tree.
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def working_tree_changes(cwd: Optional[str | Path] = None) -> List[str]:
    """Unstaged + staged + untracked paths, relative to the repo root."""
    files = set()
    files.update(_lines(_git(["diff", "--name-only"], cwd=cwd)))
    files.update(_lines(_git(["diff", "--name-only", "--cached"], cwd=cwd)))
    files.update(_lines(_git(["ls-files", "--others", "--exclude-standard"], cwd=cwd)))
    return sorted(files)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str | Path] = None) -> List[str]:
    """
    Files changed between two Git references, relative to the repo root.

    Typical usage:
        base = merge_base("origin/main")
        files = changed_files(base)
    """
    return _lines(_git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd))


def tracked_files(cwd: Optional[str | Path] = None) -> List[str]:
    return _lines(_git(["ls-files"], cwd=cwd))


def merge_base(with_ref: str = "origin/main", cwd: Optional[str | Path] = None) -> str:
    """
    Merge-base (common ancestor) between HEAD and another ref: the point
    where the current branch diverged from `with_ref`.
    """
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)
