# git.py
# Thin wrapper around the Git CLI. Event triggers are built from these facts;
# nothing else in relm calls git directly.

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

from ..model import Trigger, TriggerKind


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Every other function in this module goes through here, so git is always
    invoked the same way and always yields text.

    Args:
        args: git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory to run git in. Needed when the
             caller is not already inside the checkout.

    Returns:
        Stdout with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero. stderr is
        captured on the exception for the CLI to show.
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.PIPE,
    )
    return out.strip()


def repo_root(cwd: Optional[str] = None) -> Path:
    """
    Return the absolute path to the root of the repository.

    Args:
        cwd: Any directory inside the checkout.

    Returns:
        Path of the top-level directory, as git reports it.
    """
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str] = None) -> str:
    """
    Return the full SHA of the HEAD commit.

    Recorded on every event trigger so a pipeline run can be traced back to
    the commit it built.

    Returns:
        40-character commit SHA.
    """
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def current_ref(cwd: Optional[str] = None) -> str:
    """
    Return the checked-out branch name.

    Returns:
        The branch name, or the HEAD SHA when HEAD is detached (CI systems
        often check out a bare commit).
    """
    ref = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    if ref == "HEAD":
        return head_sha(cwd=cwd)
    return ref


def is_dirty(cwd: Optional[str] = None) -> bool:
    """
    Check whether the working tree has uncommitted changes.

    Returns:
        True if there are modified, staged or untracked files.
    """
    return _git(["status", "--porcelain"], cwd=cwd) != ""


def merge_base(with_ref: str = "origin/main", cwd: Optional[str] = None) -> str:
    """
    Return the common ancestor of HEAD and `with_ref`.

    This is the point where the current branch diverged, so diffing from it
    gives exactly the changes the branch introduced.

    Args:
        with_ref: Ref to compare against, usually the main branch.
        cwd: Optional working directory inside the checkout.

    Returns:
        SHA of the merge-base commit.
    """
    return _git(["merge-base", "HEAD", with_ref], cwd=cwd)


def changed_files(base: str, head: str = "HEAD", cwd: Optional[str] = None) -> List[str]:
    """
    List files changed between two refs.

    Typical usage:
        files = changed_files(merge_base("origin/main"))

    Args:
        base: Starting ref or SHA.
        head: Ending ref, HEAD by default.
        cwd: Optional working directory inside the checkout.

    Returns:
        Paths relative to the repository root, in git's order.
    """
    out = _git(["diff", "--name-only", f"{base}..{head}"], cwd=cwd)
    return out.splitlines() if out else []


def uncommitted_files(cwd: Optional[str] = None) -> List[str]:
    """
    List tracked files with uncommitted changes, staged or not.

    Untracked files are not included; `git add` them to make them count.

    Returns:
        Paths relative to the repository root.
    """
    out = _git(["diff", "--name-only", "HEAD"], cwd=cwd)
    return out.splitlines() if out else []


def event_trigger(compare_ref: str = "origin/main", *, cwd: Optional[str] = None, actor: Optional[str] = None) -> Trigger:
    """
    Build an event trigger for the current checkout.

    Args:
        compare_ref: Ref whose merge-base with HEAD marks the start of the
                     change set.
        cwd: Optional working directory inside the checkout.
        actor: Who caused the event, kept on the trigger for display.

    Returns:
        Trigger whose changed files are the branch's committed changes
        followed by any uncommitted edits to tracked files.
    """
    base = merge_base(compare_ref, cwd=cwd)
    files = changed_files(base, cwd=cwd)
    if is_dirty(cwd=cwd):
        files.extend(f for f in uncommitted_files(cwd=cwd) if f not in files)
    return Trigger(
        kind=TriggerKind.EVENT,
        ref=current_ref(cwd=cwd),
        sha=head_sha(cwd=cwd),
        changed_files=tuple(files),
        actor=actor,
    )
