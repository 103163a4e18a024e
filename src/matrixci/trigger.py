# trigger.py
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import Iterable, Optional, Tuple

from .git_facts import git
from .model import TriggerEvent, TriggerKind


@dataclass(frozen=True)
class TriggerRule:
    """
    When an event of `kind` may start a run.

    branches:     glob patterns; empty means any branch
    paths_ignore: glob patterns; an event whose changed paths ALL match
                  is rejected (e.g. documentation-only changes)
    """
    kind: TriggerKind
    branches: Tuple[str, ...] = ()
    paths_ignore: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TriggerDecision:
    accepted: bool
    reason: str

    def __bool__(self) -> bool:
        return self.accepted


def _matches_any(value: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch(value, p) for p in patterns)


@dataclass(frozen=True)
class TriggerFilter:
    rules: Tuple[TriggerRule, ...]

    def rule_for(self, kind: TriggerKind) -> Optional[TriggerRule]:
        for rule in self.rules:
            if rule.kind == kind:
                return rule
        return None

    def decide(self, event: TriggerEvent) -> TriggerDecision:
        rule = self.rule_for(event.kind)
        if rule is None:
            return TriggerDecision(False, f"no trigger configured for {event.kind.value}")

        if rule.branches and not _matches_any(event.branch, rule.branches):
            return TriggerDecision(
                False, f"branch {event.branch!r} does not match {list(rule.branches)}"
            )

        # no changed paths (e.g. a merge proposal against an existing branch) -> path filters don't apply
        if not event.changed_paths:
            return TriggerDecision(True, "no changed paths")

        if rule.paths_ignore and all(_matches_any(p, rule.paths_ignore) for p in event.changed_paths):
            return TriggerDecision(
                False, f"all changed paths match paths_ignore {list(rule.paths_ignore)}"
            )

        return TriggerDecision(True, f"{event.kind.value} to {event.branch}")

    def accepts(self, event: TriggerEvent) -> bool:
        return self.decide(event).accepted


def any_event() -> TriggerFilter:
    """Filter used when a workflow declares no triggers: everything runs."""
    return TriggerFilter(rules=tuple(TriggerRule(kind=k) for k in TriggerKind))


def event_from_git(
    kind: TriggerKind = TriggerKind.PUSH,
    compare_ref: str = "origin/main",
    *,
    cwd: str | Path | None = None,
) -> TriggerEvent:
    """
    Build a TriggerEvent describing the local checkout.

    changed_paths:
      - dirty tree: staged + unstaged + untracked files
      - clean tree: files changed since the merge-base with compare_ref
        (falls back to HEAD~1, then to every tracked file on a first commit)
    """
    root = git.repo_root(cwd=cwd)
    branch = git.current_branch(cwd=root)

    if git.is_dirty(cwd=root):
        changed = git.working_tree_changes(cwd=root)
    else:
        try:
            base = git.merge_base(compare_ref, cwd=root)
        except subprocess.CalledProcessError:
            # no remote configured, unrelated histories, etc.
            base = "HEAD~1"
        try:
            changed = git.changed_files(base, "HEAD", cwd=root)
        except subprocess.CalledProcessError:
            changed = git.tracked_files(cwd=root)

    return TriggerEvent(kind=kind, branch=branch, changed_paths=frozenset(changed))
