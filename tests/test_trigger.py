import shutil
import subprocess

import pytest

from matrixci.dsl import on_merge_proposal, on_push, triggers
from matrixci.model import TriggerEvent, TriggerKind
from matrixci.trigger import any_event, event_from_git

CI = triggers(
    on_push(branches=["main"], paths_ignore=["README.md", "**.md"]),
    on_merge_proposal(branches=["main", "release/*"]),
)


def _push(*paths, branch="main"):
    return TriggerEvent(kind=TriggerKind.PUSH, branch=branch, changed_paths=frozenset(paths))


def test_readme_only_push_is_rejected():
    decision = CI.decide(_push("README.md"))
    assert not decision.accepted
    assert "paths_ignore" in decision.reason


def test_readme_plus_code_push_is_accepted():
    assert CI.accepts(_push("README.md", "src/lib.rs"))


def test_nested_markdown_is_ignored_too():
    assert not CI.accepts(_push("docs/guide/intro.md", "CHANGELOG.md"))


def test_branch_must_match():
    assert not CI.accepts(_push("src/lib.rs", branch="feature/x"))


def test_branch_globs():
    event = TriggerEvent(kind=TriggerKind.MERGE_PROPOSAL, branch="release/1.2", changed_paths=frozenset({"a"}))
    assert CI.accepts(event)


def test_zero_changed_paths_is_accepted_regardless_of_path_filters():
    assert CI.accepts(_push())


def test_kind_without_rule_is_rejected():
    only_push = triggers(on_push())
    event = TriggerEvent(kind=TriggerKind.MERGE_PROPOSAL, branch="main", changed_paths=frozenset({"a"}))
    decision = only_push.decide(event)
    assert not decision
    assert "merge_proposal" in decision.reason


@pytest.mark.parametrize("kind", list(TriggerKind))
def test_any_event_accepts_everything(kind):
    event = TriggerEvent(kind=kind, branch="whatever", changed_paths=frozenset({"README.md"}))
    assert any_event().accepts(event)


def _git(repo, *args):
    subprocess.run(
        ["git", "-c", "user.name=ci", "-c", "user.email=ci@example.com", *args],
        cwd=repo,
        check=True,
        capture_output=True,
    )


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_event_from_git_reads_branch_and_changes(tmp_path):
    _git(tmp_path, "init", "-q", "-b", "main")
    (tmp_path / "lib.rs").write_text("fn main() {}\n")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-q", "-m", "init")

    # first commit, no compare ref: every tracked file counts as changed
    first = event_from_git(TriggerKind.PUSH, "origin/main", cwd=tmp_path)
    assert first.branch == "main"
    assert first.changed_paths == frozenset({"lib.rs"})

    (tmp_path / "README.md").write_text("docs\n")
    _git(tmp_path, "add", ".")
    _git(tmp_path, "commit", "-q", "-m", "docs")

    docs = event_from_git(TriggerKind.PUSH, "origin/main", cwd=tmp_path)
    assert docs.changed_paths == frozenset({"README.md"})
    assert not CI.accepts(docs)

    (tmp_path / "lib.rs").write_text("fn main() { todo!() }\n")
    dirty = event_from_git(TriggerKind.PUSH, "origin/main", cwd=tmp_path)
    assert dirty.changed_paths == frozenset({"lib.rs"})
