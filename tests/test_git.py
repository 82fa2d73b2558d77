from __future__ import annotations

import shutil
import subprocess

import pytest

from relm.git_facts import git
from relm.model import TriggerKind

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def sh(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)


@pytest.fixture
def checkout(tmp_path):
    sh(tmp_path, "init", "-q", "-b", "main")
    sh(tmp_path, "config", "user.email", "dev@example.com")
    sh(tmp_path, "config", "user.name", "dev")
    (tmp_path / "README.md").write_text("bank\n")
    sh(tmp_path, "add", ".")
    sh(tmp_path, "commit", "-q", "-m", "init")
    sh(tmp_path, "checkout", "-q", "-b", "feature")
    (tmp_path / "services" / "client").mkdir(parents=True)
    (tmp_path / "services" / "client" / "main.go").write_text("package main\n")
    sh(tmp_path, "add", ".")
    sh(tmp_path, "commit", "-q", "-m", "client")
    return tmp_path


def test_facts(checkout) -> None:
    cwd = str(checkout)
    assert git.repo_root(cwd).resolve() == checkout.resolve()
    assert git.current_ref(cwd) == "feature"
    assert len(git.head_sha(cwd)) == 40
    assert not git.is_dirty(cwd)
    base = git.merge_base("main", cwd=cwd)
    assert git.changed_files(base, cwd=cwd) == ["services/client/main.go"]


def test_event_trigger_includes_uncommitted_edits(checkout) -> None:
    (checkout / "README.md").write_text("bank v2\n")
    trigger = git.event_trigger("main", cwd=str(checkout), actor="dev")
    assert trigger.kind == TriggerKind.EVENT
    assert trigger.ref == "feature"
    assert trigger.actor == "dev"
    assert trigger.changed_files == ("services/client/main.go", "README.md")


def test_unknown_ref_raises(checkout) -> None:
    with pytest.raises(subprocess.CalledProcessError):
        git.merge_base("origin/nope", cwd=str(checkout))


def test_detached_head_reports_sha(checkout) -> None:
    cwd = str(checkout)
    sha = git.head_sha(cwd)
    sh(checkout, "checkout", "-q", "--detach")
    assert git.current_ref(cwd) == sha


def test_untracked_files_dirty_the_tree_but_are_not_uncommitted(checkout) -> None:
    cwd = str(checkout)
    (checkout / "notes.txt").write_text("scratch\n")
    assert git.is_dirty(cwd)
    assert git.uncommitted_files(cwd) == []
    assert "notes.txt" not in git.event_trigger("main", cwd=cwd).changed_files
