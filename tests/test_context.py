import subprocess
from pathlib import Path

import pytest

from stash import context
from stash.context import (
    default_stash,
    detect_branch,
    find_main_worktree,
    find_stash_dir,
    resolve_actor,
    resolve_context,
)


def _git_output(monkeypatch, stdout):
    calls = []

    def fake_run(args, **kwargs):
        calls.append(args)
        return subprocess.CompletedProcess(args, 0, stdout=stdout, stderr="")

    monkeypatch.setattr(context.subprocess, "run", fake_run)
    return calls


def _git_fails(monkeypatch, exc):
    def fake_run(args, **kwargs):
        raise exc

    monkeypatch.setattr(context.subprocess, "run", fake_run)


@pytest.mark.parametrize(
    ("flag", "env", "expected"),
    [
        ("cli", {"STASH_ACTOR": "env", "USER": "me"}, "cli"),
        (None, {"STASH_ACTOR": "env", "USER": "me"}, "env"),
        (None, {"STASH_ACTOR": "", "USER": "me"}, "me"),
        (None, {}, "unknown"),
    ],
)
def test_resolve_actor(flag, env, expected):
    assert resolve_actor(flag, env=env) == expected


class TestDefaultStash:
    def test_env_wins(self, tmp_path):
        (tmp_path / "inventory").mkdir()
        assert default_stash(tmp_path, env={"STASH_DEFAULT": "tasks"}) == "tasks"

    def test_single_stash(self, tmp_path):
        (tmp_path / "inventory").mkdir()
        (tmp_path / ".hidden").mkdir()
        (tmp_path / "cache.db").touch()
        assert default_stash(tmp_path, env={}) == "inventory"

    def test_ambiguous_or_missing(self, tmp_path):
        (tmp_path / "inventory").mkdir()
        (tmp_path / "tasks").mkdir()
        assert default_stash(tmp_path, env={}) == ""
        assert default_stash(None, env={}) == ""


def test_find_stash_dir_walks_upward(tmp_path):
    (tmp_path / ".stash").mkdir()
    nested = tmp_path / "a" / "b"
    nested.mkdir(parents=True)
    assert find_stash_dir(nested) == tmp_path / ".stash"
    assert find_stash_dir(nested, dir_name=".other") is None


class TestGit:
    def test_main_worktree_is_first_entry(self, monkeypatch):
        calls = _git_output(monkeypatch, (
            "worktree /src/project\nHEAD abc123\nbranch refs/heads/main\n\n"
            "worktree /src/project-feature\nHEAD def456\nbranch refs/heads/feature\n"
        ))
        assert find_main_worktree() == Path("/src/project")
        assert calls == [["git", "worktree", "list", "--porcelain"]]

    def test_no_git(self, monkeypatch):
        _git_fails(monkeypatch, FileNotFoundError("git"))
        assert find_main_worktree() is None
        assert detect_branch() == ""

    def test_not_a_repository(self, monkeypatch):
        _git_fails(monkeypatch, subprocess.CalledProcessError(128, ["git"]))
        assert find_main_worktree() is None
        assert detect_branch() == ""

    def test_branch(self, monkeypatch):
        _git_output(monkeypatch, "feature/x\n")
        assert detect_branch() == "feature/x"


def test_resolve_context(tmp_path, monkeypatch):
    (tmp_path / ".stash" / "inventory").mkdir(parents=True)
    monkeypatch.setenv("STASH_ACTOR", "alice")
    monkeypatch.delenv("STASH_DEFAULT", raising=False)
    _git_output(monkeypatch, "main\n")

    ctx = resolve_context(cwd=tmp_path)
    assert (ctx.actor, ctx.branch, ctx.stash) == ("alice", "main", "inventory")
    assert ctx.stash_path == tmp_path / ".stash" / "inventory"
    assert resolve_context(actor="bob", stash="tasks", cwd=tmp_path).stash == "tasks"
