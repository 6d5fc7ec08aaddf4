"""Who is writing, on which branch, into which stash.

Resolved once at the edge (the CLI) and passed explicitly into every store
call; the core never reads the environment or the working directory itself.

    actor   --actor flag, then $STASH_ACTOR, then $USER, then "unknown"
    branch  `git rev-parse --abbrev-ref HEAD`, empty outside a repo
    dir     nearest .stash/ walking upward from cwd
    stash   --stash flag, then $STASH_DEFAULT, then the only stash present
"""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

STASH_DIR_NAME = ".stash"


@dataclass
class Context:
    actor: str = "unknown"
    branch: str = ""
    stash_dir: Path | None = None
    stash: str = ""

    @property
    def stash_path(self) -> Path | None:
        if self.stash_dir is None or not self.stash:
            return None
        return self.stash_dir / self.stash


def resolve_actor(flag: str | None = None, env: dict[str, str] | None = None) -> str:
    env = os.environ if env is None else env
    return flag or env.get("STASH_ACTOR") or env.get("USER") or "unknown"


def detect_branch(cwd: Path | None = None) -> str:
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=5,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError):
        return ""
    return result.stdout.strip()


def find_main_worktree(cwd: Path | None = None) -> Path | None:
    """Path of the main git worktree (first entry of `git worktree list`)."""
    try:
        result = subprocess.run(
            ["git", "worktree", "list", "--porcelain"],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=5,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError):
        return None
    for line in result.stdout.splitlines():
        if line.startswith("worktree "):
            return Path(line[len("worktree "):])
    return None


def find_stash_dir(start: Path, dir_name: str = STASH_DIR_NAME) -> Path | None:
    """Walk upward from start looking for a .stash directory."""
    for directory in (start, *start.parents):
        candidate = directory / dir_name
        if candidate.is_dir():
            return candidate
    return None


def list_stash_names(stash_dir: Path) -> list[str]:
    if not stash_dir.is_dir():
        return []
    return sorted(
        d.name for d in stash_dir.iterdir()
        if d.is_dir() and not d.name.startswith(".")
    )


def default_stash(stash_dir: Path | None, env: dict[str, str] | None = None) -> str:
    env = os.environ if env is None else env
    if env.get("STASH_DEFAULT"):
        return env["STASH_DEFAULT"]
    if stash_dir is None:
        return ""
    names = list_stash_names(stash_dir)
    return names[0] if len(names) == 1 else ""


def resolve_context(
    actor: str | None = None,
    stash: str | None = None,
    cwd: Path | None = None,
    stash_dir: Path | None = None,
) -> Context:
    start = cwd or Path.cwd()
    found = stash_dir if stash_dir is not None else find_stash_dir(start)
    return Context(
        actor=resolve_actor(actor),
        branch=detect_branch(start),
        stash_dir=found,
        stash=stash or default_stash(found),
    )
