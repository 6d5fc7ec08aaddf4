"""StashConfig: project-local settings for a stash root.

Default layout (all relative to the project root):

    stash.toml            # optional project config (git-tracked)
    .stash/
        .gitignore        # auto-written: ignores cache.db*
        metadata.json     # {"last_stash_version": ..., "schema_version": 1}
        locks.json        # advisory locks
        cache.db          # SQLite derived cache
        <stash>/
            config.json   # stash definition
            records.jsonl # append log (git-tracked)
            files/        # attachments

stash.toml example:

    [stash]
    dir = ".stash"

    [ids]
    length = 4          # random base36 characters in a root id
    max_retries = 10

    [locks]
    timeout = 300       # seconds

    [cache]
    auto_rebuild = false  # rebuild a stale cache instead of failing

    [log]
    level = "WARNING"
"""

from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stash import __version__
from stash.errors import ValidationError
from stash.models import SCHEMA_VERSION

_CONFIG_FILENAME = "stash.toml"
_DEFAULT_STASH_DIR = ".stash"
_GITIGNORE_CONTENT = "cache.db\ncache.db-*\n"
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class IdsConfig:
    length: int = 4
    max_retries: int = 10


@dataclass
class LocksConfig:
    timeout: int = 300


@dataclass
class CacheConfig:
    auto_rebuild: bool = False


@dataclass
class LogConfig:
    level: str = "WARNING"


@dataclass
class StashConfig:
    """Resolved configuration for a stash root."""

    root: Path                      # directory that holds .stash/ (and stash.toml)
    stash_dir: Path = field(default_factory=Path)
    ids: IdsConfig = field(default_factory=IdsConfig)
    locks: LocksConfig = field(default_factory=LocksConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @property
    def db_path(self) -> Path:
        return self.stash_dir / "cache.db"

    @property
    def metadata_path(self) -> Path:
        return self.stash_dir / "metadata.json"

    @property
    def initialized(self) -> bool:
        return self.stash_dir.is_dir()

    def ensure_dirs(self) -> None:
        """Create .stash/ with its .gitignore and metadata.json."""
        self.stash_dir.mkdir(parents=True, exist_ok=True)
        gitignore = self.stash_dir / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(_GITIGNORE_CONTENT)
        if not self.metadata_path.exists():
            self.write_metadata({"last_stash_version": __version__, "schema_version": SCHEMA_VERSION})

    def read_metadata(self) -> dict[str, Any]:
        try:
            return json.loads(self.metadata_path.read_text())  # type: ignore[no-any-return]
        except (FileNotFoundError, json.JSONDecodeError):
            return {}

    def write_metadata(self, data: dict[str, Any]) -> None:
        tmp = self.metadata_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(data, indent=2) + "\n")
        tmp.replace(self.metadata_path)


def load_config(root: Path | str | None = None) -> StashConfig:
    """Load stash.toml from root (or search upward from cwd if root is None)."""
    root_path = _find_root(Path(root) if root else Path.cwd())
    config_path = root_path / _CONFIG_FILENAME

    raw: dict[str, Any] = {}
    if config_path.exists():
        with config_path.open("rb") as f:
            try:
                raw = tomllib.load(f)
            except tomllib.TOMLDecodeError as exc:
                msg = f"invalid {_CONFIG_FILENAME}: {exc}"
                raise ValidationError(msg, code="INVALID_CONFIG", details={"path": str(config_path)}) from exc

    stash_section = raw.get("stash", {})
    ids_section = raw.get("ids", {})
    locks_section = raw.get("locks", {})
    cache_section = raw.get("cache", {})
    log_section = raw.get("log", {})

    level = str(log_section.get("level", "WARNING")).upper()
    if level not in _LOG_LEVELS:
        msg = f"invalid [log] level '{level}' (expected one of: {', '.join(_LOG_LEVELS)})"
        raise ValidationError(msg, code="INVALID_CONFIG", details={"level": level})

    return StashConfig(
        root=root_path,
        stash_dir=root_path / stash_section.get("dir", _DEFAULT_STASH_DIR),
        ids=IdsConfig(
            length=int(ids_section.get("length", 4)),
            max_retries=int(ids_section.get("max_retries", 10)),
        ),
        locks=LocksConfig(
            timeout=int(locks_section.get("timeout", 300)),
        ),
        cache=CacheConfig(
            auto_rebuild=bool(cache_section.get("auto_rebuild", False)),
        ),
        log=LogConfig(level=level),
    )


def _find_root(start: Path) -> Path:
    """Walk upward from start looking for stash.toml or a .stash directory."""
    for directory in (start, *start.parents):
        if (directory / _CONFIG_FILENAME).exists() or (directory / _DEFAULT_STASH_DIR).is_dir():
            return directory
    return start


def init_config(root: Path) -> Path:
    """Write a default stash.toml at root. Raises if already exists."""
    config_path = root / _CONFIG_FILENAME
    if config_path.exists():
        msg = f"{_CONFIG_FILENAME} already exists at {config_path}"
        raise FileExistsError(msg)

    content = """\
[stash]
# dir = ".stash"          # default

# [ids]
# length = 4              # random base36 characters in a root id
# max_retries = 10        # attempts before giving up on a unique id

# [locks]
# timeout = 300           # seconds before an advisory lock expires

# [cache]
# auto_rebuild = false    # rebuild a stale cache.db instead of failing

# [log]
# level = "WARNING"
"""
    config_path.write_text(content)
    return config_path
