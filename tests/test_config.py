import json

import pytest

from stash.config import init_config, load_config
from stash.errors import ValidationError


def test_defaults(tmp_path):
    cfg = load_config(tmp_path)
    assert cfg.root == tmp_path
    assert cfg.stash_dir == tmp_path / ".stash"
    assert cfg.ids.length == 4
    assert cfg.locks.timeout == 300
    assert not cfg.cache.auto_rebuild
    assert cfg.log.level == "WARNING"
    assert not cfg.initialized


def test_toml_overrides(tmp_path):
    (tmp_path / "stash.toml").write_text(
        '[stash]\ndir = "data"\n[ids]\nlength = 6\n[locks]\ntimeout = 30\n'
        '[cache]\nauto_rebuild = true\n[log]\nlevel = "debug"\n'
    )
    cfg = load_config(tmp_path)
    assert cfg.stash_dir == tmp_path / "data"
    assert cfg.ids.length == 6
    assert cfg.locks.timeout == 30
    assert cfg.cache.auto_rebuild
    assert cfg.log.level == "DEBUG"


def test_invalid_toml(tmp_path):
    (tmp_path / "stash.toml").write_text("[stash\n")
    with pytest.raises(ValidationError) as exc:
        load_config(tmp_path)
    assert exc.value.code == "INVALID_CONFIG"


def test_invalid_log_level(tmp_path):
    (tmp_path / "stash.toml").write_text('[log]\nlevel = "LOUD"\n')
    with pytest.raises(ValidationError):
        load_config(tmp_path)


def test_root_found_from_subdirectory(tmp_path):
    (tmp_path / ".stash").mkdir()
    sub = tmp_path / "a" / "b"
    sub.mkdir(parents=True)
    assert load_config(sub).root == tmp_path


def test_ensure_dirs(tmp_path):
    cfg = load_config(tmp_path)
    cfg.ensure_dirs()
    assert cfg.initialized
    assert "cache.db" in (cfg.stash_dir / ".gitignore").read_text()
    meta = json.loads(cfg.metadata_path.read_text())
    assert meta["schema_version"] == 1
    assert cfg.read_metadata() == meta


def test_init_config_refuses_overwrite(tmp_path):
    path = init_config(tmp_path)
    assert path.exists()
    with pytest.raises(FileExistsError):
        init_config(tmp_path)
    load_config(tmp_path)
