"""Shared fixtures: a throwaway .stash root per test."""

from pathlib import Path

import pytest

from stash.config import load_config
from stash.context import Context
from stash.store import Store


@pytest.fixture
def config(tmp_path: Path):
    cfg = load_config(tmp_path)
    cfg.ensure_dirs()
    return cfg


@pytest.fixture
def store(config):
    s = Store(config)
    yield s
    s.close()


@pytest.fixture
def ctx(config) -> Context:
    return Context(actor="alice", branch="main", stash_dir=config.stash_dir, stash="inventory")


@pytest.fixture
def inventory(store, ctx):
    """A stash with a primary column and a couple of plain ones."""
    return store.create_stash(ctx, "inventory", "inv-", ["Name", "Category", "Price"])
