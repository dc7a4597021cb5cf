"""Shared fixtures for playground tests."""

import pytest

from playground.runtime.bootstrap import clear_bootstrap_cache


@pytest.fixture(autouse=True)
def _setup_user_space(tmp_path, monkeypatch):
    """Point the user space at a temporary directory for every test."""
    user_space = tmp_path / "user_space"
    user_space.mkdir()

    monkeypatch.setenv("PLAYGROUND_USER_SPACE", str(user_space))
    monkeypatch.delenv("PLAYGROUND_PYTHON", raising=False)
    monkeypatch.delenv("PLAYGROUND_INDEX_URL", raising=False)
    clear_bootstrap_cache()

    yield user_space

    clear_bootstrap_cache()
