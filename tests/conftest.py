"""Shared pytest fixtures for groundstate tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from engine.backends import LocalBackend
from engine.lock import LockManager
from providers import ProviderRegistry


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    """Keep host environment settings out of tests."""
    for name in ('GROUNDSTATE_CONFIG', 'GROUNDSTATE_WORKDIR', 'GROUNDSTATE_PARALLELISM',
                 'GROUNDSTATE_LOCK_TIMEOUT', 'GROUNDSTATE_STATE_PATH'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def work_dir(tmp_path, monkeypatch):
    """Working directory holding configuration and local state."""
    monkeypatch.setenv('GROUNDSTATE_WORKDIR', str(tmp_path))
    return tmp_path


@pytest.fixture
def backend(tmp_path):
    """Local backend with its state file in a temp directory."""
    return LocalBackend(tmp_path / 'groundstate.tfstate')


@pytest.fixture
def lock_manager(backend):
    return LockManager(backend.lock_store())


@pytest.fixture
def providers(tmp_path):
    return ProviderRegistry(tmp_path)
