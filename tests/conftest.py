"""Shared fixtures: an engine over a throwaway SQLite file."""

import logging

import pytest

from autoflow.core.config import EngineConfig, QueueConfig, StoreConfig, clear_config_cache
from autoflow.core.engine import EngineCore
from autoflow.safeguards.retry_handler import RetryPolicy
from autoflow.storage.database import Database
from autoflow.utils.rich_logging import ROOT_LOGGER_NAME


@pytest.fixture(autouse=True)
def _reset_config_cache():
    yield
    clear_config_cache()


@pytest.fixture(autouse=True)
def _restore_logging():
    """CLI tests install console handlers and stop propagation; undo that for caplog."""
    yield
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in root.handlers[:]:
        handler.close()
        root.removeHandler(handler)
    root.propagate = True
    root.setLevel(logging.NOTSET)


@pytest.fixture
def config(tmp_path):
    """Engine config with immediate job retries so tests never sleep on backoff."""
    return EngineConfig(
        store=StoreConfig(path=tmp_path / "autoflow.db"),
        queue=QueueConfig(
            max_attempts=3,
            retry=RetryPolicy(max_attempts=3, strategy="fixed", base_delay_ms=0),
        ),
    )


@pytest.fixture
def engine(config):
    engine = EngineCore(config)
    yield engine
    engine.close()


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "store.db")
    database.initialize()
    yield database
    database.close()
