# SPDX-License-Identifier: Apache-2.0
"""
Pytest configuration and fixtures for kvsession tests.

This module provides common fixtures used across test files.
"""

import pytest

from kvsession.cache.stats import SessionCacheStats
from kvsession.cache.window import ContextWindowManager
from kvsession.config import BatchConfig, SessionConfig, WindowConfig
from kvsession.session import Session
from kvsession.state import SessionState

from mocks import FakeEngine


@pytest.fixture
def fake_engine() -> FakeEngine:
    """Provide an initialized, loaded fake engine."""
    engine = FakeEngine()
    engine.initialize(None)
    engine.load("fake-model", 64, 8)
    engine.clear_calls()
    return engine


@pytest.fixture
def small_config() -> SessionConfig:
    """A 64-token window with headroom 4 and 8-token batches."""
    return SessionConfig(
        window=WindowConfig(capacity=64, headroom=4),
        batch=BatchConfig(batch_size=8),
    )


@pytest.fixture
def window(fake_engine: FakeEngine) -> ContextWindowManager:
    """A 64/4 window over the fake engine, with stats attached."""
    return ContextWindowManager(fake_engine, capacity=64, headroom=4, stats=SessionCacheStats())


@pytest.fixture
def session_state() -> SessionState:
    return SessionState()


@pytest.fixture
def loaded_session(small_config: SessionConfig) -> Session:
    """A session over a fresh fake engine with the model loaded."""
    session = Session(FakeEngine(), config=small_config, name="test")
    session.initialize("/opt/backends")
    status = session.load("fake-model")
    assert status.ok
    session.engine.clear_calls()
    return session
