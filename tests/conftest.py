"""
Shared pytest fixtures for campaign engine tests.

Provides fixtures for:
- Mock LLM and transport clients
- Feature flag overrides
- Temporary SQLite-backed engines
"""

import pytest
from contextlib import contextmanager
from unittest.mock import MagicMock

from campaign_engine.llm import LLMResponse


# =============================================================================
# Mock LLM / Transport Fixtures
# =============================================================================

@pytest.fixture
def mock_llm():
    """Basic mock LLM client."""
    llm = MagicMock()
    llm.generate_content.return_value = LLMResponse(text="Olá! Como posso ajudar?")
    llm.model = "mock-model"
    return llm


@pytest.fixture
def mock_llm_with_responses():
    """Mock LLM client returning the given texts in order."""
    def _create(*texts: str):
        llm = MagicMock()
        llm.generate_content.side_effect = [LLMResponse(text=t) for t in texts]
        llm.model = "mock-model"
        return llm
    return _create


@pytest.fixture
def mock_transport():
    """Mock WAHA client."""
    transport = MagicMock()
    transport.send_text.return_value = {"id": "msg-out"}
    transport.set_presence.return_value = {}
    return transport


# =============================================================================
# Feature Flags Fixtures
# =============================================================================

@pytest.fixture
def feature_flags_override():
    """Context manager for temporary feature flag overrides."""
    from campaign_engine.feature_flags import flags

    @contextmanager
    def _override(**kwargs):
        for flag, value in kwargs.items():
            flags.set_override(flag, value)
        try:
            yield flags
        finally:
            for flag in kwargs:
                flags.clear_override(flag)

    return _override


# =============================================================================
# Storage / Engine Fixtures
# =============================================================================

@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "engine.db")


@pytest.fixture
def engine_factory(db_path, tmp_path, mock_transport):
    """Engine wired on a temporary database with mocked collaborators."""
    from campaign_engine.engine.orchestrator import build_engine
    from campaign_engine.realtime import RealtimeNotifier

    def _create(llm=None, transport=None):
        return build_engine(
            db_path=db_path,
            llm=llm,
            transport=transport or mock_transport,
            notifier=RealtimeNotifier(),
            lock_dir=str(tmp_path / "locks"),
        )
    return _create
