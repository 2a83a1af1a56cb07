"""
Pytest configuration and shared fixtures for the LabBuddy test suite.
"""
import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from tests.helpers import FakeLLM, FakeRecommender, make_node, three_recommendations  # noqa: E402


def _reset_globals():
    from api.routes import reset_state
    from core.llm import reset_llm, reset_rate_limit_guard
    from infrastructure.config import Settings, set_settings
    from infrastructure.event_bus import reset_event_bus
    from infrastructure.logger import MutationLogger, set_logger

    # Defaults only: tests never read config/labbuddy.toml or LABBUDDY_* vars
    set_settings(Settings())
    reset_llm()
    reset_rate_limit_guard()
    reset_event_bus()
    set_logger(MutationLogger())
    reset_state()


@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset global state before each test to ensure isolation."""
    _reset_globals()
    yield
    _reset_globals()


@pytest.fixture
def store():
    """Provide a fresh GraphStore."""
    from core.graph_db import GraphStore
    return GraphStore()


@pytest.fixture
def chain_store(store):
    """A -> B -> C, spaced well apart."""
    from core.schemas import EdgeData

    a = make_node("A", x=0, y=0)
    b = make_node("B", x=500, y=0)
    c = make_node("C", x=1000, y=0)
    for node in (a, b, c):
        store.add_node(node)
    store.add_edge(EdgeData.create(a.id, b.id))
    store.add_edge(EdgeData.create(b.id, c.id))
    return store, {"a": a, "b": b, "c": c}


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def recommender():
    return FakeRecommender(three_recommendations())


@pytest.fixture
def session(recommender):
    """A local-only session with a fake recommender."""
    from core.session import MindMapSession
    return MindMapSession(recommender=recommender)
