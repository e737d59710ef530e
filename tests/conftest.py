"""
Pytest configuration and shared fixtures for the dagstore test suite.
"""
import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture(autouse=True)
def reset_global_state():
    """Reset the process-wide event bus around each test."""
    from infrastructure.event_bus import reset_event_bus

    reset_event_bus()
    yield
    reset_event_bus()


@pytest.fixture
def fresh_dag():
    """Provide an empty Dag."""
    from core.dag import Dag
    return Dag()


@pytest.fixture
def sample_dag(fresh_dag):
    """
    Provide the small fan-out Dag used across tests.

        2 -> 3  ("2-3")
        2 -> 4  ("2-4")
    """
    for node_id in (2, 4, 3):
        fresh_dag.insert_node(node_id, f"node-{node_id}")
    fresh_dag.insert_edge(2, 3, "2-3")
    fresh_dag.insert_edge(2, 4, "2-4")
    return fresh_dag


@pytest.fixture
def event_bus():
    """Provide a private EventBus."""
    from infrastructure.event_bus import EventBus
    return EventBus()
