"""
Pytest configuration and shared fixtures for IoT Machine Control System tests
"""

import pytest
import sys
from pathlib import Path

# Add project source and test utilities to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))
sys.path.insert(0, str(project_root / "tests"))

from machine_control.control.state_store import MachineStateStore
from machine_control.messaging.mqtt_client import InMemoryTransport
from machine_control.storage.history import DEFAULT_MACHINES
from utils.control_helpers import build_core, memory_history, telemetry


@pytest.fixture(scope="session")
def project_root_path():
    """Provide project root path for tests"""
    return project_root


@pytest.fixture
def history():
    """In-memory history store"""
    store = memory_history()
    yield store
    store.close()


@pytest.fixture
def state_store():
    """State store loaded with the default machines"""
    store = MachineStateStore()
    store.load_registry(DEFAULT_MACHINES)
    return store


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def core(history):
    """Fully wired control core with history"""
    return build_core(history)


@pytest.fixture
def sample_telemetry():
    """Healthy telemetry body"""
    return telemetry()


# Test markers
pytest.mark.unit = pytest.mark.unit
pytest.mark.integration = pytest.mark.integration
