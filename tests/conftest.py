"""
Root conftest.py - Global fixtures and configuration for all test layers.

Test Layers (Top-Down TDD):
    - component/  : Component tests (in-memory Redis, repositories, transport)
    - unit/       : Unit tests (pure functions, no I/O)
    - contracts/  : Data contracts shared by the layers
"""
import os
import sys
from typing import Any

import pytest

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

# Workers and the event bus stay off unless a test starts them explicitly
os.environ.setdefault("ENV", "testing")
os.environ.setdefault("QUEUE_WORKERS_ENABLED", "false")
os.environ.setdefault("NATS_ENABLED", "false")

# Import shared fixtures from tests/fixtures
from tests.fixtures import make_tenant_id


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def tenant_id() -> str:
    return make_tenant_id()


# =============================================================================
# Assertion Helpers
# =============================================================================

class AssertionHelpers:
    """Custom assertion helpers for tests"""

    @staticmethod
    def assert_action_failed(result: Any, error_code: str):
        """Assert an ActionResult failed with the given code"""
        assert result.success is False, f"Expected failure, got {result}"
        assert result.error is not None and result.error.value == error_code, \
            f"Expected {error_code}, got {result.error}: {result.message}"

    @staticmethod
    def assert_action_succeeded(result: Any):
        assert result.success is True, f"Expected success, got {result.error}: {result.message}"


@pytest.fixture
def assertions() -> AssertionHelpers:
    """Provide assertion helpers"""
    return AssertionHelpers()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "component: Component tests")
    config.addinivalue_line("markers", "unit: Unit tests")
