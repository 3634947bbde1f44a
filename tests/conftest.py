"""
Test Configuration
==================

Pytest configuration with fixtures shared by the unit and integration
suites: testing settings, logging setup and compiled sample policies.
"""

from typing import Any, Dict
from unittest.mock import patch

import pytest
from pydantic_settings import SettingsConfigDict

from flowrules.config.logging import setup_logging
from flowrules.config.settings import Settings
from flowrules.core.dsl import DEFAULT_RULES_SOURCE, compile_rules

from tests.data.sample_rules import TAGGED_POLICY_SOURCE


# Test settings override
class TestSettings(Settings):
    """Test-specific settings."""

    environment: str = "testing"
    debug: bool = True
    log_level: str = "DEBUG"

    model_config = SettingsConfigDict(env_file=".env.test")


@pytest.fixture(scope="session")
def test_settings() -> TestSettings:
    """Test settings fixture."""
    return TestSettings()


@pytest.fixture(scope="session", autouse=True)
def override_settings(test_settings: TestSettings):
    """Override application settings and route logs to stderr for testing."""
    setup_logging(test_settings)
    with patch("flowrules.config.settings.get_settings", return_value=test_settings):
        yield test_settings


@pytest.fixture
def default_source() -> str:
    """The default rule set shipped to new networks."""
    return DEFAULT_RULES_SOURCE


@pytest.fixture
def tagged_policy() -> Dict[str, Any]:
    """Compiled triple of the tag/capability sample policy."""
    result = compile_rules(TAGGED_POLICY_SOURCE)
    assert result.bundle is not None, [d.format() for d in result.diagnostics]
    return result.bundle.model_dump()


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on file paths."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
