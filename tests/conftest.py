"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for aws_mock and azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from provisioner.config import ProviderConfig  # noqa: E402


@pytest.fixture
def fast_config() -> ProviderConfig:
    """Configuration with poll sleeping disabled."""
    return ProviderConfig(
        aws_region="us-east-1",
        azure_subscription_id="12345678-1234-1234-1234-123456789012",
        poll_interval_scale=0.0,
    )
