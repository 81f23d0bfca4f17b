"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

import pytest  # noqa: E402

from azure_mock import (  # noqa: E402
    FakeEventRecorder,
    FakeGraphApi,
    FakeResourceStore,
    make_config,
)
from azurerator.config import Config  # noqa: E402


@pytest.fixture
def config() -> Config:
    return make_config()


@pytest.fixture
def graph() -> FakeGraphApi:
    return FakeGraphApi()


@pytest.fixture
def store() -> FakeResourceStore:
    return FakeResourceStore()


@pytest.fixture
def recorder() -> FakeEventRecorder:
    return FakeEventRecorder()
