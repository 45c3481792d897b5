"""Pytest configuration and shared fixtures."""

import pytest

from graphchat.sdk.mock import MockRunClient


@pytest.fixture
def client() -> MockRunClient:
    """Scripted run client; each test gets a fresh id sequence."""
    return MockRunClient()
