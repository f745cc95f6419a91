"""Shared fixtures for the test suite."""

from __future__ import annotations

import pytest

from bulkgen.config import Settings
from tests.fakes import GROUP_A, GROUP_B, FakeBatchClient, InMemoryContentStore, InMemoryJobTracker, make_settings


@pytest.fixture
def anyio_backend() -> str:
  return "asyncio"


@pytest.fixture
def settings() -> Settings:
  return make_settings()


@pytest.fixture
def store() -> InMemoryContentStore:
  content = InMemoryContentStore()
  content.add_group(GROUP_A)
  content.add_group(GROUP_B, brand="Audi", model="A4", generation="B9", code=None)
  return content


@pytest.fixture
def tracker() -> InMemoryJobTracker:
  return InMemoryJobTracker()


@pytest.fixture
def batch_client() -> FakeBatchClient:
  return FakeBatchClient()
