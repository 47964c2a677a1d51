"""Pytest configuration and shared fixtures."""

import pytest

from eventstore_client import EventStoreClient, create_test_client
from eventstore_client.transport import MockTransport, create_mock_transport


@pytest.fixture(scope="module")
def anyio_backend():
    """Configure anyio to use asyncio backend."""
    return "asyncio"


@pytest.fixture
def transport() -> MockTransport:
    """A mock transport with no canned responses."""
    return create_mock_transport()


@pytest.fixture
def client(transport: MockTransport) -> EventStoreClient:
    """A client whose calls all go through the mock transport."""
    return create_test_client(transport)
