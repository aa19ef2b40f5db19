import pytest

from core.services.session import SessionManager
from core.storage import MemoryCredentialStore
from core.tests.factories import FakeGateway


@pytest.fixture
def store():
    return MemoryCredentialStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def manager(store, gateway):
    return SessionManager(store, gateway)
