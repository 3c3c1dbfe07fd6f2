import os
import tempfile

import pytest
from fastapi.testclient import TestClient

# Set test environment before importing app/settings
os.environ["PROVIDERS_ENABLED"] = "local"
os.environ["LOCAL_BASE_URL"] = ""
os.environ["IDENTITY_MODE"] = "anonymous"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["ADMIN_TOKEN"] = "test-admin-token"
os.environ["SYNC_MODELS_ON_STARTUP"] = "false"
os.environ["ASSET_DIR"] = tempfile.mkdtemp(prefix="aigateway-assets-")

from aigateway.app.auth.identity import CallerIdentity
from aigateway.app.main import app
from aigateway.app.providers.registry import registry
from aigateway.app.services.rate_limit import rate_limiter
from aigateway.tests.fakes import FakeTransport, make_spec


@pytest.fixture
def caller():
    return CallerIdentity(caller_id="alice", client_key="10.0.0.1")


@pytest.fixture
def other_caller():
    return CallerIdentity(caller_id="mallory", client_key="10.0.0.2")


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def client(fake_transport):
    """Test client with the fake provider installed after startup."""
    with TestClient(app) as c:
        registry._providers.clear()
        registry.cache.clear()
        registry.register(make_spec("fake", allow_direct=True), "test-key", transport=fake_transport)
        rate_limiter.configure(1000, 60)
        yield c
        registry._providers.clear()
        registry.cache.clear()
