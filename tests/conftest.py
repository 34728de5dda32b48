"""
Shared fixtures: isolated settings, a fake push endpoint and wired services.
"""
import json
from typing import List

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient

from chatsync.core import metrics
from chatsync.core.config import Settings
from chatsync.main import create_app
from chatsync.services.container import ChatServices
from chatsync.services.notifications import ServiceAccount


TEST_SECRET = "test-secret-key-0123456789abcdef0123"
TOKEN_URI = "https://oauth2.test/token"
FCM_BASE_URL = "https://fcm.test"
PROJECT_ID = "chat-test"


@pytest.fixture(scope="session")
def rsa_key():
    """Throwaway RSA key standing in for a service-account private key."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def service_account(rsa_key) -> ServiceAccount:
    pem = rsa_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    return ServiceAccount(
        project_id=PROJECT_ID,
        client_email="push@chat-test.iam.gserviceaccount.com",
        private_key=pem,
        token_uri=TOKEN_URI,
    )


class FakePushBackend:
    """OAuth token endpoint plus FCM send endpoint behind httpx.MockTransport."""

    def __init__(self):
        self.token_requests: List[httpx.Request] = []
        self.send_requests: List[httpx.Request] = []
        # Status codes returned by successive sends; the last one repeats
        self.send_statuses = [200]
        self.fail_transport = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == TOKEN_URI:
            self.token_requests.append(request)
            return httpx.Response(200, json={"access_token": "ya29.test", "expires_in": 3600, "token_type": "Bearer"})

        self.send_requests.append(request)
        if self.fail_transport:
            raise httpx.ConnectError("connection refused", request=request)
        index = min(len(self.send_requests), len(self.send_statuses)) - 1
        status = self.send_statuses[index]
        return httpx.Response(status, json={"name": f"projects/{PROJECT_ID}/messages/1"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def sent_payloads(self) -> list:
        return [json.loads(r.content) for r in self.send_requests]


@pytest.fixture
def push_backend() -> FakePushBackend:
    return FakePushBackend()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing every database and directory into tmp_path."""
    return Settings(
        _env_file=None,
        auth_secret=TEST_SECRET,
        database_url=f"sqlite:///{tmp_path}/messages.db",
        cache_url=f"sqlite:///{tmp_path}/cache.db",
        storage_dir=str(tmp_path / "storage"),
        public_base_url="http://testserver/files",
        fcm_base_url=FCM_BASE_URL,
        resubscribe_delay=0.01,
        log_level="DEBUG",
        log_format="text",
    )


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest_asyncio.fixture
async def services(settings, push_backend, service_account):
    """Fully wired services on the test event loop."""
    http = httpx.AsyncClient(transport=push_backend.transport)
    built = ChatServices.build(settings, http=http, account=service_account)
    yield built
    await built.close()


@pytest.fixture
def client(settings, push_backend, service_account):
    """Test client with the lifespan running."""
    app = create_app(
        settings,
        http=httpx.AsyncClient(transport=push_backend.transport),
        account=service_account,
    )
    with TestClient(app) as test_client:
        yield test_client
