"""
Shared fixtures: in-memory SQLite store, a test codec and a fake Mautic instance
served through httpx.MockTransport.
"""
import os
import sys
from datetime import datetime, timezone, timedelta

# Must be set before config is imported anywhere
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-passphrase")

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import httpx
import pytest
import pytest_asyncio

from crypto_utils import CredentialCodec
from database import Database
from mautic_api import RESOURCES, MauticAPIClient, TokenSet
from tenant_store import TenantStore

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeMautic:
    """A minimal Mautic instance: OAuth token endpoint plus paginated resource listings."""

    def __init__(self, records=None, token_payload=None):
        self.records = {resource: list(items) for resource, items in (records or {}).items()}
        self.requests = []
        self.failing = set()
        self.token_status = 200
        self.token_payload = token_payload or {
            "access_token": "fresh-access",
            "refresh_token": "fresh-refresh",
            "expires_in": 3600,
        }
        self.error_payload = {"errors": [{"code": 500, "message": "Internal server error"}]}

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/oauth/v2/token"):
            if self.token_status >= 400:
                return httpx.Response(self.token_status, json={
                    "error": "invalid_grant",
                    "error_description": "Invalid username and password combination",
                })
            return httpx.Response(200, json=self.token_payload)

        for resource, resource_config in RESOURCES.items():
            endpoint = "/api" + resource_config.endpoint
            if path.endswith(endpoint):
                if resource in self.failing:
                    return httpx.Response(500, json=self.error_payload)
                items = self.records.get(resource, [])
                start = int(request.url.params.get("start", 0))
                limit = int(request.url.params.get("limit", 30))
                page = items[start:start + limit]
                collection = {
                    str(item.get("id", f"missing-{start + n}")): item for n, item in enumerate(page)
                } if page else []
                return httpx.Response(200, json={"total": len(items), resource_config.collection_key: collection})

            if resource == "emails" and f"{endpoint}/" in path:
                email_id = int(path.rsplit("/", 1)[-1])
                for item in self.records.get("emails", []):
                    if item["id"] == email_id:
                        return httpx.Response(200, json={"email": item})

        return httpx.Response(404, json={"errors": [{"code": 404, "message": "Requested URL not found"}]})

    def calls_to(self, endpoint: str):
        return [r for r in self.requests if r.url.path.endswith(endpoint)]


def make_contacts(count, start_id=1):
    return [
        {
            "id": i,
            "points": i % 7,
            "lastActive": "2026-01-15T10:30:00+00:00",
            "fields": {"all": {
                "firstname": f"First{i}",
                "lastname": f"Last{i}",
                "email": f"contact{i}@example.com",
                "company": "Acme" if i % 2 else "",
            }},
        }
        for i in range(start_id, start_id + count)
    ]


def valid_token_set(access="stored-access", refresh="stored-refresh", minutes=30) -> TokenSet:
    return TokenSet(access, refresh, datetime.now(timezone.utc) + timedelta(minutes=minutes))


@pytest.fixture(scope="session")
def codec():
    return CredentialCodec("test-encryption-passphrase")


@pytest_asyncio.fixture
async def db():
    database = Database(TEST_DATABASE_URL)
    await database.create_all()
    yield database
    await database.drop_all()
    await database.dispose()


@pytest_asyncio.fixture
async def store(db, codec):
    return TenantStore(db.session_factory, codec=codec)


@pytest.fixture
def fake_mautic():
    return FakeMautic()


@pytest.fixture
def gateway_factory(codec):
    """Build a gateway factory routing each tenant to the FakeMautic registered for its base_url."""
    def build(instances):
        def factory(tenant, **kwargs):
            return MauticAPIClient.from_tenant(
                tenant, codec=codec, transport=instances[tenant.base_url].transport, **kwargs
            )
        return factory
    return build
