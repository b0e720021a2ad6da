"""
Sync engine tests.
Tenants live in an in-memory SQLite store; each tenant's Mautic is a FakeMautic
reached through httpx.MockTransport.
"""

import pytest
import pytest_asyncio
import sys
import os
from datetime import datetime, timezone, timedelta

import httpx
from sqlalchemy import select

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import FakeMautic, make_contacts, valid_token_set
from crypto_utils import CredentialCodec
from database import Database
from mautic_api import AuthenticationError, NoTokenError, RemoteRequestError, TokenSet, TokenRefreshError
from models import Contact, Campaign, EmailStat, Segment
from sync_engine import (
    SyncEngine, ResourceSyncError, compute_rate,
    normalize_contact, normalize_campaign, normalize_email, normalize_segment,
)
from tenant_store import TenantStore, NotFoundError

URL_A = "https://a.mautic.test"
URL_B = "https://b.mautic.test"
URL_C = "https://c.mautic.test"


async def _rows(db, model):
    async with db.session_factory() as session:
        return list((await session.execute(select(model).order_by(model.id))).scalars().all())


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

class TestNormalization:

    def test_compute_rate(self):
        assert compute_rate(50, 200) == 25.0
        assert compute_rate(1, 3) == 33.33
        assert compute_rate(5, 0) == 0.0

    def test_contact_fields(self):
        values = normalize_contact({
            "id": 1,
            "points": "12",
            "lastActive": "2026-02-01T08:00:00+00:00",
            "fields": {"all": {"firstname": "Ana", "lastname": "", "email": "ana@example.com"}},
        })
        assert values["first_name"] == "Ana"
        assert values["last_name"] is None
        assert values["email"] == "ana@example.com"
        assert values["points"] == 12
        assert values["last_active"] == datetime(2026, 2, 1, 8, 0, tzinfo=timezone.utc)

    def test_contact_without_fields(self):
        values = normalize_contact({"id": 1, "points": "not-a-number"})
        assert values["first_name"] is None
        assert values["points"] == 0
        assert values["last_active"] is None

    @pytest.mark.parametrize("points", ["inf", "-inf", "1e999", "nan"])
    def test_non_finite_numbers_fall_back_to_default(self, points):
        assert normalize_contact({"id": 1, "points": points})["points"] == 0

    def test_non_finite_email_counts(self):
        values = normalize_email({"subject": "Odd", "sentCount": "1e999", "readCount": "inf"})
        assert values["sent_count"] == 0
        assert values["read_count"] == 0
        assert values["open_rate"] == 0

    def test_campaign(self):
        values = normalize_campaign({"name": "Onboarding", "isPublished": True, "stats": {"total_contacts": "40"}})
        assert values == {"name": "Onboarding", "description": None, "is_published": True, "total_contacts": 40}

    def test_email_rates(self):
        values = normalize_email({"subject": "Hi", "sentCount": 200, "readCount": 50, "clickCount": 10})
        assert values["open_rate"] == 25.0
        assert values["click_rate"] == 5.0
        assert values["failed_count"] == 0

    def test_email_never_sent(self):
        values = normalize_email({"subject": "Draft", "sentCount": 0, "readCount": 3})
        assert values["open_rate"] == 0
        assert values["click_rate"] == 0

    def test_segment(self):
        values = normalize_segment({
            "name": "VIP", "isPublished": 1, "isGlobal": "0", "contactCount": "7",
            "createdBy": 3, "dateAdded": "2025-12-01T00:00:00Z", "dateModified": None,
        })
        assert values["is_published"] is True
        assert values["is_global"] is False
        assert values["contact_count"] == 7
        assert values["created_by"] == "3"
        assert values["date_added"] == datetime(2025, 12, 1, tzinfo=timezone.utc)
        assert values["date_modified"] is None


# ---------------------------------------------------------------------------
# Per-resource sync
# ---------------------------------------------------------------------------

class TestResourceSync:

    @pytest.fixture
    def fake(self):
        return FakeMautic(records={
            "contacts": make_contacts(5),
            "campaigns": [{"id": 1, "name": "Welcome", "isPublished": True, "stats": {"total_contacts": 3}}],
            "emails": [
                {"id": 1, "subject": "Launch", "sentCount": 200, "readCount": 50, "clickCount": 20},
                {"id": 2, "subject": "Draft", "sentCount": 0, "readCount": 0, "clickCount": 0},
            ],
            "segments": [{"id": 9, "name": "VIP", "isPublished": True, "contactCount": 2}],
        })

    @pytest.fixture
    def engine(self, store, gateway_factory, fake):
        return SyncEngine(store, gateway_factory=gateway_factory({URL_A: fake}))

    @pytest.mark.asyncio
    async def test_email_stats_rates(self, store, engine, db):
        tenant = await store.register_tenant("A", URL_A, "cid", "cs", token_set=valid_token_set())

        result = await engine.sync_email_stats(tenant.id)

        assert result == {"success": True, "synced": 2, "total": 2}
        emails = {e.mautic_email_id: e for e in await _rows(db, EmailStat)}
        assert emails[1].open_rate == 25.0
        assert emails[1].click_rate == 10.0
        assert emails[2].open_rate == 0
        assert emails[2].click_rate == 0

    @pytest.mark.asyncio
    async def test_contacts_sync_is_idempotent(self, store, engine, db, fake):
        tenant = await store.register_tenant("A", URL_A, "cid", "cs", token_set=valid_token_set())

        first = await engine.sync_contacts(tenant.id)
        fake.records["contacts"][0]["fields"]["all"]["email"] = "changed@example.com"
        second = await engine.sync_contacts(tenant.id)

        assert first["synced"] == second["synced"] == 5
        contacts = await _rows(db, Contact)
        assert len(contacts) == 5
        assert {c.mautic_contact_id for c in contacts} == {1, 2, 3, 4, 5}
        assert any(c.email == "changed@example.com" for c in contacts)

    @pytest.mark.asyncio
    async def test_unchanged_remote_data_leaves_rows_identical(self, store, engine, db):
        tenant = await store.register_tenant("A", URL_A, "cid", "cs", token_set=valid_token_set())
        models = (Contact, Campaign, EmailStat, Segment)

        async def snapshot():
            rows = {}
            for model in models:
                columns = [c.name for c in model.__table__.columns if c.name != "updated_at"]
                rows[model.__tablename__] = [
                    {name: getattr(row, name) for name in columns} for row in await _rows(db, model)
                ]
            return rows

        await engine.sync_all_data(tenant.id)
        before = await snapshot()
        await engine.sync_all_data(tenant.id)
        after = await snapshot()

        assert [len(before[t]) for t in before] == [5, 1, 2, 1]
        assert after == before

    @pytest.mark.asyncio
    async def test_contacts_sync_stamps_last_sync(self, store, engine):
        tenant = await store.register_tenant("A", URL_A, "cid", "cs", token_set=valid_token_set())
        assert tenant.last_sync_at is None

        await engine.sync_contacts(tenant.id)

        assert (await store.get_tenant(tenant.id)).last_sync_at is not None

    @pytest.mark.asyncio
    async def test_campaigns_and_segments(self, store, engine, db):
        tenant = await store.register_tenant("A", URL_A, "cid", "cs", token_set=valid_token_set())

        await engine.sync_campaigns(tenant.id)
        await engine.sync_segments(tenant.id)

        campaigns = await _rows(db, Campaign)
        segments = await _rows(db, Segment)
        assert [(c.name, c.total_contacts, c.is_published) for c in campaigns] == [("Welcome", 3, True)]
        assert [(s.mautic_segment_id, s.contact_count) for s in segments] == [(9, 2)]

    @pytest.mark.asyncio
    async def test_redirect_fails_the_resource_instead_of_syncing_nothing(self, store, gateway_factory):
        fake = FakeMautic()
        original = fake.handler

        def handler(request):
            if request.url.path.startswith("/api/"):
                return httpx.Response(302, headers={"Location": "/s/login"})
            return original(request)

        fake.handler = handler
        engine = SyncEngine(store, gateway_factory=gateway_factory({URL_A: fake}))
        tenant = await store.register_tenant("A", URL_A, "cid", "cs", token_set=valid_token_set())

        with pytest.raises(RemoteRequestError):
            await engine.sync_contacts(tenant.id)
        assert (await store.get_tenant(tenant.id)).last_sync_at is None

        results = (await engine.sync_all_clients())["results"]
        assert results[0]["success"] is False
        assert (await engine.test_connection(tenant.id))["success"] is False

    @pytest.mark.asyncio
    async def test_record_without_id_fails_the_resource(self, store, engine, fake):
        fake.records["campaigns"].append({"name": "No id"})
        tenant = await store.register_tenant("A", URL_A, "cid", "cs", token_set=valid_token_set())

        with pytest.raises(ValueError):
            await engine.sync_campaigns(tenant.id)

    @pytest.mark.asyncio
    async def test_no_token(self, store, engine, fake):
        tenant = await store.register_tenant("A", URL_A, "cid", "cs")

        with pytest.raises(NoTokenError):
            await engine.sync_contacts(tenant.id)
        assert fake.requests == []

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, engine):
        with pytest.raises(NotFoundError):
            await engine.sync_contacts(404)

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_and_persisted(self, store, engine, fake, db, codec):
        expired = TokenSet("old-access", "old-refresh", datetime.now(timezone.utc) - timedelta(minutes=1))
        tenant = await store.register_tenant("A", URL_A, "cid", "cs", token_set=expired)

        await engine.sync_contacts(tenant.id)

        assert len(fake.calls_to("/oauth/v2/token")) == 1
        stored = await store.get_tenant(tenant.id)
        assert codec.decrypt(stored.access_token) == "fresh-access"
        assert codec.decrypt(stored.refresh_token) == "fresh-refresh"

    @pytest.mark.asyncio
    async def test_refresh_failure_propagates(self, store, engine, fake):
        fake.token_status = 400
        expired = TokenSet("old-access", "old-refresh", datetime.now(timezone.utc) - timedelta(minutes=1))
        tenant = await store.register_tenant("A", URL_A, "cid", "cs", token_set=expired)

        with pytest.raises(TokenRefreshError):
            await engine.sync_contacts(tenant.id)


# ---------------------------------------------------------------------------
# Whole-tenant sync
# ---------------------------------------------------------------------------

class TestSyncAllData:

    @pytest.mark.asyncio
    async def test_resources_synced_in_fixed_order(self, store, gateway_factory):
        fake = FakeMautic(records={"contacts": make_contacts(2)})
        engine = SyncEngine(store, gateway_factory=gateway_factory({URL_A: fake}))
        tenant = await store.register_tenant("A", URL_A, "cid", "cs", token_set=valid_token_set())

        result = await engine.sync_all_data(tenant.id)

        assert result["success"] is True
        assert list(result["results"]) == ["contacts", "campaigns", "emails", "segments"]
        assert result["results"]["contacts"]["synced"] == 2
        paths = [r.url.path for r in fake.requests]
        assert paths == ["/api/contacts", "/api/campaigns", "/api/emails", "/api/segments"]

    @pytest.mark.asyncio
    async def test_failure_stops_remaining_resources(self, store, gateway_factory, db):
        fake = FakeMautic(records={"contacts": make_contacts(3)})
        fake.failing.add("campaigns")
        engine = SyncEngine(store, gateway_factory=gateway_factory({URL_A: fake}))
        tenant = await store.register_tenant("A", URL_A, "cid", "cs", token_set=valid_token_set())

        with pytest.raises(ResourceSyncError) as exc_info:
            await engine.sync_all_data(tenant.id)

        assert exc_info.value.resource == "campaigns"
        assert exc_info.value.tenant_id == tenant.id
        assert exc_info.value.__cause__ is exc_info.value.cause
        # Contacts already written stay written
        assert len(await _rows(db, Contact)) == 3
        assert fake.calls_to("/api/emails") == []

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, store):
        with pytest.raises(NotFoundError):
            await SyncEngine(store).sync_all_data(123)


# ---------------------------------------------------------------------------
# Batch sync across tenants
# ---------------------------------------------------------------------------

class TestSyncAllClients:

    async def _three_tenants(self, store):
        a = await store.register_tenant("A", URL_A, "cid", "cs", token_set=valid_token_set())
        b = await store.register_tenant("B", URL_B, "cid", "cs", token_set=valid_token_set())
        c = await store.register_tenant("C", URL_C, "cid", "cs", token_set=valid_token_set())
        await store.deactivate_tenant(c.id)
        return a, b, c

    @pytest_asyncio.fixture
    async def file_store(self, tmp_path, codec):
        # Concurrent sessions need separate connections, which in-memory SQLite can't give us
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")
        await database.create_all()
        yield TenantStore(database.session_factory, codec=codec)
        await database.dispose()

    @pytest.mark.asyncio
    async def test_failing_tenant_is_isolated(self, store, gateway_factory):
        await self._assert_isolated(store, gateway_factory, concurrency=1)

    @pytest.mark.asyncio
    async def test_failing_tenant_is_isolated_when_concurrent(self, file_store, gateway_factory):
        await self._assert_isolated(file_store, gateway_factory, concurrency=3)

    async def _assert_isolated(self, store, gateway_factory, concurrency):
        fake_a = FakeMautic(records={"contacts": make_contacts(4)})
        fake_b = FakeMautic(records={"contacts": make_contacts(2)})
        fake_b.failing.add("contacts")
        fake_c = FakeMautic(records={"contacts": make_contacts(1)})
        engine = SyncEngine(
            store,
            gateway_factory=gateway_factory({URL_A: fake_a, URL_B: fake_b, URL_C: fake_c}),
            tenant_concurrency=concurrency,
        )
        a, b, c = await self._three_tenants(store)

        batch = await engine.sync_all_clients()

        assert batch["success"] is True
        results = batch["results"]
        assert [r["tenant_id"] for r in results] == [a.id, b.id]
        assert results[0]["success"] is True
        assert results[0]["tenant_name"] == "A"
        assert results[0]["results"]["contacts"]["synced"] == 4
        assert results[1]["success"] is False
        assert "contacts" in results[1]["error"]
        assert fake_c.requests == []
        assert await store.count_entities(Contact, a.id) == 4

    @pytest.mark.asyncio
    async def test_tenant_without_token_does_not_stop_batch(self, store, gateway_factory):
        fake_a = FakeMautic()
        fake_b = FakeMautic(records={"segments": [{"id": 1, "name": "All"}]})
        engine = SyncEngine(store, gateway_factory=gateway_factory({URL_A: fake_a, URL_B: fake_b}))
        await store.register_tenant("A", URL_A, "cid", "cs")
        b = await store.register_tenant("B", URL_B, "cid", "cs", token_set=valid_token_set())

        results = (await engine.sync_all_clients())["results"]

        assert [r["success"] for r in results] == [False, True]
        assert await store.count_entities(Segment, b.id) == 1

    @pytest.mark.asyncio
    async def test_no_active_tenants(self, store):
        assert await SyncEngine(store).sync_all_clients() == {"success": True, "results": []}


# ---------------------------------------------------------------------------
# Registration and token management
# ---------------------------------------------------------------------------

class TestRegistrationFlow:

    @pytest.mark.asyncio
    async def test_register_with_credentials_obtains_token(self, store, gateway_factory, codec):
        fake = FakeMautic()
        engine = SyncEngine(store, gateway_factory=gateway_factory({URL_A: fake}))

        tenant = await engine.register_tenant("A", URL_A, "cid", "cs", username="admin", password="pw")

        assert codec.decrypt(tenant.access_token) == "fresh-access"
        assert len(fake.calls_to("/oauth/v2/token")) == 1

    @pytest.mark.asyncio
    async def test_failed_authentication_persists_nothing(self, store, gateway_factory):
        fake = FakeMautic()
        fake.token_status = 401
        engine = SyncEngine(store, gateway_factory=gateway_factory({URL_A: fake}))

        with pytest.raises(AuthenticationError):
            await engine.register_tenant("A", URL_A, "cid", "cs", username="admin", password="bad")

        assert await store.list_tenants() == []

    @pytest.mark.asyncio
    async def test_register_without_credentials(self, store):
        tenant = await SyncEngine(store).register_tenant("A", URL_A, "cid", "cs")
        assert tenant.access_token is None

    @pytest.mark.asyncio
    async def test_authenticate_tenant_saves_tokens(self, store, gateway_factory, codec):
        fake = FakeMautic()
        engine = SyncEngine(store, gateway_factory=gateway_factory({URL_A: fake}))
        tenant = await store.register_tenant("A", URL_A, "cid", "cs")

        token_set = await engine.authenticate_tenant(tenant.id, "admin", "pw")

        assert token_set.access_token == "fresh-access"
        stored = await store.get_tenant(tenant.id)
        assert codec.decrypt(stored.access_token) == "fresh-access"

    @pytest.mark.asyncio
    async def test_refresh_tenant_tokens(self, store, gateway_factory, codec):
        fake = FakeMautic(token_payload={"access_token": "rotated", "expires_in": 600})
        engine = SyncEngine(store, gateway_factory=gateway_factory({URL_A: fake}))
        tenant = await store.register_tenant("A", URL_A, "cid", "cs", token_set=valid_token_set("a1", "r1"))

        await engine.refresh_tenant_tokens(tenant.id)

        stored = await store.get_tenant(tenant.id)
        assert codec.decrypt(stored.access_token) == "rotated"
        assert codec.decrypt(stored.refresh_token) == "r1"

    @pytest.mark.asyncio
    async def test_connection_check(self, store, gateway_factory):
        engine = SyncEngine(store, gateway_factory=gateway_factory({URL_A: FakeMautic()}))
        tenant = await store.register_tenant("A", URL_A, "cid", "cs", token_set=valid_token_set())

        assert (await engine.test_connection(tenant.id))["success"] is True

    @pytest.mark.asyncio
    async def test_connection_check_with_undecryptable_credentials(self, store, db):
        tenant = await store.register_tenant("A", URL_A, "cid", "cs", token_set=valid_token_set())
        other_store = TenantStore(db.session_factory, codec=CredentialCodec("a-different-key"))

        result = await SyncEngine(other_store).test_connection(tenant.id)

        assert result["success"] is False
