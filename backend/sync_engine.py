"""
Mautic Sync Engine.
Pulls contacts, campaigns, emails and segments from every registered Mautic tenant
and upserts them into the local store, keyed by (tenant_id, remote id).

Per tenant, resources are synced in a fixed order and pages/records are processed
strictly one at a time. Across tenants, a batch run isolates failures: one broken
tenant never stops the others.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Callable, Dict, Any

import config
from crypto_utils import CodecError
from mautic_api import MauticAPIClient, TokenSet, NoTokenError, ensure_utc
from models import Tenant, Contact, Campaign, EmailStat, Segment
from tenant_store import TenantStore

logger = logging.getLogger(__name__)

# Fixed order used by sync_all_data
SYNC_ORDER = ("contacts", "campaigns", "emails", "segments")


class ResourceSyncError(Exception):
    """One resource type failed while syncing a tenant; the original error is chained."""

    def __init__(self, tenant_id: int, resource: str, cause: Exception):
        super().__init__(f"Failed to sync {resource} for client {tenant_id}: {cause}")
        self.tenant_id = tenant_id
        self.resource = resource
        self.cause = cause


# ========================================
# Field normalization
# ========================================

def _to_int(value, default: Optional[int] = 0) -> Optional[int]:
    """Lenient integer parsing: ints and numeric strings pass, everything else is the default."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    try:
        return int(float(str(value).strip()))
    except (TypeError, ValueError, OverflowError):
        return default


def _to_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true")
    return value is True or value == 1


def _text(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _parse_datetime(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        return ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        logger.debug(f"Unparseable Mautic date: {value!r}")
        return None


def compute_rate(numerator: int, sent_count: int) -> float:
    """Percentage of sent emails, rounded to 2 decimals; 0 when nothing was sent."""
    if not sent_count:
        return 0.0
    return round(numerator / sent_count * 100, 2)


def normalize_contact(raw: dict) -> dict:
    fields = raw.get("fields") if isinstance(raw.get("fields"), dict) else {}
    core = fields.get("all") if isinstance(fields.get("all"), dict) else {}
    return {
        "first_name": _text(core.get("firstname")),
        "last_name": _text(core.get("lastname")),
        "email": _text(core.get("email")),
        "phone": _text(core.get("phone")),
        "company": _text(core.get("company")),
        "city": _text(core.get("city")),
        "country": _text(core.get("country")),
        "last_active": _parse_datetime(raw.get("lastActive")),
        "points": _to_int(raw.get("points")),
    }


def normalize_campaign(raw: dict) -> dict:
    stats = raw.get("stats") if isinstance(raw.get("stats"), dict) else {}
    return {
        "name": _text(raw.get("name")),
        "description": _text(raw.get("description")),
        "is_published": _to_bool(raw.get("isPublished")),
        "total_contacts": _to_int(stats.get("total_contacts")),
    }


def normalize_email(raw: dict) -> dict:
    sent_count = _to_int(raw.get("sentCount"))
    read_count = _to_int(raw.get("readCount"))
    clicked_count = _to_int(raw.get("clickCount"))
    return {
        "subject": _text(raw.get("subject")),
        "name": _text(raw.get("name")),
        "sent_count": sent_count,
        "read_count": read_count,
        "clicked_count": clicked_count,
        "failed_count": _to_int(raw.get("failedCount")),
        "open_rate": compute_rate(read_count, sent_count),
        "click_rate": compute_rate(clicked_count, sent_count),
        "published_at": _parse_datetime(raw.get("publishUp")),
    }


def normalize_segment(raw: dict) -> dict:
    created_by = raw.get("createdBy")
    return {
        "name": _text(raw.get("name")),
        "description": _text(raw.get("description")),
        "is_published": _to_bool(raw.get("isPublished")),
        "is_global": _to_bool(raw.get("isGlobal")),
        "contact_count": _to_int(raw.get("contactCount")),
        "created_by": str(created_by) if created_by else None,
        "date_added": _parse_datetime(raw.get("dateAdded")),
        "date_modified": _parse_datetime(raw.get("dateModified")),
    }


@dataclass(frozen=True)
class SyncTarget:
    model: type
    normalize: Callable[[dict], dict]


SYNC_TARGETS: Dict[str, SyncTarget] = {
    "contacts": SyncTarget(Contact, normalize_contact),
    "campaigns": SyncTarget(Campaign, normalize_campaign),
    "emails": SyncTarget(EmailStat, normalize_email),
    "segments": SyncTarget(Segment, normalize_segment),
}


def default_gateway_factory(store: TenantStore) -> Callable[..., MauticAPIClient]:
    def factory(tenant: Tenant, **kwargs) -> MauticAPIClient:
        return MauticAPIClient.from_tenant(tenant, codec=store.codec, **kwargs)
    return factory


class SyncEngine:
    """Orchestrates token upkeep, full fetches and upserts for every tenant."""

    def __init__(self, store: TenantStore, gateway_factory: Callable[..., MauticAPIClient] = None,
                 tenant_concurrency: int = None):
        self.store = store
        self.gateway_factory = gateway_factory or default_gateway_factory(store)
        self.tenant_concurrency = max(1, tenant_concurrency or config.SYNC_TENANT_CONCURRENCY)

    def _gateway_for(self, tenant: Tenant) -> MauticAPIClient:
        tenant_id = tenant.id

        async def persist_tokens(token_set: TokenSet):
            await self.store.save_tokens(tenant_id, token_set)

        return self.gateway_factory(tenant, on_token_refresh=persist_tokens)

    async def _prepare_gateway(self, tenant_id: int) -> MauticAPIClient:
        tenant = await self.store.require_tenant(tenant_id)

        if not tenant.access_token:
            raise NoTokenError(
                f"No access token available for client {tenant_id}. "
                "Please authenticate first by providing username/password."
            )

        gateway = self._gateway_for(tenant)
        if gateway.is_token_expired() and gateway.refresh_token:
            # persisted through the gateway's on_token_refresh hook
            await gateway.refresh_access_token()
        return gateway

    # ==================== Per-resource sync ====================

    async def _sync_resource(self, tenant_id: int, resource: str) -> dict:
        target = SYNC_TARGETS[resource]
        gateway = await self._prepare_gateway(tenant_id)

        records = await gateway.fetch_all(resource)

        synced = 0
        for raw in records:
            remote_id = _to_int(raw.get("id"), default=None)
            if remote_id is None:
                raise ValueError(f"Mautic returned a {resource} record without a numeric id")

            await self.store.upsert_entity(target.model, tenant_id, remote_id, target.normalize(raw))
            synced += 1

        if resource == "contacts":
            await self.store.mark_synced(tenant_id)

        logger.info(f"Synced {synced} {resource} for client {tenant_id}")
        return {"success": True, "synced": synced, "total": len(records)}

    async def sync_contacts(self, tenant_id: int) -> dict:
        return await self._sync_resource(tenant_id, "contacts")

    async def sync_campaigns(self, tenant_id: int) -> dict:
        return await self._sync_resource(tenant_id, "campaigns")

    async def sync_email_stats(self, tenant_id: int) -> dict:
        return await self._sync_resource(tenant_id, "emails")

    async def sync_segments(self, tenant_id: int) -> dict:
        return await self._sync_resource(tenant_id, "segments")

    # ==================== Tenant / batch sync ====================

    async def sync_all_data(self, tenant_id: int) -> dict:
        """
        Sync every resource type for one tenant, in SYNC_ORDER.
        The first failing resource aborts the rest and raises ResourceSyncError.
        """
        await self.store.require_tenant(tenant_id)

        results = {}
        for resource in SYNC_ORDER:
            try:
                results[resource] = await self._sync_resource(tenant_id, resource)
            except Exception as e:
                logger.error(f"Error syncing {resource} for client {tenant_id}: {e}")
                raise ResourceSyncError(tenant_id, resource, e) from e

        return {"success": True, "results": results}

    async def _sync_tenant_isolated(self, tenant: Tenant) -> dict:
        try:
            result = await self.sync_all_data(tenant.id)
            return {"tenant_id": tenant.id, "tenant_name": tenant.name, **result}
        except Exception as e:
            logger.error(f"Sync failed for client {tenant.id} ({tenant.name}): {e}")
            return {
                "tenant_id": tenant.id,
                "tenant_name": tenant.name,
                "success": False,
                "error": str(e),
            }

    async def sync_all_clients(self) -> dict:
        """
        Sync every active tenant. Per-tenant failures are recorded in that tenant's
        result slot; success=True only means the batch ran to completion.
        """
        tenants = await self.store.list_active_tenants()
        logger.info(f"Starting batch sync for {len(tenants)} active client(s)")

        if self.tenant_concurrency <= 1:
            results = []
            for tenant in tenants:
                results.append(await self._sync_tenant_isolated(tenant))
        else:
            semaphore = asyncio.Semaphore(self.tenant_concurrency)

            async def _bounded(tenant: Tenant):
                async with semaphore:
                    return await self._sync_tenant_isolated(tenant)

            results = list(await asyncio.gather(*[_bounded(t) for t in tenants]))

        failed = sum(1 for r in results if not r["success"])
        logger.info(f"Batch sync finished: {len(results) - failed} succeeded, {failed} failed")
        return {"success": True, "results": results}

    # ==================== Registration / tokens ====================

    async def register_tenant(self, name: str, base_url: str, client_id: str, client_secret: str,
                              username: str = None, password: str = None) -> Tenant:
        """
        Register a Mautic instance. With username/password, the password grant runs first
        and an AuthenticationError leaves nothing persisted.
        """
        token_set = None
        if username and password:
            candidate = Tenant(
                name=name,
                base_url=base_url,
                client_id=self.store.codec.encrypt(client_id),
                client_secret=self.store.codec.encrypt(client_secret),
            )
            gateway = self.gateway_factory(candidate)
            token_set = await gateway.get_initial_token(username, password)

        return await self.store.register_tenant(name, base_url, client_id, client_secret, token_set)

    async def authenticate_tenant(self, tenant_id: int, username: str, password: str) -> TokenSet:
        """Replace a tenant's tokens with a fresh password-grant token set."""
        tenant = await self.store.require_tenant(tenant_id)
        gateway = self.gateway_factory(tenant)
        token_set = await gateway.get_initial_token(username, password)
        await self.store.save_tokens(tenant_id, token_set)
        return token_set

    async def refresh_tenant_tokens(self, tenant_id: int) -> TokenSet:
        tenant = await self.store.require_tenant(tenant_id)
        gateway = self._gateway_for(tenant)
        return await gateway.refresh_access_token()

    async def test_connection(self, tenant_id: int) -> Dict[str, Any]:
        """Check one tenant's connection; stored credentials that fail to decrypt count as a failed check."""
        tenant = await self.store.require_tenant(tenant_id)
        try:
            gateway = self._gateway_for(tenant)
        except CodecError as e:
            return {"success": False, "message": str(e)}
        return await gateway.test_connection()

