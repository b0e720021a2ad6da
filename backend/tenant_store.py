"""
Tenant Store.
Persists registered Mautic instances and their synced entities.
Credentials are encrypted on the way in; decrypted values never leave this module or the gateway.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Dict, List, Any

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from crypto_utils import CredentialCodec, get_codec
from mautic_api import TokenSet
from models import Tenant, REMOTE_ID_COLUMNS, ENTITY_MODELS

logger = logging.getLogger(__name__)


class NotFoundError(Exception):
    """Raised when a tenant (or other local record) does not exist."""
    pass


def normalize_base_url(base_url: str) -> str:
    return base_url.strip().rstrip("/")


def tenant_public_view(tenant: Tenant) -> Dict[str, Any]:
    """Tenant fields safe to hand to callers: no credentials, just a has_token flag."""
    return {
        "id": tenant.id,
        "name": tenant.name,
        "base_url": tenant.base_url,
        "is_active": tenant.is_active,
        "has_token": bool(tenant.access_token),
        "token_expires_at": tenant.token_expires_at,
        "last_sync_at": tenant.last_sync_at,
        "created_at": tenant.created_at,
        "updated_at": tenant.updated_at,
    }


class TenantStore:
    """Repository over mautic_tenants and the per-tenant entity tables."""

    def __init__(self, session_factory: async_sessionmaker, codec: CredentialCodec = None):
        self.session_factory = session_factory
        self.codec = codec or get_codec()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # ==================== Tenants ====================

    async def register_tenant(self, name: str, base_url: str, client_id: str, client_secret: str,
                              token_set: Optional[TokenSet] = None) -> Tenant:
        """Create a tenant row with encrypted credentials (and tokens, if already obtained)."""
        tenant = Tenant(
            name=name,
            base_url=normalize_base_url(base_url),
            client_id=self.codec.encrypt(client_id),
            client_secret=self.codec.encrypt(client_secret),
            is_active=True,
        )
        if token_set:
            tenant.access_token = self.codec.encrypt(token_set.access_token)
            tenant.refresh_token = self.codec.encrypt(token_set.refresh_token)
            tenant.token_expires_at = token_set.expires_at

        async with self.session_factory() as session:
            async with session.begin():
                session.add(tenant)

        logger.info(f"Registered tenant {tenant.id} ({name}) at {tenant.base_url}")
        return tenant

    async def get_tenant(self, tenant_id: int) -> Optional[Tenant]:
        async with self.session_factory() as session:
            return await session.get(Tenant, tenant_id)

    async def require_tenant(self, tenant_id: int) -> Tenant:
        tenant = await self.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError(f"Client not found: {tenant_id}")
        return tenant

    async def list_tenants(self) -> List[Dict[str, Any]]:
        """All tenants, newest first, as public views."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Tenant).order_by(Tenant.created_at.desc(), Tenant.id.desc())
            )
            return [tenant_public_view(t) for t in result.scalars().all()]

    async def list_active_tenants(self) -> List[Tenant]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Tenant).where(Tenant.is_active.is_(True)).order_by(Tenant.id)
            )
            return list(result.scalars().all())

    async def update_tenant(self, tenant_id: int, name: str = None, base_url: str = None,
                            client_id: str = None, client_secret: str = None,
                            is_active: bool = None) -> Tenant:
        """Partial update; only the provided fields change."""
        async with self.session_factory() as session:
            async with session.begin():
                tenant = await session.get(Tenant, tenant_id)
                if tenant is None:
                    raise NotFoundError(f"Client not found: {tenant_id}")

                if name:
                    tenant.name = name
                if base_url:
                    tenant.base_url = normalize_base_url(base_url)
                if client_id:
                    tenant.client_id = self.codec.encrypt(client_id)
                if client_secret:
                    tenant.client_secret = self.codec.encrypt(client_secret)
                if is_active is not None:
                    tenant.is_active = is_active
                tenant.updated_at = self._now()

        return tenant

    async def deactivate_tenant(self, tenant_id: int) -> Tenant:
        return await self.update_tenant(tenant_id, is_active=False)

    async def delete_tenant(self, tenant_id: int):
        """Delete a tenant and every entity synced for it."""
        async with self.session_factory() as session:
            async with session.begin():
                tenant = await session.get(Tenant, tenant_id)
                if tenant is None:
                    raise NotFoundError(f"Client not found: {tenant_id}")

                for model in ENTITY_MODELS:
                    await session.execute(delete(model).where(model.tenant_id == tenant_id))
                await session.delete(tenant)

        logger.info(f"Deleted tenant {tenant_id} and its synced data")

    async def save_tokens(self, tenant_id: int, token_set: TokenSet):
        """Persist a token set (re-encrypted). A missing refresh token leaves the stored one intact."""
        values = {
            "access_token": self.codec.encrypt(token_set.access_token),
            "token_expires_at": token_set.expires_at,
            "updated_at": self._now(),
        }
        if token_set.refresh_token:
            values["refresh_token"] = self.codec.encrypt(token_set.refresh_token)

        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(Tenant).where(Tenant.id == tenant_id).values(**values)
                )
                if result.rowcount == 0:
                    raise NotFoundError(f"Client not found: {tenant_id}")

    async def mark_synced(self, tenant_id: int, when: datetime = None):
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Tenant).where(Tenant.id == tenant_id).values(last_sync_at=when or self._now())
                )

    # ==================== Synced entities ====================

    async def upsert_entity(self, model, tenant_id: int, remote_id: int, values: Dict[str, Any]) -> str:
        """
        Insert or update one entity keyed by (tenant_id, remote id).
        Each call is its own transaction. Returns "created" or "updated".
        """
        try:
            return await self._upsert_once(model, tenant_id, remote_id, values)
        except IntegrityError:
            # Another writer inserted the same key between our SELECT and INSERT
            logger.debug(f"Upsert race on {model.__tablename__} ({tenant_id}, {remote_id}); retrying as update")
            return await self._upsert_once(model, tenant_id, remote_id, values)

    async def _upsert_once(self, model, tenant_id: int, remote_id: int, values: Dict[str, Any]) -> str:
        remote_column = REMOTE_ID_COLUMNS[model]
        now = self._now()

        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(model).where(
                        model.tenant_id == tenant_id,
                        getattr(model, remote_column) == remote_id,
                    )
                )
                row = result.scalar_one_or_none()

                if row is not None:
                    for key, value in values.items():
                        setattr(row, key, value)
                    row.updated_at = now
                    return "updated"

                row = model(tenant_id=tenant_id, **{remote_column: remote_id}, **values)
                row.created_at = now
                row.updated_at = now
                session.add(row)
                return "created"

    async def count_entities(self, model, tenant_id: int) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(model).where(model.tenant_id == tenant_id)
            )
            return result.scalar_one()
