"""
Dashboard read model.
Aggregates and paginated listings over the synced tables for one tenant.
Read-only; never talks to Mautic.
"""

import logging
import math
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, List

from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import async_sessionmaker

from models import Tenant, Contact, Campaign, EmailStat, Segment
from tenant_store import NotFoundError

logger = logging.getLogger(__name__)

RECENT_DAYS = 30
TOP_LIMIT = 5
DEFAULT_PAGE_LIMIT = 50

CONTACT_FIELDS = ("id", "mautic_contact_id", "first_name", "last_name", "email", "phone",
                  "company", "city", "country", "points", "last_active", "created_at")
CAMPAIGN_FIELDS = ("id", "mautic_campaign_id", "name", "description", "is_published",
                   "total_contacts", "created_at", "updated_at")
EMAIL_FIELDS = ("id", "mautic_email_id", "name", "subject", "sent_count", "read_count",
                "clicked_count", "failed_count", "open_rate", "click_rate", "published_at", "created_at")
SEGMENT_FIELDS = ("id", "mautic_segment_id", "name", "description", "is_published", "is_global",
                  "contact_count", "created_by", "date_added", "date_modified", "created_at")


def _as_dict(row, fields) -> Dict[str, Any]:
    return {field: getattr(row, field) for field in fields}


def _pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


class DashboardService:
    """Per-tenant dashboard queries."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def _require_tenant(self, session, tenant_id: int) -> Tenant:
        tenant = await session.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError(f"Client not found: {tenant_id}")
        return tenant

    @staticmethod
    async def _count(session, model, *criteria) -> int:
        result = await session.execute(select(func.count()).select_from(model).where(*criteria))
        return result.scalar_one()

    async def get_overview(self, tenant_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(days=RECENT_DAYS)

        async with self.session_factory() as session:
            tenant = await self._require_tenant(session, tenant_id)

            email_totals = (await session.execute(
                select(
                    func.coalesce(func.sum(EmailStat.sent_count), 0),
                    func.coalesce(func.sum(EmailStat.read_count), 0),
                    func.coalesce(func.sum(EmailStat.clicked_count), 0),
                    func.coalesce(func.sum(EmailStat.failed_count), 0),
                    func.avg(EmailStat.open_rate),
                    func.avg(EmailStat.click_rate),
                ).where(EmailStat.tenant_id == tenant_id)
            )).one()

            growth_day = func.date(Contact.created_at)
            growth_rows = (await session.execute(
                select(growth_day.label("day"), func.count().label("count"))
                .where(Contact.tenant_id == tenant_id, Contact.created_at >= since)
                .group_by(growth_day)
                .order_by(growth_day)
            )).all()

            top_campaigns = (await session.execute(
                select(Campaign)
                .where(Campaign.tenant_id == tenant_id)
                .order_by(Campaign.total_contacts.desc())
                .limit(TOP_LIMIT)
            )).scalars().all()

            top_emails = (await session.execute(
                select(EmailStat)
                .where(EmailStat.tenant_id == tenant_id, EmailStat.sent_count > 0)
                .order_by(EmailStat.open_rate.desc())
                .limit(TOP_LIMIT)
            )).scalars().all()

            summary = {
                "total_contacts": await self._count(session, Contact, Contact.tenant_id == tenant_id),
                "total_campaigns": await self._count(session, Campaign, Campaign.tenant_id == tenant_id),
                "total_segments": await self._count(session, Segment, Segment.tenant_id == tenant_id),
                "total_emails": await self._count(session, EmailStat, EmailStat.tenant_id == tenant_id),
                "total_emails_sent": int(email_totals[0]),
                "total_emails_opened": int(email_totals[1]),
                "total_emails_clicked": int(email_totals[2]),
                "total_emails_failed": int(email_totals[3]),
                "avg_open_rate": round(float(email_totals[4] or 0), 2),
                "avg_click_rate": round(float(email_totals[5] or 0), 2),
                "recent_contacts_count": await self._count(
                    session, Contact, Contact.tenant_id == tenant_id, Contact.created_at >= since
                ),
            }

        return {
            "client": {
                "id": tenant.id,
                "name": tenant.name,
                "base_url": tenant.base_url,
                "last_sync_at": tenant.last_sync_at,
            },
            "summary": summary,
            "charts": {
                "contact_growth": [{"date": str(row.day), "count": int(row.count)} for row in growth_rows],
            },
            "top_campaigns": [
                _as_dict(c, ("id", "name", "total_contacts", "is_published")) for c in top_campaigns
            ],
            "top_emails": [
                _as_dict(e, ("id", "subject", "name", "sent_count", "read_count", "open_rate", "click_rate"))
                for e in top_emails
            ],
        }

    async def _list(self, tenant_id: int, model, fields, order_by, page: int, limit: int,
                    criteria: List = None) -> Dict[str, Any]:
        page = max(1, page)
        limit = max(1, limit)
        where = [model.tenant_id == tenant_id, *(criteria or [])]

        async with self.session_factory() as session:
            await self._require_tenant(session, tenant_id)
            rows = (await session.execute(
                select(model).where(*where).order_by(order_by)
                .offset((page - 1) * limit).limit(limit)
            )).scalars().all()
            total = await self._count(session, model, *where)

        return {
            "items": [_as_dict(row, fields) for row in rows],
            "pagination": _pagination(page, limit, total),
        }

    async def list_contacts(self, tenant_id: int, page: int = 1, limit: int = DEFAULT_PAGE_LIMIT,
                            search: str = "") -> Dict[str, Any]:
        criteria = []
        if search:
            pattern = f"%{search}%"
            criteria.append(or_(
                Contact.first_name.ilike(pattern),
                Contact.last_name.ilike(pattern),
                Contact.email.ilike(pattern),
                Contact.company.ilike(pattern),
            ))
        return await self._list(tenant_id, Contact, CONTACT_FIELDS, Contact.created_at.desc(),
                                page, limit, criteria)

    async def list_campaigns(self, tenant_id: int, page: int = 1, limit: int = DEFAULT_PAGE_LIMIT) -> Dict[str, Any]:
        return await self._list(tenant_id, Campaign, CAMPAIGN_FIELDS, Campaign.total_contacts.desc(),
                                page, limit)

    async def list_emails(self, tenant_id: int, page: int = 1, limit: int = DEFAULT_PAGE_LIMIT) -> Dict[str, Any]:
        return await self._list(tenant_id, EmailStat, EMAIL_FIELDS, EmailStat.published_at.desc(),
                                page, limit)

    async def list_segments(self, tenant_id: int, page: int = 1, limit: int = DEFAULT_PAGE_LIMIT) -> Dict[str, Any]:
        return await self._list(tenant_id, Segment, SEGMENT_FIELDS, Segment.contact_count.desc(),
                                page, limit)
