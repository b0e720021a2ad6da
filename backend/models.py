"""SQLAlchemy Models for the Mautic dashboard sync store"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Boolean, Integer, Float, Text, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from database import Base


def utc_now():
    return datetime.now(timezone.utc)


# Registered Mautic instances (tenants). Credential columns hold crypto_utils envelopes.
class Tenant(Base):
    __tablename__ = 'mautic_tenants'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    base_url = Column(String(500), nullable=False)
    client_id = Column(Text, nullable=False)
    client_secret = Column(Text, nullable=False)
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime(timezone=True))
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    last_sync_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    # Bulk deletes are issued explicitly by TenantStore.delete_tenant
    contacts = relationship('Contact', back_populates='tenant', passive_deletes=True)
    campaigns = relationship('Campaign', back_populates='tenant', passive_deletes=True)
    email_stats = relationship('EmailStat', back_populates='tenant', passive_deletes=True)
    segments = relationship('Segment', back_populates='tenant', passive_deletes=True)


class Contact(Base):
    __tablename__ = 'contacts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey('mautic_tenants.id', ondelete='CASCADE'), nullable=False, index=True)
    mautic_contact_id = Column(Integer, nullable=False)
    first_name = Column(String(255))
    last_name = Column(String(255))
    email = Column(String(255))
    phone = Column(String(100))
    company = Column(String(255))
    city = Column(String(255))
    country = Column(String(255))
    last_active = Column(DateTime(timezone=True))
    points = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
    updated_at = Column(DateTime(timezone=True), default=utc_now)

    tenant = relationship('Tenant', back_populates='contacts')

    __table_args__ = (
        UniqueConstraint('tenant_id', 'mautic_contact_id', name='uq_contacts_tenant_remote'),
    )


class Campaign(Base):
    __tablename__ = 'campaigns'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey('mautic_tenants.id', ondelete='CASCADE'), nullable=False, index=True)
    mautic_campaign_id = Column(Integer, nullable=False)
    name = Column(String(255))
    description = Column(Text)
    is_published = Column(Boolean, default=False, nullable=False)
    total_contacts = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now)

    tenant = relationship('Tenant', back_populates='campaigns')

    __table_args__ = (
        UniqueConstraint('tenant_id', 'mautic_campaign_id', name='uq_campaigns_tenant_remote'),
    )


class EmailStat(Base):
    __tablename__ = 'email_stats'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey('mautic_tenants.id', ondelete='CASCADE'), nullable=False, index=True)
    mautic_email_id = Column(Integer, nullable=False)
    subject = Column(String(500))
    name = Column(String(255))
    sent_count = Column(Integer, default=0, nullable=False)
    read_count = Column(Integer, default=0, nullable=False)
    clicked_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)
    # Percentages, computed at sync time and stored as-is
    open_rate = Column(Float, default=0, nullable=False)
    click_rate = Column(Float, default=0, nullable=False)
    published_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now)

    tenant = relationship('Tenant', back_populates='email_stats')

    __table_args__ = (
        UniqueConstraint('tenant_id', 'mautic_email_id', name='uq_email_stats_tenant_remote'),
    )


class Segment(Base):
    __tablename__ = 'segments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey('mautic_tenants.id', ondelete='CASCADE'), nullable=False, index=True)
    mautic_segment_id = Column(Integer, nullable=False)
    name = Column(String(255))
    description = Column(Text)
    is_published = Column(Boolean, default=False, nullable=False)
    is_global = Column(Boolean, default=False, nullable=False)
    contact_count = Column(Integer, default=0, nullable=False)
    created_by = Column(String(255))
    date_added = Column(DateTime(timezone=True))
    date_modified = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now)

    tenant = relationship('Tenant', back_populates='segments')

    __table_args__ = (
        UniqueConstraint('tenant_id', 'mautic_segment_id', name='uq_segments_tenant_remote'),
    )


# Remote-id column per synced entity model (the second half of the upsert key)
REMOTE_ID_COLUMNS = {
    Contact: 'mautic_contact_id',
    Campaign: 'mautic_campaign_id',
    EmailStat: 'mautic_email_id',
    Segment: 'mautic_segment_id',
}

ENTITY_MODELS = tuple(REMOTE_ID_COLUMNS)
