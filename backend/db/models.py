"""
Database Models — SQLAlchemy ORM models for Supabase PostgreSQL.

Supabase manages authentication in its ``auth.users`` table.  We keep a
lightweight ``profiles`` table keyed by the Supabase user UUID; everything
billable hangs off an organization.

Tables:
  - profiles:              App-specific user data
  - organizations:         Billing account (plan, credits, trial counter)
  - organization_members:  User ↔ organization with role
  - user_searches:         One lead-generation request and its status
  - leads:                 Generated leads (batch-inserted per search)
  - lead_metadata:         Per-(lead, user) favorite flag + note
  - serp_cache:            Provider results keyed by query hash, 24h expiry
  - usage_records:         Append-only credit ledger
  - lead_tags / lead_tag_assignments:  Organization-scoped tagging
  - bulk_actions:          Audit of bulk operations on leads
  - saved_searches:        Named, re-runnable search criteria
  - search_alerts:         One alert per saved search
"""

from datetime import datetime, timezone
from typing import Optional

import uuid as _uuid

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    Text,
    DateTime,
    ForeignKey,
    JSON,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(_uuid.uuid4())


PLANS = ("trial", "starter", "growth", "agency")
ROLES = ("owner", "admin", "member")
SEARCH_STATUSES = ("pending", "processing", "completed", "failed")
COMPANY_SIZES = ("startup", "small", "medium", "large", "enterprise")
ALERT_FREQUENCIES = ("daily", "weekly", "monthly")
ALERT_TYPES = ("new_leads", "threshold_reached", "scheduled")


class Profile(Base):
    """App-specific user data.  ``id`` is the Supabase auth.users UUID."""
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True)  # Supabase user UUID
    email: Mapped[Optional[str]] = mapped_column(String(255), index=True, nullable=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    memberships: Mapped[list["OrganizationMember"]] = relationship(
        back_populates="profile", cascade="all, delete-orphan"
    )


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255))
    owner_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("profiles.id"), index=True)
    plan: Mapped[str] = mapped_column(String(20), default="trial")  # trial, starter, growth, agency
    credits: Mapped[int] = mapped_column(Integer, default=0)
    trial_searches_used: Mapped[int] = mapped_column(Integer, default=0)
    invite_code: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)
    # Stripe billing
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(String(255), index=True, nullable=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    members: Mapped[list["OrganizationMember"]] = relationship(
        back_populates="organization", cascade="all, delete-orphan"
    )


class OrganizationMember(Base):
    __tablename__ = "organization_members"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("organizations.id"), index=True
    )
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("profiles.id"), index=True)
    role: Mapped[str] = mapped_column(String(20), default="member")  # owner, admin, member
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    organization: Mapped["Organization"] = relationship(back_populates="members")
    profile: Mapped["Profile"] = relationship(back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_org_member"),
    )


class UserSearch(Base):
    __tablename__ = "user_searches"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("organizations.id"), index=True
    )
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), index=True)
    business_type: Mapped[str] = mapped_column(String(100))
    country: Mapped[str] = mapped_column(String(50))
    state: Mapped[str] = mapped_column(String(50))
    city: Mapped[str] = mapped_column(String(50))
    leads_requested: Mapped[int] = mapped_column(Integer)
    # Advanced search criteria (null for plain generation)
    industry: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    company_size: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    location_radius: Mapped[int] = mapped_column(Integer, default=0)
    advanced_filters: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending → processing → completed | failed
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    leads: Mapped[list["Lead"]] = relationship(back_populates="search", cascade="all, delete-orphan")


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("organizations.id"), index=True
    )
    search_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("user_searches.id"), index=True
    )
    business_name: Mapped[str] = mapped_column(String(500))
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    website: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    confidence_score: Mapped[int] = mapped_column(Integer, default=50)
    # Enrichment
    industry: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    company_size: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    employee_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    annual_revenue: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    location_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # {address, description, source}
    lead_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    verification_status: Mapped[str] = mapped_column(String(20), default="unverified")  # unverified, verified, invalid
    tags: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    search: Mapped["UserSearch"] = relationship(back_populates="leads")
    metadata_rows: Mapped[list["LeadMetadata"]] = relationship(
        back_populates="lead", cascade="all, delete-orphan"
    )
    tag_assignments: Mapped[list["LeadTagAssignment"]] = relationship(
        back_populates="lead", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_leads_org_search", "organization_id", "search_id"),
    )


class LeadMetadata(Base):
    """Favorite flag and note, one row per (lead, viewer)."""
    __tablename__ = "lead_metadata"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    lead_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("leads.id"), index=True)
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), index=True)
    organization_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), nullable=True)
    is_favorited: Mapped[bool] = mapped_column(Boolean, default=False)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    lead: Mapped["Lead"] = relationship(back_populates="metadata_rows")

    __table_args__ = (
        UniqueConstraint("lead_id", "user_id", name="uq_lead_metadata_viewer"),
    )


class SerpCache(Base):
    __tablename__ = "serp_cache"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    query_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    results: Mapped[list] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class UsageRecord(Base):
    """Append-only ledger row; never updated or deleted."""
    __tablename__ = "usage_records"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("organizations.id"), index=True
    )
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), nullable=True)
    action_type: Mapped[str] = mapped_column(String(50))  # lead_generation, lead_generation_completed
    credits_used: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class LeadTag(Base):
    __tablename__ = "lead_tags"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("organizations.id"), index=True
    )
    name: Mapped[str] = mapped_column(String(50))
    color: Mapped[str] = mapped_column(String(7), default="#3B82F6")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    assignments: Mapped[list["LeadTagAssignment"]] = relationship(
        back_populates="tag", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_lead_tag_name"),
    )


class LeadTagAssignment(Base):
    __tablename__ = "lead_tag_assignments"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    lead_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("leads.id"), index=True)
    tag_id: Mapped[str] = mapped_column(UUID(as_uuid=False), ForeignKey("lead_tags.id"), index=True)
    assigned_by: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    lead: Mapped["Lead"] = relationship(back_populates="tag_assignments")
    tag: Mapped["LeadTag"] = relationship(back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("lead_id", "tag_id", name="uq_lead_tag_assignment"),
    )


class BulkAction(Base):
    __tablename__ = "bulk_actions"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("organizations.id"), index=True
    )
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False))
    action_type: Mapped[str] = mapped_column(String(20))  # tag, export, delete, update_score, verify
    target_leads: Mapped[list] = mapped_column(JSON)
    action_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending, processing, completed, failed
    results: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class SavedSearch(Base):
    __tablename__ = "saved_searches"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("organizations.id"), index=True
    )
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), index=True)
    name: Mapped[str] = mapped_column(String(100))
    search_criteria: Mapped[dict] = mapped_column(JSON)
    alert_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    alert_frequency: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # daily, weekly, monthly
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    results_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    alerts: Mapped[list["SearchAlert"]] = relationship(
        back_populates="saved_search", cascade="all, delete-orphan"
    )


class SearchAlert(Base):
    __tablename__ = "search_alerts"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_new_id)
    saved_search_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("saved_searches.id"), index=True
    )
    organization_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("organizations.id"), index=True
    )
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False))
    alert_type: Mapped[str] = mapped_column(String(30), default="new_leads")  # new_leads, threshold_reached, scheduled
    trigger_criteria: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    saved_search: Mapped["SavedSearch"] = relationship(back_populates="alerts")

    __table_args__ = (
        UniqueConstraint("saved_search_id", name="uq_search_alert_saved_search"),
    )
