"""
Lead Queries — read side of the dashboard plus per-user lead metadata.

  - list_leads:      paginated leads for a search / organization / user, with
                     search info and the caller's favorite + note joined in
  - search_view:     one search's leads with filters, sorting and pagination
  - metadata:        favorite flag + note per (lead, user): map, upsert, delete
  - stats / searches: dashboard counters and search history

Every entry point checks organization membership before returning rows.
"""

from __future__ import annotations

import logging
import math
from typing import Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Lead, LeadMetadata, UserSearch
from errors import AccessDenied, InvalidRequest, NotFound
from usage import validate_organization_access
from validation import LeadFilters, is_valid_email, is_valid_url

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


# ──────────────────────────────────────────────
# Serialization
# ──────────────────────────────────────────────

def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def lead_to_dict(lead: Lead, metadata: Optional[LeadMetadata] = None) -> dict:
    location = lead.location_data or {}
    data = {
        "id": lead.id,
        "organization_id": lead.organization_id,
        "search_id": lead.search_id,
        "business_name": lead.business_name,
        "email": lead.email,
        "phone": lead.phone,
        "website": lead.website,
        "confidence_score": lead.confidence_score,
        "industry": lead.industry,
        "company_size": lead.company_size,
        "address": location.get("address"),
        "description": location.get("description"),
        "lead_score": lead.lead_score,
        "verification_status": lead.verification_status,
        "tags": lead.tags or [],
        "created_at": _iso(lead.created_at),
    }
    if metadata is not None:
        data["is_favorited"] = bool(metadata.is_favorited)
        data["note"] = metadata.note
    return data


def search_to_dict(search: UserSearch) -> dict:
    return {
        "id": search.id,
        "organization_id": search.organization_id,
        "user_id": search.user_id,
        "business_type": search.business_type,
        "country": search.country,
        "state": search.state,
        "city": search.city,
        "leads_requested": search.leads_requested,
        "industry": search.industry,
        "company_size": search.company_size,
        "location_radius": search.location_radius or 0,
        "advanced_filters": search.advanced_filters,
        "status": search.status,
        "error_message": search.error_message,
        "created_at": _iso(search.created_at),
        "completed_at": _iso(search.completed_at),
    }


def _pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }


# ──────────────────────────────────────────────
# Access helpers
# ──────────────────────────────────────────────

async def get_search_for_user(db: AsyncSession, user_id: str, search_id: str) -> UserSearch:
    """404 if the search doesn't exist, 403 if the caller isn't a member of its org."""
    search = (await db.execute(
        select(UserSearch).where(UserSearch.id == search_id)
    )).scalar_one_or_none()
    if search is None:
        raise NotFound("Search not found")
    await validate_organization_access(db, user_id, search.organization_id)
    return search


async def get_lead_for_user(db: AsyncSession, user_id: str, lead_id: str) -> Lead:
    lead = (await db.execute(select(Lead).where(Lead.id == lead_id))).scalar_one_or_none()
    if lead is None:
        raise NotFound("Lead not found")
    await validate_organization_access(db, user_id, lead.organization_id)
    return lead


async def _metadata_for(db: AsyncSession, user_id: str, lead_ids: list[str]) -> dict[str, LeadMetadata]:
    if not lead_ids:
        return {}
    rows = (await db.execute(
        select(LeadMetadata).where(
            LeadMetadata.user_id == user_id,
            LeadMetadata.lead_id.in_(lead_ids),
        )
    )).scalars().all()
    return {m.lead_id: m for m in rows}


# ──────────────────────────────────────────────
# Listing
# ──────────────────────────────────────────────

async def list_leads(
    db: AsyncSession,
    user_id: str,
    search_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    owner_id: Optional[str] = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    search: str = "",
) -> dict:
    """
    Leads scoped by search, organization or owning user (first one given wins),
    newest first, optionally text-filtered on name / email / phone / website.
    """
    if not (search_id or organization_id or owner_id):
        raise InvalidRequest("Either searchId, organizationId, or userId is required")

    query = select(Lead, UserSearch).join(UserSearch, Lead.search_id == UserSearch.id)

    if search_id:
        await get_search_for_user(db, user_id, search_id)
        query = query.where(Lead.search_id == search_id)
    elif organization_id:
        await validate_organization_access(db, user_id, organization_id)
        query = query.where(Lead.organization_id == organization_id)
    else:
        if owner_id != user_id:
            raise AccessDenied("Access denied - can only access your own data")
        query = query.where(UserSearch.user_id == owner_id)

    if search:
        term = f"%{search}%"
        query = query.where(or_(
            Lead.business_name.ilike(term),
            Lead.email.ilike(term),
            Lead.phone.ilike(term),
            Lead.website.ilike(term),
        ))

    total = (await db.execute(
        select(func.count()).select_from(query.subquery())
    )).scalar_one()

    rows = (await db.execute(
        query.order_by(Lead.created_at.desc(), Lead.id)
        .offset((page - 1) * limit)
        .limit(limit)
    )).all()

    metadata = await _metadata_for(db, user_id, [lead.id for lead, _ in rows])
    leads = []
    for lead, parent in rows:
        item = lead_to_dict(lead, metadata.get(lead.id))
        item.setdefault("is_favorited", False)
        item.setdefault("note", None)
        item["search_info"] = {
            "id": parent.id,
            "business_type": parent.business_type,
            "country": parent.country,
            "state": parent.state,
            "city": parent.city,
            "leads_requested": parent.leads_requested,
            "status": parent.status,
            "created_at": _iso(parent.created_at),
            "organization_id": parent.organization_id,
        }
        leads.append(item)

    return {"success": True, "leads": leads, "pagination": _pagination(page, limit, total)}


def apply_lead_filters(leads: list[Lead], filters: LeadFilters) -> list[Lead]:
    """Filter then sort in memory; missing values sort as smallest."""
    out = list(leads)
    if filters.minConfidenceScore > 0:
        out = [l for l in out if (l.confidence_score or 0) >= filters.minConfidenceScore]
    if filters.hasEmail:
        out = [l for l in out if is_valid_email(l.email)]
    if filters.hasPhone:
        out = [l for l in out if l.phone and l.phone.strip()]
    if filters.hasWebsite:
        out = [l for l in out if is_valid_url(l.website)]
    if filters.industry:
        wanted = filters.industry.lower()
        out = [l for l in out if (l.industry or "").lower() == wanted]

    def _key(lead: Lead):
        value = getattr(lead, filters.sortBy)
        return (value is not None, value)

    return sorted(out, key=_key, reverse=filters.sortOrder == "desc")


async def get_filtered_search_leads(
    db: AsyncSession, user_id: str, search_id: str, filters: LeadFilters
) -> tuple[UserSearch, list[Lead]]:
    search = await get_search_for_user(db, user_id, search_id)
    leads = (await db.execute(
        select(Lead).where(Lead.search_id == search_id).order_by(Lead.created_at)
    )).scalars().all()
    return search, apply_lead_filters(list(leads), filters)


async def search_view(
    db: AsyncSession,
    user_id: str,
    search_id: str,
    filters: LeadFilters,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict:
    search, leads = await get_filtered_search_leads(db, user_id, search_id, filters)
    offset = (page - 1) * limit
    return {
        "success": True,
        "search": {
            "id": search.id,
            "status": search.status,
            "business_type": search.business_type,
            "location": f"{search.city}, {search.state}, {search.country}",
            "leads_requested": search.leads_requested,
            "created_at": _iso(search.created_at),
        },
        "leads": [lead_to_dict(l) for l in leads[offset: offset + limit]],
        "pagination": _pagination(page, limit, len(leads)),
        "filters": filters.model_dump(),
    }


async def list_searches(db: AsyncSession, user_id: str, organization_id: str, limit: int = 100) -> list[dict]:
    await validate_organization_access(db, user_id, organization_id)
    searches = (await db.execute(
        select(UserSearch)
        .where(UserSearch.organization_id == organization_id)
        .order_by(UserSearch.created_at.desc())
        .limit(limit)
    )).scalars().all()
    return [search_to_dict(s) for s in searches]


async def get_lead_stats(db: AsyncSession, user_id: str, organization_id: Optional[str] = None) -> dict:
    """Totals over the caller's searches, or over an organization's when given."""
    search_q = select(UserSearch.id)
    if organization_id:
        await validate_organization_access(db, user_id, organization_id)
        search_q = search_q.where(UserSearch.organization_id == organization_id)
    else:
        search_q = search_q.where(UserSearch.user_id == user_id)

    search_ids = (await db.execute(search_q)).scalars().all()
    if not search_ids:
        return {"totalLeads": 0, "totalSearches": 0, "leadsWithEmail": 0, "avgConfidence": 0}

    total, with_email, avg = (await db.execute(
        select(
            func.count(Lead.id),
            func.count(Lead.email),
            func.avg(Lead.confidence_score),
        ).where(Lead.search_id.in_(search_ids))
    )).one()

    return {
        "totalLeads": total or 0,
        "totalSearches": len(search_ids),
        "leadsWithEmail": with_email or 0,
        "avgConfidence": round(float(avg)) if avg is not None else 0,
    }


# ──────────────────────────────────────────────
# Metadata (favorites + notes)
# ──────────────────────────────────────────────

async def get_metadata_map(
    db: AsyncSession,
    user_id: str,
    organization_id: Optional[str] = None,
    lead_ids: Optional[list[str]] = None,
) -> dict[str, dict]:
    """``{lead_id: {"isFavorited": bool, "note": str | None}}`` for the caller."""
    query = select(LeadMetadata).where(LeadMetadata.user_id == user_id)
    if organization_id:
        await validate_organization_access(db, user_id, organization_id)
        query = query.where(LeadMetadata.organization_id == organization_id)
    if lead_ids:
        query = query.where(LeadMetadata.lead_id.in_(lead_ids))

    rows = (await db.execute(query)).scalars().all()
    return {m.lead_id: {"isFavorited": bool(m.is_favorited), "note": m.note} for m in rows}


async def upsert_lead_metadata(
    db: AsyncSession,
    user_id: str,
    lead_id: str,
    changes: dict,
    replace: bool = False,
) -> LeadMetadata:
    """
    Create or update the caller's metadata row for a lead.

    ``changes`` may hold ``is_favorited`` and/or ``note``.  With
    ``replace=True`` absent fields are reset (favorite → False, note → None);
    otherwise only the given fields change.
    """
    lead = await get_lead_for_user(db, user_id, lead_id)

    row = (await db.execute(
        select(LeadMetadata).where(
            LeadMetadata.lead_id == lead_id,
            LeadMetadata.user_id == user_id,
        )
    )).scalar_one_or_none()

    if row is None:
        row = LeadMetadata(
            lead_id=lead_id,
            user_id=user_id,
            organization_id=lead.organization_id,
            is_favorited=False,
        )
        db.add(row)

    if replace or "is_favorited" in changes:
        row.is_favorited = bool(changes.get("is_favorited") or False)
    if replace or "note" in changes:
        row.note = changes.get("note") or None

    await db.commit()
    return row


async def delete_lead_metadata(db: AsyncSession, user_id: str, lead_id: str) -> int:
    result = await db.execute(
        delete(LeadMetadata).where(
            LeadMetadata.lead_id == lead_id,
            LeadMetadata.user_id == user_id,
        )
    )
    await db.commit()
    return result.rowcount or 0


def metadata_to_dict(row: LeadMetadata) -> dict:
    return {
        "id": row.id,
        "lead_id": row.lead_id,
        "user_id": row.user_id,
        "organization_id": row.organization_id,
        "is_favorited": bool(row.is_favorited),
        "note": row.note,
        "updated_at": _iso(row.updated_at),
    }
