"""
Lead Generation Pipeline — POST /api/leads/generate and /api/leads/advanced-search.

    validate → membership → organization → usage eligibility
      → create search (processing)
      → cache lookup ─miss→ provider chain → cache store
      → score → [insert leads + debit + ledger + completed] (one transaction)
      → response

Every exit after the search row exists leaves it ``completed`` or
``failed``; nothing stays ``processing``.  Client errors (400/403/404) are
raised before any row is written.

Advanced search runs the same pipeline, stamps industry / company size /
radius / tags onto the rows, drops leads that fail its filters, and may store
the criteria as a saved search afterwards.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthUser
from db.models import Lead, Organization, UserSearch
from errors import AppError, InvalidRequest, ProviderUnavailable
from lead_cache import create_query_hash, get_cached_results, cache_results
from lead_providers import LeadGenerationError, RawLead, SearchParams, coerce_leads, generate_leads
from lead_queries import lead_to_dict, search_to_dict
from saved_searches import save_search_run
from scoring import calculate_confidence_score
from usage import (
    create_usage_record,
    debit_usage,
    ensure_usage_allowed,
    get_organization,
    trial_searches_remaining,
    validate_organization_access,
)
from validation import (
    AdvancedFilters,
    AdvancedSearchRequest,
    LeadGenerationRequest,
    is_valid_email,
    is_valid_phone,
    is_valid_url,
    validate_advanced_search_request,
    validate_search_request,
)

logger = logging.getLogger(__name__)

ACTION_LEAD_GENERATION = "lead_generation"


def build_lead_row(raw: RawLead, organization_id: str, search_id: str) -> Lead:
    """Score a provider lead and turn it into an ORM row."""
    location = {k: v for k, v in (("address", raw.address), ("description", raw.description)) if v}
    return Lead(
        organization_id=organization_id,
        search_id=search_id,
        business_name=raw.business_name,
        email=raw.email,
        phone=raw.phone,
        website=raw.website,
        industry=raw.industry,
        location_data=location or None,
        confidence_score=calculate_confidence_score(raw),
    )


def shape_response(search_id: str, leads: list[Lead], org: Organization, credits_used: int) -> dict:
    is_trial = org.plan == "trial"
    return {
        "success": True,
        "search_id": search_id,
        "leads": [lead_to_dict(lead) for lead in leads],
        "usage": {
            "leads_generated": len(leads),
            "credits_used": credits_used,
            "remaining_credits": org.credits or 0,
            "plan": org.plan,
            "trial_searches_remaining": (
                trial_searches_remaining(org.trial_searches_used or 0) if is_trial else None
            ),
        },
    }


async def mark_search_failed(db: AsyncSession, search_id: str, message: Optional[str]) -> None:
    """Force a search into ``failed`` in its own transaction."""
    try:
        await db.execute(
            update(UserSearch)
            .where(UserSearch.id == search_id)
            .values(
                status="failed",
                error_message=(message or "Lead generation failed")[:1000],
                completed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError:
        logger.error("Could not mark search %s as failed", search_id, exc_info=True)
        await db.rollback()


async def _load_candidates(db: AsyncSession, params: SearchParams) -> list[RawLead]:
    """Cached provider results if fresh, else run the provider chain and cache."""
    query_hash = create_query_hash(
        params.business_type, params.country, params.state, params.city, params.leads_requested
    )
    cached = await get_cached_results(db, query_hash)
    if cached is not None:
        return coerce_leads(cached)

    try:
        candidates = await generate_leads(params)
    except LeadGenerationError as e:
        raise ProviderUnavailable("Lead generation service temporarily unavailable") from e

    try:
        await cache_results(db, query_hash, [lead.model_dump() for lead in candidates])
        await db.commit()
    except SQLAlchemyError as e:
        # A concurrent identical request may have stored the same key first
        logger.warning("Could not cache results for %s: %s", query_hash[:12], e)
        await db.rollback()

    return candidates


async def _execute_search(
    db: AsyncSession,
    user: AuthUser,
    req: LeadGenerationRequest,
    build: Callable[[RawLead, str, str], Lead] = build_lead_row,
    keep: Optional[Callable[[Lead], bool]] = None,
    **search_fields: Any,
) -> tuple[UserSearch, Organization, list[Lead], int]:
    """
    Gate, record and run one charged search.  ``build`` turns provider leads
    into rows; rows failing ``keep`` are dropped before insert.  Credits are charged for
    ``leads_requested`` whatever survives.
    """
    await validate_organization_access(db, user.id, req.organization_id)
    org = await get_organization(db, req.organization_id)
    ensure_usage_allowed(org, req.leads_requested)

    search = UserSearch(
        organization_id=org.id,
        user_id=user.id,
        business_type=req.business_type,
        country=req.country,
        state=req.state,
        city=req.city,
        leads_requested=req.leads_requested,
        status="processing",
        **search_fields,
    )
    db.add(search)
    await db.commit()
    search_id = search.id
    logger.info(
        "Search %s: %d × %r in %s, %s, %s (org %s, plan %s)",
        search_id, req.leads_requested, req.business_type,
        req.city, req.state, req.country, org.id, org.plan,
    )

    params = SearchParams(
        business_type=req.business_type,
        country=req.country,
        state=req.state,
        city=req.city,
        leads_requested=req.leads_requested,
    )

    try:
        candidates = await _load_candidates(db, params)
        # a failed cache write rolls back and expires loaded rows
        await db.refresh(org)
        await db.refresh(search)

        leads = [build(raw, org.id, search_id) for raw in candidates[: req.leads_requested]]
        if keep is not None:
            leads = [lead for lead in leads if keep(lead)]
        db.add_all(leads)
        credits_used = await debit_usage(db, org, req.leads_requested)
        await create_usage_record(db, org.id, user.id, ACTION_LEAD_GENERATION, credits_used)
        search.status = "completed"
        search.completed_at = datetime.now(timezone.utc)
        await db.commit()
    except Exception as e:
        await db.rollback()
        message = e.message if isinstance(e, AppError) else "Internal error"
        await mark_search_failed(db, search_id, message)
        if isinstance(e, AppError):
            logger.info("Search %s failed: %s", search_id, message)
        else:
            logger.error("Search %s failed unexpectedly: %s", search_id, e, exc_info=True)
        raise

    logger.info("Search %s completed with %d leads (%d credits)", search_id, len(leads), credits_used)
    return search, org, leads, credits_used


async def run_lead_generation(db: AsyncSession, user: AuthUser, body: Any) -> dict:
    """Handle one lead-generation request and return the response body."""
    validation = validate_search_request(body)
    if not validation.success:
        raise InvalidRequest("Invalid request data", details=validation.errors)

    search, org, leads, credits_used = await _execute_search(db, user, validation.data)
    return shape_response(search.id, leads, org, credits_used)


# ──────────────────────────────────────────────
# Advanced search
# ──────────────────────────────────────────────

def passes_filters(lead: Lead, filters: AdvancedFilters) -> bool:
    if filters.has_email and not is_valid_email(lead.email):
        return False
    if filters.has_phone and not is_valid_phone(lead.phone):
        return False
    if filters.has_website and not is_valid_url(lead.website):
        return False
    if filters.lead_score_min is not None and lead.confidence_score < filters.lead_score_min:
        return False
    if filters.lead_score_max is not None and lead.confidence_score > filters.lead_score_max:
        return False
    return True


def _advanced_builder(req: AdvancedSearchRequest) -> Callable[[RawLead, str, str], Lead]:
    def build(raw: RawLead, organization_id: str, search_id: str) -> Lead:
        lead = build_lead_row(raw, organization_id, search_id)
        if req.industry:
            lead.industry = req.industry
        lead.company_size = req.company_size
        lead.tags = list(req.advanced_filters.tags) or None
        if req.location_radius:
            lead.location_data = {**(lead.location_data or {}), "radius": req.location_radius}
        return lead
    return build


async def run_advanced_search(db: AsyncSession, user: AuthUser, body: Any) -> dict:
    """
    A lead-generation run with firmographic hints and post-generation filters,
    optionally stored as a saved search (with an alert) once it completes.
    """
    validation = validate_advanced_search_request(body)
    if not validation.success:
        raise InvalidRequest("Invalid request data", details=validation.errors)
    req = validation.data
    filters = req.advanced_filters

    search, org, leads, credits_used = await _execute_search(
        db, user, req,
        build=_advanced_builder(req),
        keep=lambda lead: passes_filters(lead, filters),
        industry=req.industry,
        company_size=req.company_size,
        location_radius=req.location_radius,
        advanced_filters=filters.model_dump(),
    )

    response = shape_response(search.id, leads, org, credits_used)
    response["search"] = search_to_dict(search)
    response["savedSearch"] = None
    if req.save_search:
        try:
            response["savedSearch"] = await save_search_run(db, user.id, req, len(leads))
        except SQLAlchemyError:
            # the leads are already committed; the search just isn't saved
            logger.error("Could not save search %s as %r", search.id, req.search_name, exc_info=True)
            await db.rollback()
    response["message"] = f"Advanced search completed. Found {len(leads)} leads."
    return response
