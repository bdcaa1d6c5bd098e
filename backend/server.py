"""
Evo Lead AI — FastAPI backend

Endpoints:
  POST   /api/leads/generate              — Run the lead-generation pipeline
  POST   /api/leads/advanced-search       — Generate with filters, optionally save
  GET    /api/leads                       — Paginated leads (by search / org / user)
  PATCH  /api/leads                       — Replace favorite + note for a lead
  GET    /api/leads/metadata              — Caller's favorites/notes as a map
  POST   /api/leads/metadata              — Update favorite and/or note
  DELETE /api/leads/metadata              — Drop the caller's metadata for a lead
  GET    /api/leads/stats                 — Dashboard counters
  GET    /api/leads/search/{search_id}    — Filter/sort/paginate one search
  POST   /api/leads/search/{search_id}    — Export one search (csv | json | xlsx)
  GET    /api/leads/tags                  — Organization tags with usage counts
  POST   /api/leads/tags                  — Create a tag
  GET    /api/leads/bulk-actions          — Recent bulk actions
  POST   /api/leads/bulk-actions          — Run a bulk action
  GET    /api/leads/saved-searches        — Saved searches with their alerts
  POST   /api/leads/saved-searches        — Save search criteria
  PUT    /api/leads/saved-searches/{id}   — Update name, criteria or alert settings
  DELETE /api/leads/saved-searches/{id}   — Delete a saved search and its alert
  GET    /api/leads/search-alerts         — Alerts with their saved search
  POST   /api/leads/search-alerts         — Create or update a saved search's alert
  GET    /api/searches                    — Search history for an organization
  GET    /api/organizations               — Caller's organizations
  POST   /api/organizations               — Create an organization (trial)
  GET    /api/usage                       — Plan, credits and ledger
  POST   /api/webhooks/lead-updates       — Signed n8n status webhook
  GET    /api/webhooks/lead-updates       — Webhook health
  POST   /api/billing/checkout|portal|webhook, GET /api/billing/status
  GET    /api/health                      — Health check

Every error response is JSON ``{"error": ..., "details"?: [...]}``.

Run:
  uvicorn server:app --reload --port 8000
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import AuthUser, require_auth
from bulk_actions import create_tag, list_bulk_actions, list_tags, run_bulk_action
from config import GEMINI_API_KEY, SERPAPI_KEY
from db import get_db
from errors import AppError, InvalidRequest, RateLimited, ServiceUnavailable
from export import XLSX_MEDIA_TYPE, export_filename, leads_to_csv, leads_to_xlsx
from lead_generation import run_advanced_search, run_lead_generation
from lead_queries import (
    delete_lead_metadata,
    get_filtered_search_leads,
    get_lead_stats,
    get_metadata_map,
    lead_to_dict,
    list_leads,
    list_searches,
    metadata_to_dict,
    search_view,
    upsert_lead_metadata,
)
from logging_config import setup_logging
from organizations import create_organization, list_organizations
from saved_searches import (
    create_saved_search,
    delete_saved_search,
    list_saved_searches,
    list_search_alerts,
    update_saved_search,
    upsert_search_alert,
)
from stripe_billing import is_stripe_configured
from usage import get_organization, get_usage_summary, validate_organization_access
from validation import (
    UUID_PATTERN,
    BulkActionRequest,
    CheckoutRequest,
    LeadFilters,
    LeadMetadataUpdate,
    OrganizationCreate,
    SavedSearchCreate,
    SavedSearchUpdate,
    SearchAlertUpsert,
    SearchExportRequest,
    TagCreate,
    format_errors,
    is_valid_uuid,
)
from webhooks import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    process_lead_update,
    webhook_health,
    webhook_rate_limiter,
)

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from db import close_db, init_db
    logger.info("Initializing database...")
    await init_db()
    logger.info(
        "Evo Lead AI ready (serpapi=%s, gemini=%s, billing=%s)",
        bool(SERPAPI_KEY), bool(GEMINI_API_KEY), is_stripe_configured(),
    )
    yield
    logger.info("Shutting down")
    await close_db()


app = FastAPI(
    title="Evo Lead AI API",
    version="1.0.0",
    lifespan=lifespan,
)

_allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _allowed_origins],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


# ──────────────────────────────────────────────
# Error handlers
# ──────────────────────────────────────────────

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        details.append(f"{'.'.join(loc) or 'body'}: {err.get('msg', 'Invalid value')}")
    return JSONResponse(status_code=400, content={"error": "Invalid request data", "details": details})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


async def _json_body(request: Request):
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidRequest("Invalid request data", details=["body: Malformed JSON"])


# ──────────────────────────────────────────────
# Health
# ──────────────────────────────────────────────

@app.get("/api/health")
async def health():
    return {
        "status": "ok",
        "serpapi_available": bool(SERPAPI_KEY),
        "gemini_available": bool(GEMINI_API_KEY),
        "billing_available": is_stripe_configured(),
    }


# ──────────────────────────────────────────────
# Organizations & usage
# ──────────────────────────────────────────────

@app.post("/api/organizations", status_code=201)
async def organizations_create(
    body: OrganizationCreate,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return {"organization": await create_organization(db, user, body.name)}


@app.get("/api/organizations")
async def organizations_list(
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return {"organizations": await list_organizations(db, user.id)}


@app.get("/api/usage")
async def usage_summary(
    organization_id: str = Query(..., pattern=UUID_PATTERN),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    await validate_organization_access(db, user.id, organization_id)
    org = await get_organization(db, organization_id)
    return await get_usage_summary(db, org)


@app.get("/api/searches")
async def searches_list(
    organization_id: str = Query(..., pattern=UUID_PATTERN),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return {"searches": await list_searches(db, user.id, organization_id)}


# ──────────────────────────────────────────────
# Lead generation
# ──────────────────────────────────────────────

@app.post("/api/leads/generate")
async def leads_generate(
    request: Request,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Validate, charge, generate, persist.  See lead_generation.py."""
    body = await _json_body(request)
    return await run_lead_generation(db, user, body)


@app.post("/api/leads/advanced-search")
async def leads_advanced_search(
    request: Request,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Generate with filters, optionally saving the criteria."""
    body = await _json_body(request)
    return await run_advanced_search(db, user, body)


# ──────────────────────────────────────────────
# Leads
# ──────────────────────────────────────────────

@app.get("/api/leads")
async def leads_list(
    search_id: Optional[str] = Query(None, alias="searchId", pattern=UUID_PATTERN),
    organization_id: Optional[str] = Query(None, alias="organizationId", pattern=UUID_PATTERN),
    owner_id: Optional[str] = Query(None, alias="userId", pattern=UUID_PATTERN),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    search: str = Query("", max_length=200),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return await list_leads(
        db, user.id,
        search_id=search_id,
        organization_id=organization_id,
        owner_id=owner_id,
        page=page,
        limit=limit,
        search=search,
    )


@app.patch("/api/leads")
async def leads_update_metadata(
    body: LeadMetadataUpdate,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Replace the caller's favorite flag and note (absent fields reset)."""
    row = await upsert_lead_metadata(
        db, user.id, body.leadId,
        {"is_favorited": body.isFavorited, "note": body.note},
        replace=True,
    )
    return {
        "success": True,
        "metadata": metadata_to_dict(row),
        "message": "Lead metadata updated successfully",
    }


@app.get("/api/leads/metadata")
async def leads_metadata_map(
    organization_id: Optional[str] = Query(None, alias="organizationId", pattern=UUID_PATTERN),
    lead_ids: Optional[str] = Query(None, alias="leadIds"),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    ids = [i.strip() for i in lead_ids.split(",") if i.strip()] if lead_ids else None
    if ids and not all(is_valid_uuid(i) for i in ids):
        raise InvalidRequest("Invalid request data", details=["leadIds: must be comma-separated UUIDs"])
    return {"success": True, "metadata": await get_metadata_map(db, user.id, organization_id, ids)}


@app.post("/api/leads/metadata")
async def leads_metadata_upsert(
    body: LeadMetadataUpdate,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Update only the fields present in the body."""
    changes = {}
    if "isFavorited" in body.model_fields_set:
        changes["is_favorited"] = body.isFavorited
    if "note" in body.model_fields_set:
        changes["note"] = body.note
    row = await upsert_lead_metadata(db, user.id, body.leadId, changes)
    return {"success": True, "metadata": metadata_to_dict(row)}


@app.delete("/api/leads/metadata")
async def leads_metadata_delete(
    lead_id: str = Query(..., alias="leadId", pattern=UUID_PATTERN),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    deleted = await delete_lead_metadata(db, user.id, lead_id)
    return {"success": True, "deleted": deleted}


@app.get("/api/leads/stats")
async def leads_stats(
    organization_id: Optional[str] = Query(None, alias="organizationId", pattern=UUID_PATTERN),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return await get_lead_stats(db, user.id, organization_id)


@app.get("/api/leads/search/{search_id}")
async def leads_search_view(
    search_id: str = Path(..., pattern=UUID_PATTERN),
    min_confidence: int = Query(0, alias="minConfidenceScore", ge=0, le=100),
    has_email: bool = Query(False, alias="hasEmail"),
    has_phone: bool = Query(False, alias="hasPhone"),
    has_website: bool = Query(False, alias="hasWebsite"),
    industry: Optional[str] = Query(None),
    sort_by: Literal["confidence_score", "business_name", "created_at"] = Query("confidence_score", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    filters = LeadFilters(
        minConfidenceScore=min_confidence,
        hasEmail=has_email,
        hasPhone=has_phone,
        hasWebsite=has_website,
        industry=industry,
        sortBy=sort_by,
        sortOrder=sort_order,
    )
    return await search_view(db, user.id, search_id, filters, page=page, limit=limit)


@app.post("/api/leads/search/{search_id}")
async def leads_search_export(
    search_id: str = Path(..., pattern=UUID_PATTERN),
    body: Optional[SearchExportRequest] = None,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Export a search's (filtered) leads as CSV, XLSX or JSON."""
    body = body or SearchExportRequest()
    _, leads = await get_filtered_search_leads(db, user.id, search_id, body.filters)

    if body.format == "csv":
        return Response(
            content=leads_to_csv(leads),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{export_filename(search_id, "csv")}"'},
        )
    if body.format == "xlsx":
        return Response(
            content=leads_to_xlsx(leads),
            media_type=XLSX_MEDIA_TYPE,
            headers={"Content-Disposition": f'attachment; filename="{export_filename(search_id, "xlsx")}"'},
        )
    return {"success": True, "leads": [lead_to_dict(l) for l in leads], "count": len(leads)}


# ──────────────────────────────────────────────
# Tags & bulk actions
# ──────────────────────────────────────────────

@app.get("/api/leads/tags")
async def tags_list(
    organization_id: str = Query(..., alias="organizationId", pattern=UUID_PATTERN),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return {"tags": await list_tags(db, user.id, organization_id)}


@app.post("/api/leads/tags", status_code=201)
async def tags_create(
    body: TagCreate,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return {"tag": await create_tag(db, user.id, body)}


@app.get("/api/leads/bulk-actions")
async def bulk_actions_list(
    organization_id: str = Query(..., alias="organizationId", pattern=UUID_PATTERN),
    status: Optional[str] = Query(None),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return {"actions": await list_bulk_actions(db, user.id, organization_id, status)}


@app.post("/api/leads/bulk-actions")
async def bulk_actions_run(
    body: BulkActionRequest,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return await run_bulk_action(db, user.id, body)


# ──────────────────────────────────────────────
# Saved searches & alerts
# ──────────────────────────────────────────────

@app.get("/api/leads/saved-searches")
async def saved_searches_list(
    organization_id: Optional[str] = Query(None, alias="organizationId", pattern=UUID_PATTERN),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Organization's saved searches, or the caller's own without ``organizationId``."""
    return {"searches": await list_saved_searches(db, user.id, organization_id)}


@app.post("/api/leads/saved-searches", status_code=201)
async def saved_searches_create(
    body: SavedSearchCreate,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return await create_saved_search(db, user.id, body)


@app.put("/api/leads/saved-searches/{saved_search_id}")
async def saved_searches_update(
    body: SavedSearchUpdate,
    saved_search_id: str = Path(..., pattern=UUID_PATTERN),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return await update_saved_search(db, user.id, saved_search_id, body)


@app.delete("/api/leads/saved-searches/{saved_search_id}")
async def saved_searches_delete(
    saved_search_id: str = Path(..., pattern=UUID_PATTERN),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return await delete_saved_search(db, user.id, saved_search_id)


@app.get("/api/leads/search-alerts")
async def search_alerts_list(
    organization_id: Optional[str] = Query(None, alias="organizationId", pattern=UUID_PATTERN),
    saved_search_id: Optional[str] = Query(None, alias="savedSearchId", pattern=UUID_PATTERN),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    alerts = await list_search_alerts(db, user.id, organization_id, saved_search_id)
    return {"alerts": alerts}


@app.post("/api/leads/search-alerts")
async def search_alerts_upsert(
    body: SearchAlertUpsert,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    return await upsert_search_alert(db, user.id, body)


# ──────────────────────────────────────────────
# Lead-updates webhook (n8n)
# ──────────────────────────────────────────────

@app.post("/api/webhooks/lead-updates")
async def lead_updates_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """No user auth; authenticated by the shared-secret signature."""
    client_ip = request.client.host if request.client else "unknown"
    if not webhook_rate_limiter.check(client_ip):
        raise RateLimited("Rate limit exceeded")

    body = await request.body()
    return await process_lead_update(
        db,
        body,
        request.headers.get(SIGNATURE_HEADER),
        request.headers.get(TIMESTAMP_HEADER),
    )


@app.get("/api/webhooks/lead-updates")
async def lead_updates_webhook_health():
    return webhook_health()


# ──────────────────────────────────────────────
# Billing Endpoints (Stripe)
# ──────────────────────────────────────────────

class PortalRequest(BaseModel):
    organization_id: str = Field(..., pattern=UUID_PATTERN)


def _require_billing():
    if not is_stripe_configured():
        raise ServiceUnavailable("Billing not configured")


@app.post("/api/billing/checkout")
async def billing_checkout(
    body: CheckoutRequest,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    """Create a Stripe Checkout Session (owners and admins only)."""
    from stripe_billing import create_checkout_session

    _require_billing()
    await validate_organization_access(db, user.id, body.organization_id, required_role="admin")
    org = await get_organization(db, body.organization_id)
    try:
        url = await create_checkout_session(db, org, user.email or "", body.plan)
    except ValueError as e:
        raise InvalidRequest(str(e))
    return {"url": url}


@app.post("/api/billing/portal")
async def billing_portal(
    body: PortalRequest,
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    from stripe_billing import create_portal_session

    _require_billing()
    await validate_organization_access(db, user.id, body.organization_id, required_role="admin")
    org = await get_organization(db, body.organization_id)
    try:
        url = await create_portal_session(org)
    except ValueError as e:
        raise InvalidRequest(str(e))
    return {"url": url}


@app.post("/api/billing/webhook")
async def billing_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Stripe webhook receiver, authenticated by the Stripe signature."""
    from stripe_billing import handle_webhook

    _require_billing()
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    try:
        return await handle_webhook(payload, sig_header, db)
    except ValueError as e:
        raise InvalidRequest(str(e))


@app.get("/api/billing/status")
async def billing_status(
    organization_id: str = Query(..., pattern=UUID_PATTERN),
    user: AuthUser = Depends(require_auth),
    db: AsyncSession = Depends(get_db),
):
    from stripe_billing import get_billing_status

    await validate_organization_access(db, user.id, organization_id)
    org = await get_organization(db, organization_id)
    return get_billing_status(org)
