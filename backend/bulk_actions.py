"""
Bulk Actions & Tags — organization-scoped operations on many leads at once.

Actions (``action_type``):
  - tag:           assign ``action_data.tagIds`` to every lead
  - export:        csv | excel | json (``action_data.format``), returned inline
  - delete:        remove leads with their metadata and tag assignments
  - update_score:  recompute ``lead_score`` from contact fields
  - verify:        mark leads verified / invalid from contact-field syntax

Each run is recorded in ``bulk_actions`` with its status and results; a
failing action is stored as ``failed`` with the error and reported back, not
raised.  Only leads belonging to the organization are ever touched.
"""

import base64
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import BulkAction, Lead, LeadTag, LeadTagAssignment
from errors import AppError, Conflict
from export import leads_to_csv, leads_to_xlsx
from lead_queries import lead_to_dict
from scoring import calculate_confidence_score
from usage import validate_organization_access
from validation import (
    BulkActionRequest,
    TagCreate,
    is_valid_email,
    is_valid_phone,
    is_valid_url,
    is_valid_uuid,
)

logger = logging.getLogger(__name__)

BULK_STATUSES = ("pending", "processing", "completed", "failed")


# ──────────────────────────────────────────────
# Tags
# ──────────────────────────────────────────────

def tag_to_dict(tag: LeadTag, usage_count: int = 0) -> dict:
    return {
        "id": tag.id,
        "organization_id": tag.organization_id,
        "name": tag.name,
        "color": tag.color,
        "description": tag.description,
        "created_by": tag.created_by,
        "created_at": tag.created_at.isoformat() if tag.created_at else None,
        "usage_count": usage_count,
    }


async def list_tags(db: AsyncSession, user_id: str, organization_id: str) -> list[dict]:
    """Organization's tags by name, each with how many leads carry it."""
    await validate_organization_access(db, user_id, organization_id)
    rows = (await db.execute(
        select(LeadTag, func.count(LeadTagAssignment.id))
        .outerjoin(LeadTagAssignment, LeadTagAssignment.tag_id == LeadTag.id)
        .where(LeadTag.organization_id == organization_id)
        .group_by(LeadTag.id)
        .order_by(LeadTag.name)
    )).all()
    return [tag_to_dict(tag, count) for tag, count in rows]


async def create_tag(db: AsyncSession, user_id: str, request: TagCreate) -> dict:
    await validate_organization_access(db, user_id, request.organization_id)

    existing = (await db.execute(
        select(LeadTag.id).where(
            LeadTag.organization_id == request.organization_id,
            LeadTag.name == request.name,
        )
    )).scalar_one_or_none()
    if existing:
        raise Conflict("Tag with this name already exists")

    tag = LeadTag(
        organization_id=request.organization_id,
        name=request.name,
        color=request.color,
        description=request.description,
        created_by=user_id,
    )
    db.add(tag)
    await db.commit()
    logger.info("Tag %r created in org %s", tag.name, tag.organization_id)
    return tag_to_dict(tag)


# ──────────────────────────────────────────────
# Action processors
# ──────────────────────────────────────────────

def validate_lead_data(lead: Lead) -> bool:
    """A usable lead has a real name and at least one valid contact method."""
    if not lead.business_name or len(lead.business_name.strip()) < 2:
        return False
    return is_valid_email(lead.email) or is_valid_phone(lead.phone) or is_valid_url(lead.website)


async def _org_leads(db: AsyncSession, organization_id: str, lead_ids: list[str]) -> list[Lead]:
    return list((await db.execute(
        select(Lead).where(Lead.organization_id == organization_id, Lead.id.in_(lead_ids))
    )).scalars().all())


async def _process_tag(
    db: AsyncSession, organization_id: str, leads: list[Lead], action_data: dict, user_id: str
) -> dict:
    tag_ids = action_data.get("tagIds") or []
    if not tag_ids:
        raise ValueError("No tags specified")
    if not isinstance(tag_ids, list) or not all(is_valid_uuid(t) for t in tag_ids):
        raise ValueError("Unknown tag for this organization")

    tags = (await db.execute(
        select(LeadTag.id).where(LeadTag.id.in_(tag_ids), LeadTag.organization_id == organization_id)
    )).scalars().all()
    if len(tags) != len(set(tag_ids)):
        raise ValueError("Unknown tag for this organization")

    existing = {
        (lead_id, tag_id)
        for lead_id, tag_id in (await db.execute(
            select(LeadTagAssignment.lead_id, LeadTagAssignment.tag_id).where(
                LeadTagAssignment.lead_id.in_([l.id for l in leads]),
                LeadTagAssignment.tag_id.in_(tags),
            )
        )).all()
    }

    created = 0
    for lead in leads:
        for tag_id in tags:
            if (lead.id, tag_id) in existing:
                continue
            db.add(LeadTagAssignment(lead_id=lead.id, tag_id=tag_id, assigned_by=user_id))
            created += 1

    return {
        "tagged_leads": len(leads),
        "tags_assigned": len(tags),
        "total_assignments": created,
    }


def _process_export(leads: list[Lead], action_data: dict) -> dict:
    fmt = action_data.get("format", "csv")
    if fmt == "csv":
        data = leads_to_csv(leads)
    elif fmt == "excel":
        data = base64.b64encode(leads_to_xlsx(leads)).decode("ascii")
    elif fmt == "json":
        data = json.dumps([lead_to_dict(l) for l in leads], indent=2)
    else:
        raise ValueError(f"Unsupported export format: {fmt}")

    return {
        "exported_leads": len(leads),
        "format": fmt,
        "data_size": len(data),
        "export_data": data,
    }


async def _process_delete(db: AsyncSession, leads: list[Lead]) -> dict:
    for lead in leads:
        await db.delete(lead)  # cascades to metadata + tag assignments
    return {"deleted_leads": len(leads)}


def _process_update_score(leads: list[Lead]) -> dict:
    updates = []
    for lead in leads:
        lead.lead_score = calculate_confidence_score({
            "business_name": lead.business_name,
            "email": lead.email,
            "phone": lead.phone,
            "website": lead.website,
            "address": (lead.location_data or {}).get("address"),
        })
        updates.append({"lead_id": lead.id, "new_score": lead.lead_score})
    return {"updated_leads": len(updates), "failed_updates": 0, "score_updates": updates}


def _process_verify(leads: list[Lead]) -> dict:
    results = []
    for lead in leads:
        lead.verification_status = "verified" if validate_lead_data(lead) else "invalid"
        results.append({"lead_id": lead.id, "status": lead.verification_status})

    verified = sum(1 for r in results if r["status"] == "verified")
    return {
        "processed_leads": len(results),
        "verified_leads": verified,
        "invalid_leads": len(results) - verified,
        "verification_results": results,
    }


# ──────────────────────────────────────────────
# Entry points
# ──────────────────────────────────────────────

def bulk_action_to_dict(action: BulkAction) -> dict:
    return {
        "id": action.id,
        "organization_id": action.organization_id,
        "user_id": action.user_id,
        "action_type": action.action_type,
        "target_leads": action.target_leads,
        "action_data": action.action_data,
        "status": action.status,
        "results": action.results,
        "created_at": action.created_at.isoformat() if action.created_at else None,
        "completed_at": action.completed_at.isoformat() if action.completed_at else None,
    }


async def run_bulk_action(db: AsyncSession, user_id: str, request: BulkActionRequest) -> dict:
    """Record, execute and finalize one bulk action."""
    await validate_organization_access(db, user_id, request.organization_id)

    action = BulkAction(
        organization_id=request.organization_id,
        user_id=user_id,
        action_type=request.action_type,
        target_leads=request.lead_ids,
        action_data=request.action_data,
        status="processing",
    )
    db.add(action)
    await db.commit()
    action_id = action.id

    status = "completed"
    try:
        leads = await _org_leads(db, request.organization_id, request.lead_ids)
        if request.action_type == "tag":
            results = await _process_tag(db, request.organization_id, leads, request.action_data, user_id)
        elif request.action_type == "export":
            results = _process_export(leads, request.action_data)
        elif request.action_type == "delete":
            results = await _process_delete(db, leads)
        elif request.action_type == "update_score":
            results = _process_update_score(leads)
        else:
            results = _process_verify(leads)
        await db.commit()
    except (ValueError, AppError, SQLAlchemyError) as e:
        await db.rollback()
        logger.warning("Bulk %s %s failed: %s", request.action_type, action_id, e)
        status = "failed"
        results = {"error": str(e)}

    action = (await db.execute(select(BulkAction).where(BulkAction.id == action_id))).scalar_one()
    action.status = status
    action.results = results
    action.completed_at = datetime.now(timezone.utc)
    await db.commit()

    verb = "completed successfully" if status == "completed" else "failed"
    return {
        "bulkAction": bulk_action_to_dict(action),
        "message": f"Bulk {request.action_type} {verb}",
    }


async def list_bulk_actions(
    db: AsyncSession,
    user_id: str,
    organization_id: str,
    status: Optional[str] = None,
    limit: int = 50,
) -> list[dict]:
    await validate_organization_access(db, user_id, organization_id)
    query = select(BulkAction).where(BulkAction.organization_id == organization_id)
    if status in BULK_STATUSES:
        query = query.where(BulkAction.status == status)
    actions = (await db.execute(
        query.order_by(BulkAction.created_at.desc()).limit(limit)
    )).scalars().all()
    return [bulk_action_to_dict(a) for a in actions]
