"""
Saved Searches & Alerts — named search criteria an organization can re-run,
each with at most one alert.

  - saved searches:  list / create / update / delete
  - alerts:          list, and create-or-update keyed by saved search
  - save_search_run: store the criteria of an advanced search that asked to be saved

Any member of the owning organization may read and manage them.  Turning
``alert_enabled`` on activates (or creates) the ``new_leads`` alert; turning
it off deactivates the alert without deleting it.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import SavedSearch, SearchAlert
from errors import InvalidRequest, NotFound
from usage import validate_organization_access
from validation import AdvancedSearchRequest, SavedSearchCreate, SavedSearchUpdate, SearchAlertUpsert

logger = logging.getLogger(__name__)

DEFAULT_ALERT_TYPE = "new_leads"


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def alert_to_dict(alert: SearchAlert, saved_search: Optional[SavedSearch] = None) -> dict:
    data = {
        "id": alert.id,
        "saved_search_id": alert.saved_search_id,
        "organization_id": alert.organization_id,
        "user_id": alert.user_id,
        "alert_type": alert.alert_type,
        "trigger_criteria": alert.trigger_criteria or {},
        "is_active": bool(alert.is_active),
        "last_triggered_at": _iso(alert.last_triggered_at),
        "created_at": _iso(alert.created_at),
    }
    if saved_search is not None:
        data["saved_search"] = {
            "id": saved_search.id,
            "name": saved_search.name,
            "search_criteria": saved_search.search_criteria,
        }
    return data


def saved_search_to_dict(saved: SavedSearch, alerts: Optional[list[SearchAlert]] = None) -> dict:
    return {
        "id": saved.id,
        "organization_id": saved.organization_id,
        "user_id": saved.user_id,
        "name": saved.name,
        "search_criteria": saved.search_criteria,
        "alert_enabled": bool(saved.alert_enabled),
        "alert_frequency": saved.alert_frequency,
        "last_run_at": _iso(saved.last_run_at),
        "results_count": saved.results_count or 0,
        "created_at": _iso(saved.created_at),
        "updated_at": _iso(saved.updated_at),
        "search_alerts": [alert_to_dict(a) for a in alerts or []],
    }


async def get_saved_search_for_user(db: AsyncSession, user_id: str, saved_search_id: str) -> SavedSearch:
    """404 if the saved search doesn't exist, 403 if the caller isn't in its org."""
    saved = (await db.execute(
        select(SavedSearch).where(SavedSearch.id == saved_search_id)
    )).scalar_one_or_none()
    if saved is None:
        raise NotFound("Saved search not found")
    await validate_organization_access(db, user_id, saved.organization_id)
    return saved


async def _alert_for(db: AsyncSession, saved_search_id: str) -> Optional[SearchAlert]:
    return (await db.execute(
        select(SearchAlert).where(SearchAlert.saved_search_id == saved_search_id)
    )).scalar_one_or_none()


async def _alerts_by_search(db: AsyncSession, saved_ids: list[str]) -> dict[str, list[SearchAlert]]:
    if not saved_ids:
        return {}
    out: dict[str, list[SearchAlert]] = {}
    rows = (await db.execute(
        select(SearchAlert).where(SearchAlert.saved_search_id.in_(saved_ids))
    )).scalars().all()
    for alert in rows:
        out.setdefault(alert.saved_search_id, []).append(alert)
    return out


def _new_alert(saved: SavedSearch, user_id: str) -> SearchAlert:
    return SearchAlert(
        saved_search_id=saved.id,
        organization_id=saved.organization_id,
        user_id=user_id,
        alert_type=DEFAULT_ALERT_TYPE,
        trigger_criteria={},
        is_active=True,
    )


# ──────────────────────────────────────────────
# Saved searches
# ──────────────────────────────────────────────

async def list_saved_searches(
    db: AsyncSession, user_id: str, organization_id: Optional[str] = None
) -> list[dict]:
    """An organization's saved searches, or the caller's own when no org is given."""
    query = select(SavedSearch)
    if organization_id:
        await validate_organization_access(db, user_id, organization_id)
        query = query.where(SavedSearch.organization_id == organization_id)
    else:
        query = query.where(SavedSearch.user_id == user_id)

    saved = (await db.execute(
        query.order_by(SavedSearch.updated_at.desc())
    )).scalars().all()
    alerts = await _alerts_by_search(db, [s.id for s in saved])
    return [saved_search_to_dict(s, alerts.get(s.id)) for s in saved]


async def create_saved_search(db: AsyncSession, user_id: str, request: SavedSearchCreate) -> dict:
    await validate_organization_access(db, user_id, request.organization_id)

    saved = SavedSearch(
        organization_id=request.organization_id,
        user_id=user_id,
        name=request.name,
        search_criteria=request.search_criteria,
        alert_enabled=request.alert_enabled,
        alert_frequency=request.alert_frequency if request.alert_enabled else None,
    )
    db.add(saved)
    await db.flush()

    alert = None
    if request.alert_enabled:
        alert = _new_alert(saved, user_id)
        db.add(alert)
    await db.commit()

    logger.info("Saved search %r created in org %s", saved.name, saved.organization_id)
    return {
        "savedSearch": saved_search_to_dict(saved, [alert] if alert else []),
        "alert": alert_to_dict(alert) if alert else None,
        "message": "Saved search created successfully",
    }


async def update_saved_search(
    db: AsyncSession, user_id: str, saved_search_id: str, request: SavedSearchUpdate
) -> dict:
    """Apply only the fields present in the body; sync the alert with ``alert_enabled``."""
    saved = await get_saved_search_for_user(db, user_id, saved_search_id)
    fields = request.model_fields_set
    if not fields:
        raise InvalidRequest("No fields to update")

    if "name" in fields:
        if request.name is None:
            raise InvalidRequest("Invalid request data", details=["name: must not be null"])
        saved.name = request.name
    if "search_criteria" in fields:
        if not request.search_criteria:
            raise InvalidRequest("Invalid request data", details=["search_criteria: must not be empty"])
        saved.search_criteria = request.search_criteria
    if "alert_frequency" in fields:
        saved.alert_frequency = request.alert_frequency

    alert = await _alert_for(db, saved.id)
    if "alert_enabled" in fields and request.alert_enabled is not None:
        saved.alert_enabled = request.alert_enabled
        if request.alert_enabled:
            if saved.alert_frequency is None:
                saved.alert_frequency = "weekly"
            if alert is None:
                alert = _new_alert(saved, user_id)
                db.add(alert)
            else:
                alert.is_active = True
        elif alert is not None:
            alert.is_active = False

    saved.updated_at = datetime.now(timezone.utc)
    await db.commit()
    return {
        "savedSearch": saved_search_to_dict(saved, [alert] if alert else []),
        "message": "Saved search updated successfully",
    }


async def delete_saved_search(db: AsyncSession, user_id: str, saved_search_id: str) -> dict:
    saved = await get_saved_search_for_user(db, user_id, saved_search_id)
    await db.delete(saved)  # cascades to its alert
    await db.commit()
    logger.info("Saved search %s deleted by %s", saved_search_id, user_id)
    return {"message": "Saved search deleted successfully"}


async def save_search_run(
    db: AsyncSession, user_id: str, req: AdvancedSearchRequest, results_count: int
) -> dict:
    """Store an advanced search as a saved search, with its alert when requested."""
    now = datetime.now(timezone.utc)
    saved = SavedSearch(
        organization_id=req.organization_id,
        user_id=user_id,
        name=req.search_name,
        search_criteria=req.criteria(),
        alert_enabled=req.alert_enabled,
        alert_frequency=req.alert_frequency if req.alert_enabled else None,
        last_run_at=now,
        results_count=results_count,
    )
    db.add(saved)
    await db.flush()

    alerts = []
    if req.alert_enabled:
        alerts.append(_new_alert(saved, user_id))
        db.add(alerts[0])
    await db.commit()
    return saved_search_to_dict(saved, alerts)


# ──────────────────────────────────────────────
# Alerts
# ──────────────────────────────────────────────

async def list_search_alerts(
    db: AsyncSession,
    user_id: str,
    organization_id: Optional[str] = None,
    saved_search_id: Optional[str] = None,
) -> list[dict]:
    """Alerts of an organization (or the caller's own), newest first."""
    query = select(SearchAlert, SavedSearch).join(SavedSearch, SearchAlert.saved_search_id == SavedSearch.id)
    if organization_id:
        await validate_organization_access(db, user_id, organization_id)
        query = query.where(SearchAlert.organization_id == organization_id)
    else:
        query = query.where(SearchAlert.user_id == user_id)
    if saved_search_id:
        query = query.where(SearchAlert.saved_search_id == saved_search_id)

    rows = (await db.execute(query.order_by(SearchAlert.created_at.desc()))).all()
    return [alert_to_dict(alert, saved) for alert, saved in rows]


async def upsert_search_alert(db: AsyncSession, user_id: str, request: SearchAlertUpsert) -> dict:
    """Create the saved search's alert, or update the one it already has."""
    saved = await get_saved_search_for_user(db, user_id, request.saved_search_id)

    alert = await _alert_for(db, saved.id)
    if alert is None:
        alert = SearchAlert(saved_search_id=saved.id, organization_id=saved.organization_id, user_id=user_id)
        db.add(alert)
    alert.alert_type = request.alert_type
    alert.trigger_criteria = request.trigger_criteria
    alert.is_active = request.enabled
    await db.commit()

    return {"alert": alert_to_dict(alert, saved), "message": "Search alert updated successfully"}
