"""
Usage Tracking — organization access, plan limits, credit math and debits.

Plan tiers:
  - trial:   2 searches total, 20 leads/search, no credits
  - starter: 250 credits, 500 leads/search
  - growth:  800 credits, 500 leads/search
  - agency:  3000 credits, 500 leads/search

One credit covers 100 leads, rounding up (101 leads cost 2 credits).

The eligibility check (``check_usage_limits``) is read-only.  The debit
(``debit_usage``) is a conditional UPDATE that re-checks the balance in the
database, so two concurrent requests can never both spend the last credit
or the last trial search.

Usage:
    from usage import validate_organization_access, check_usage_limits, debit_usage

    member = await validate_organization_access(db, user.id, org_id)
    error  = check_usage_limits(org, leads_requested=50)   # None if OK
    credits = await debit_usage(db, org, leads_requested=50)
"""

from __future__ import annotations

import logging
import math
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import LEADS_PER_CREDIT, TRIAL_SEARCH_LIMIT
from db.models import Organization, OrganizationMember, UsageRecord
from errors import AccessDenied, NotFound, QuotaExceeded
from validation import has_required_role

logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────
# Plan limits
# ──────────────────────────────────────────────

PLAN_LIMITS: dict[str, dict[str, int | None]] = {
    "trial":   {"max_searches": TRIAL_SEARCH_LIMIT, "max_leads_per_search": 20,  "credits": 0},
    "starter": {"max_searches": None,               "max_leads_per_search": 500, "credits": 250},
    "growth":  {"max_searches": None,               "max_leads_per_search": 500, "credits": 800},
    "agency":  {"max_searches": None,               "max_leads_per_search": 500, "credits": 3000},
}

PAID_PLANS = {"starter", "growth", "agency"}


def get_plan_limits(plan: str) -> Optional[dict]:
    """Limits for a known plan, or None."""
    return PLAN_LIMITS.get(plan)


def credits_required(leads_requested: int) -> int:
    """ceil(leads / 100); a partial block of leads still costs a full credit."""
    if leads_requested < 1:
        raise ValueError("leads_requested must be at least 1")
    return math.ceil(leads_requested / LEADS_PER_CREDIT)


def trial_searches_remaining(used: int) -> int:
    return max(0, TRIAL_SEARCH_LIMIT - used)


# ──────────────────────────────────────────────
# Access
# ──────────────────────────────────────────────

async def validate_organization_access(
    db: AsyncSession,
    user_id: str,
    organization_id: str,
    required_role: str = "member",
) -> OrganizationMember:
    """Return the caller's membership, or raise AccessDenied (403)."""
    member = (await db.execute(
        select(OrganizationMember).where(
            OrganizationMember.organization_id == organization_id,
            OrganizationMember.user_id == user_id,
        )
    )).scalar_one_or_none()

    if member is None or not has_required_role(member.role, required_role):
        raise AccessDenied("Access denied to organization")
    return member


async def get_organization(db: AsyncSession, organization_id: str) -> Organization:
    org = (await db.execute(
        select(Organization).where(Organization.id == organization_id)
    )).scalar_one_or_none()
    if org is None:
        raise NotFound("Organization not found")
    return org


# ──────────────────────────────────────────────
# Eligibility
# ──────────────────────────────────────────────

def check_usage_limits(org: Organization, leads_requested: int) -> Optional[str]:
    """
    Check whether the organization may run a search of this size.
    Returns None if OK, or a human-readable reason if not.

    Unknown plans are never eligible.
    """
    if org.plan == "trial":
        used = org.trial_searches_used or 0
        if used >= TRIAL_SEARCH_LIMIT:
            return (
                f"Trial limit reached. You have used all {TRIAL_SEARCH_LIMIT} free searches. "
                "Please upgrade to continue."
            )
        return None

    if org.plan in PAID_PLANS:
        needed = credits_required(leads_requested)
        available = org.credits or 0
        if available < needed:
            return (
                f"Insufficient credits. You need {needed} credits "
                f"but only have {available} remaining."
            )
        return None

    logger.warning("Organization %s has unknown plan %r; refusing usage", org.id, org.plan)
    return f"Plan '{org.plan}' is not eligible for lead generation. Please contact support."


def ensure_usage_allowed(org: Organization, leads_requested: int) -> None:
    """Raise QuotaExceeded (403) if ``check_usage_limits`` refuses."""
    reason = check_usage_limits(org, leads_requested)
    if reason:
        raise QuotaExceeded(reason)


# ──────────────────────────────────────────────
# Debit + ledger
# ──────────────────────────────────────────────

async def debit_usage(db: AsyncSession, org: Organization, leads_requested: int) -> int:
    """
    Spend one trial search or ``credits_required(leads_requested)`` credits.

    The balance is re-checked inside the UPDATE; if another request spent it
    first no row matches and QuotaExceeded is raised.  Does not commit.
    Returns the credits charged for the ledger.
    """
    needed = credits_required(leads_requested)

    if org.plan == "trial":
        stmt = (
            update(Organization)
            .where(
                Organization.id == org.id,
                Organization.plan == "trial",
                Organization.trial_searches_used < TRIAL_SEARCH_LIMIT,
            )
            .values(trial_searches_used=Organization.trial_searches_used + 1)
        )
    elif org.plan in PAID_PLANS:
        stmt = (
            update(Organization)
            .where(
                Organization.id == org.id,
                Organization.plan == org.plan,
                Organization.credits >= needed,
            )
            .values(credits=Organization.credits - needed)
        )
    else:
        raise QuotaExceeded(check_usage_limits(org, leads_requested) or "Plan not eligible")

    result = await db.execute(stmt.execution_options(synchronize_session=False))
    if result.rowcount != 1:
        await db.refresh(org)
        raise QuotaExceeded(
            check_usage_limits(org, leads_requested) or "Usage allowance changed during the request"
        )

    await db.refresh(org)
    return needed


async def create_usage_record(
    db: AsyncSession,
    organization_id: str,
    user_id: Optional[str],
    action_type: str,
    credits_used: int,
) -> UsageRecord:
    """Append a ledger row.  Does not commit."""
    record = UsageRecord(
        organization_id=organization_id,
        user_id=user_id,
        action_type=action_type,
        credits_used=credits_used,
    )
    db.add(record)
    await db.flush()
    return record


# ──────────────────────────────────────────────
# Reporting
# ──────────────────────────────────────────────

async def get_usage_summary(db: AsyncSession, org: Organization, recent: int = 20) -> dict:
    """
    Plan, balance and recent ledger rows for the usage endpoint.

    Returns:
        {
            "organization_id": "...",
            "plan": "trial",
            "credits": 0,
            "trial_searches_used": 1,
            "trial_searches_remaining": 1,
            "limits": {"max_searches": 2, "max_leads_per_search": 20, "credits": 0},
            "total_credits_used": 1,
            "recent_usage": [{action_type, credits_used, created_at}, ...],
        }
    """
    records = (await db.execute(
        select(UsageRecord)
        .where(UsageRecord.organization_id == org.id)
        .order_by(UsageRecord.created_at.desc())
    )).scalars().all()

    is_trial = org.plan == "trial"
    return {
        "organization_id": org.id,
        "plan": org.plan,
        "credits": org.credits or 0,
        "trial_searches_used": org.trial_searches_used or 0,
        "trial_searches_remaining": (
            trial_searches_remaining(org.trial_searches_used or 0) if is_trial else None
        ),
        "limits": get_plan_limits(org.plan),
        "total_credits_used": sum(r.credits_used or 0 for r in records),
        "recent_usage": [
            {
                "action_type": r.action_type,
                "credits_used": r.credits_used,
                "created_at": r.created_at.isoformat() if r.created_at else None,
            }
            for r in records[:recent]
        ],
    }
