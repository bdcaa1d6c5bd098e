"""
Organizations — creation, membership listing, and profile bootstrap.

New organizations start on the ``trial`` plan with 0 credits and the
creator as ``owner``.  Joining by invite code is handled by the frontend
flow and is not exposed here.
"""

import logging
import secrets

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthUser
from db.models import Organization, OrganizationMember, Profile
from usage import trial_searches_remaining

logger = logging.getLogger(__name__)


async def ensure_profile(db: AsyncSession, user: AuthUser) -> Profile:
    """Return the caller's profile, creating it on first use.  Does not commit."""
    profile = (await db.execute(
        select(Profile).where(Profile.id == user.id)
    )).scalar_one_or_none()
    if profile is None:
        profile = Profile(id=user.id, email=user.email)
        db.add(profile)
        await db.flush()
    return profile


def organization_to_dict(org: Organization, role: str | None = None) -> dict:
    data = {
        "id": org.id,
        "name": org.name,
        "owner_id": org.owner_id,
        "plan": org.plan,
        "credits": org.credits or 0,
        "trial_searches_used": org.trial_searches_used or 0,
        "trial_searches_remaining": (
            trial_searches_remaining(org.trial_searches_used or 0) if org.plan == "trial" else None
        ),
        "invite_code": org.invite_code,
        "created_at": org.created_at.isoformat() if org.created_at else None,
    }
    if role is not None:
        data["role"] = role
    return data


async def create_organization(db: AsyncSession, user: AuthUser, name: str) -> dict:
    await ensure_profile(db, user)

    org = Organization(
        name=name,
        owner_id=user.id,
        plan="trial",
        credits=0,
        trial_searches_used=0,
        invite_code=secrets.token_hex(6),
    )
    db.add(org)
    await db.flush()
    db.add(OrganizationMember(organization_id=org.id, user_id=user.id, role="owner"))
    await db.commit()

    logger.info("Organization %s (%r) created by %s", org.id, name, user.id)
    return organization_to_dict(org, role="owner")


async def list_organizations(db: AsyncSession, user_id: str) -> list[dict]:
    rows = (await db.execute(
        select(Organization, OrganizationMember.role)
        .join(OrganizationMember, OrganizationMember.organization_id == Organization.id)
        .where(OrganizationMember.user_id == user_id)
        .order_by(Organization.created_at)
    )).all()
    return [organization_to_dict(org, role=role) for org, role in rows]
