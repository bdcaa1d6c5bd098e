"""
Shared test fixtures for the entire test suite.

Provides:
  - In-memory SQLite database with all tables
  - Seeded profiles and organizations (trial, paid with credits, paid with none)
  - Sample data factories for searches and leads
"""

import pytest
import pytest_asyncio

from sqlalchemy import String
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from auth import AuthUser
from db import Base
from db.models import Lead, Organization, OrganizationMember, Profile, UserSearch

# ── Deterministic test IDs ──────────────────────
TEST_USER_OWNER = "00000000-0000-4000-8000-000000000001"
TEST_USER_MEMBER = "00000000-0000-4000-8000-000000000002"
TEST_USER_OUTSIDER = "00000000-0000-4000-8000-000000000003"

TEST_ORG_TRIAL = "10000000-0000-4000-8000-000000000001"
TEST_ORG_PAID = "10000000-0000-4000-8000-000000000002"
TEST_ORG_EMPTY = "10000000-0000-4000-8000-000000000003"


def _patch_uuid_columns_for_sqlite():
    """Replace PostgreSQL UUID columns with String(36) for SQLite compat."""
    for table in Base.metadata.tables.values():
        for col in table.columns:
            if hasattr(col.type, "__class__") and col.type.__class__.__name__ == "UUID":
                col.type = String(36)


@pytest_asyncio.fixture
async def db_engine():
    """Create a fresh in-memory SQLite engine."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    _patch_uuid_columns_for_sqlite()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    """Provide a DB session with profiles, organizations and memberships pre-seeded.

    owner    → owner of all three organizations
    member   → plain member of the trial organization
    outsider → no memberships
    """
    Session = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with Session() as session:
        for uid, name in [
            (TEST_USER_OWNER, "owner"),
            (TEST_USER_MEMBER, "member"),
            (TEST_USER_OUTSIDER, "outsider"),
        ]:
            session.add(Profile(id=uid, email=f"{name}@test.com", full_name=f"Test {name.title()}"))
        await session.flush()

        for oid, plan, credits in [
            (TEST_ORG_TRIAL, "trial", 0),
            (TEST_ORG_PAID, "starter", 10),
            (TEST_ORG_EMPTY, "starter", 0),
        ]:
            session.add(Organization(
                id=oid,
                name=f"{plan.title()} Org",
                owner_id=TEST_USER_OWNER,
                plan=plan,
                credits=credits,
                trial_searches_used=0,
            ))
        await session.flush()

        for oid in (TEST_ORG_TRIAL, TEST_ORG_PAID, TEST_ORG_EMPTY):
            session.add(OrganizationMember(organization_id=oid, user_id=TEST_USER_OWNER, role="owner"))
        session.add(OrganizationMember(organization_id=TEST_ORG_TRIAL, user_id=TEST_USER_MEMBER, role="member"))
        await session.commit()
        yield session


@pytest.fixture
def owner():
    return AuthUser(id=TEST_USER_OWNER, email="owner@test.com", role="authenticated")


@pytest.fixture
def member():
    return AuthUser(id=TEST_USER_MEMBER, email="member@test.com", role="authenticated")


@pytest.fixture
def outsider():
    return AuthUser(id=TEST_USER_OUTSIDER, email="outsider@test.com", role="authenticated")


# ── Sample data factories ──────────────────────

def make_search_request(**overrides) -> dict:
    """A valid lead-generation request body."""
    defaults = {
        "business_type": "Bakery",
        "country": "USA",
        "state": "CA",
        "city": "San Francisco",
        "leads_requested": 10,
        "organization_id": TEST_ORG_PAID,
    }
    defaults.update(overrides)
    return defaults


async def add_search(session, **overrides) -> UserSearch:
    """Insert a completed search for the paid organization."""
    defaults = {
        "organization_id": TEST_ORG_PAID,
        "user_id": TEST_USER_OWNER,
        "business_type": "Bakery",
        "country": "USA",
        "state": "CA",
        "city": "San Francisco",
        "leads_requested": 3,
        "status": "completed",
    }
    defaults.update(overrides)
    search = UserSearch(**defaults)
    session.add(search)
    await session.commit()
    return search


async def add_leads(session, search: UserSearch, rows: list[dict]) -> list[Lead]:
    """Insert leads under ``search``; each dict overrides the defaults."""
    leads = []
    for i, row in enumerate(rows):
        data = {
            "organization_id": search.organization_id,
            "search_id": search.id,
            "business_name": f"Lead {i + 1}",
            "confidence_score": 50,
        }
        data.update(row)
        leads.append(Lead(**data))
    session.add_all(leads)
    await session.commit()
    return leads
