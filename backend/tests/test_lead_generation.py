"""
Tests for lead_generation.py

End-to-end runs of the generation pipeline against in-memory SQLite:
validation, access and quota gating, cache hits, the synthetic fallback,
debits and the ledger, failure compensation, and advanced search with
its filters and optional saving.
"""

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from conftest import (
    TEST_ORG_EMPTY,
    TEST_ORG_PAID,
    TEST_ORG_TRIAL,
    make_search_request,
)
from db.models import Lead, Organization, SavedSearch, SearchAlert, UsageRecord, UserSearch
from errors import AccessDenied, InvalidRequest, ProviderUnavailable, QuotaExceeded
from lead_cache import cache_results, create_query_hash
from lead_generation import build_lead_row, passes_filters, run_advanced_search, run_lead_generation
from lead_providers import LeadGenerationError, RawLead
from validation import AdvancedFilters


async def _fetch(db, model, *where):
    stmt = select(model).where(*where).execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalars().all()


async def _count(db, model) -> int:
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.fixture
def no_provider_keys():
    with patch("lead_providers.SERPAPI_KEY", ""), patch("lead_providers.GEMINI_API_KEY", ""):
        yield


# ═══════════════════════════════════════════════
# build_lead_row
# ═══════════════════════════════════════════════

class TestBuildLeadRow:
    def test_scores_and_packs_location(self):
        raw = RawLead(
            business_name="Acme Bakery",
            email="info@acme.com",
            phone="+1-415-555-0100",
            website="https://acme.com",
            address="1 Main St",
            description="Bread",
        )
        row = build_lead_row(raw, "org-1", "search-1")
        assert row.confidence_score == 100
        assert row.location_data == {"address": "1 Main St", "description": "Bread"}
        assert row.organization_id == "org-1"
        assert row.search_id == "search-1"

    def test_no_location(self):
        row = build_lead_row(RawLead(business_name="Abc"), "org-1", "search-1")
        assert row.location_data is None
        assert row.confidence_score == 50


# ═══════════════════════════════════════════════
# Happy paths
# ═══════════════════════════════════════════════

class TestRunLeadGeneration:
    @pytest.mark.asyncio
    async def test_synthetic_fallback_paid(self, db_session, owner, no_provider_keys):
        result = await run_lead_generation(db_session, owner, make_search_request())

        assert result["success"] is True
        assert len(result["leads"]) == 10
        assert all(l["industry"] == "Bakery" for l in result["leads"])
        assert all(0 <= l["confidence_score"] <= 100 for l in result["leads"])
        assert result["usage"] == {
            "leads_generated": 10,
            "credits_used": 1,
            "remaining_credits": 9,
            "plan": "starter",
            "trial_searches_remaining": None,
        }

        search = (await _fetch(db_session, UserSearch, UserSearch.id == result["search_id"]))[0]
        assert search.status == "completed"
        assert search.completed_at is not None
        assert await _count(db_session, Lead) == 10

        records = await _fetch(db_session, UsageRecord)
        assert [(r.action_type, r.credits_used) for r in records] == [("lead_generation", 1)]

    @pytest.mark.asyncio
    async def test_credits_round_up(self, db_session, owner, no_provider_keys):
        result = await run_lead_generation(db_session, owner, make_search_request(leads_requested=101))
        assert result["usage"]["credits_used"] == 2
        assert result["usage"]["remaining_credits"] == 8

    @pytest.mark.asyncio
    async def test_trial_counts_searches(self, db_session, member, no_provider_keys):
        body = make_search_request(organization_id=TEST_ORG_TRIAL, leads_requested=5)

        first = await run_lead_generation(db_session, member, body)
        assert first["usage"]["plan"] == "trial"
        assert first["usage"]["trial_searches_remaining"] == 1
        assert first["usage"]["remaining_credits"] == 0

        second = await run_lead_generation(db_session, member, body)
        assert second["usage"]["trial_searches_remaining"] == 0

        with pytest.raises(QuotaExceeded, match="Trial limit reached"):
            await run_lead_generation(db_session, member, body)
        assert await _count(db_session, UserSearch) == 2

    @pytest.mark.asyncio
    async def test_cache_hit_skips_providers(self, db_session, owner):
        key = create_query_hash("Bakery", "USA", "CA", "San Francisco", 3)
        await cache_results(db_session, key, [
            {"business_name": "Cached One", "email": "a@one.com"},
            {"business_name": "Cached Two"},
            "not an object",
            {"name": "Cached Three"},
        ])
        await db_session.commit()

        provider = AsyncMock()
        with patch("lead_generation.generate_leads", provider):
            result = await run_lead_generation(
                db_session, owner, make_search_request(business_type="bakery", leads_requested=3)
            )

        provider.assert_not_awaited()
        assert [l["business_name"] for l in result["leads"]] == ["Cached One", "Cached Two", "Cached Three"]

    @pytest.mark.asyncio
    async def test_results_cached_for_next_request(self, db_session, owner):
        provider = AsyncMock(return_value=[RawLead(business_name="Fresh Loaf")])
        with patch("lead_generation.generate_leads", provider):
            await run_lead_generation(db_session, owner, make_search_request(leads_requested=1))
            await run_lead_generation(db_session, owner, make_search_request(leads_requested=1))
        assert provider.await_count == 1

    @pytest.mark.asyncio
    async def test_extra_provider_leads_truncated(self, db_session, owner):
        provider = AsyncMock(return_value=[RawLead(business_name=f"Lead {i}") for i in range(8)])
        with patch("lead_generation.generate_leads", provider):
            result = await run_lead_generation(db_session, owner, make_search_request(leads_requested=5))
        assert len(result["leads"]) == 5

    @pytest.mark.asyncio
    async def test_empty_provider_result_still_charges(self, db_session, owner):
        with patch("lead_generation.generate_leads", AsyncMock(return_value=[])):
            result = await run_lead_generation(db_session, owner, make_search_request(leads_requested=5))
        assert result["leads"] == []
        assert result["usage"]["credits_used"] == 1


# ═══════════════════════════════════════════════
# Refusals & failures
# ═══════════════════════════════════════════════

class TestRunLeadGenerationErrors:
    @pytest.mark.asyncio
    async def test_invalid_body(self, db_session, owner):
        with pytest.raises(InvalidRequest) as exc:
            await run_lead_generation(db_session, owner, make_search_request(leads_requested=0))
        assert exc.value.message == "Invalid request data"
        assert any(d.startswith("leads_requested:") for d in exc.value.details)
        assert await _count(db_session, UserSearch) == 0

    @pytest.mark.asyncio
    async def test_non_member(self, db_session, outsider):
        with pytest.raises(AccessDenied):
            await run_lead_generation(db_session, outsider, make_search_request())
        assert await _count(db_session, UserSearch) == 0

    @pytest.mark.asyncio
    async def test_paid_without_credits(self, db_session, owner):
        provider = AsyncMock()
        with patch("lead_generation.generate_leads", provider):
            with pytest.raises(QuotaExceeded) as exc:
                await run_lead_generation(
                    db_session, owner, make_search_request(organization_id=TEST_ORG_EMPTY, leads_requested=50)
                )
        assert exc.value.status_code == 403
        assert exc.value.message == "Insufficient credits. You need 1 credits but only have 0 remaining."
        provider.assert_not_awaited()
        assert await _count(db_session, UserSearch) == 0

    @pytest.mark.asyncio
    async def test_provider_failure_marks_search_failed(self, db_session, owner):
        failing = AsyncMock(side_effect=LeadGenerationError("Lead generation service unavailable"))
        with patch("lead_generation.generate_leads", failing):
            with pytest.raises(ProviderUnavailable) as exc:
                await run_lead_generation(db_session, owner, make_search_request())
        assert exc.value.status_code == 503

        searches = await _fetch(db_session, UserSearch)
        assert len(searches) == 1
        assert searches[0].status == "failed"
        assert searches[0].error_message == "Lead generation service temporarily unavailable"

        org = (await _fetch(db_session, Organization, Organization.id == TEST_ORG_PAID))[0]
        assert org.credits == 10
        assert await _count(db_session, Lead) == 0
        assert await _count(db_session, UsageRecord) == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_search_failed(self, db_session, owner):
        with patch("lead_generation.generate_leads", AsyncMock(return_value=[RawLead()])), \
             patch("lead_generation.debit_usage", AsyncMock(side_effect=RuntimeError("db gone"))):
            with pytest.raises(RuntimeError):
                await run_lead_generation(db_session, owner, make_search_request())

        searches = await _fetch(db_session, UserSearch)
        assert searches[0].status == "failed"
        assert searches[0].error_message == "Internal error"
        assert await _count(db_session, Lead) == 0


# ═══════════════════════════════════════════════
# Advanced search
# ═══════════════════════════════════════════════

MIXED_LEADS = [
    RawLead(
        business_name="Full Contact",
        email="hello@fullcontact.com",
        phone="+1-415-555-0100",
        website="https://fullcontact.com",
    ),
    RawLead(business_name="Phone Only", phone="+1-415-555-0101"),
    RawLead(business_name="Abc"),
]


def _advanced(**overrides) -> dict:
    return make_search_request(leads_requested=3, **overrides)


class TestPassesFilters:
    def test_contact_requirements(self):
        lead = build_lead_row(MIXED_LEADS[1], "org-1", "search-1")
        assert passes_filters(lead, AdvancedFilters(has_phone=True))
        assert not passes_filters(lead, AdvancedFilters(has_email=True))
        assert not passes_filters(lead, AdvancedFilters(has_website=True))
        assert passes_filters(lead, AdvancedFilters(has_email=False))

    def test_score_bounds(self):
        lead = build_lead_row(MIXED_LEADS[2], "org-1", "search-1")
        assert lead.confidence_score == 50
        assert passes_filters(lead, AdvancedFilters(lead_score_min=50, lead_score_max=50))
        assert not passes_filters(lead, AdvancedFilters(lead_score_min=51))
        assert not passes_filters(lead, AdvancedFilters(lead_score_max=49))


class TestRunAdvancedSearch:
    @pytest.mark.asyncio
    async def test_filters_and_stamps_leads(self, db_session, owner):
        body = _advanced(
            industry="Food & Beverage",
            company_size="small",
            location_radius=25,
            advanced_filters={"has_phone": True, "tags": ["q3"]},
        )
        with patch("lead_generation.generate_leads", AsyncMock(return_value=MIXED_LEADS)):
            result = await run_advanced_search(db_session, owner, body)

        assert [l["business_name"] for l in result["leads"]] == ["Full Contact", "Phone Only"]
        assert all(l["industry"] == "Food & Beverage" for l in result["leads"])
        assert all(l["company_size"] == "small" for l in result["leads"])
        assert all(l["tags"] == ["q3"] for l in result["leads"])
        assert result["usage"]["credits_used"] == 1
        assert result["savedSearch"] is None
        assert result["message"] == "Advanced search completed. Found 2 leads."

        search = result["search"]
        assert search["status"] == "completed"
        assert search["industry"] == "Food & Beverage"
        assert search["location_radius"] == 25
        assert search["advanced_filters"]["has_phone"] is True

        rows = await _fetch(db_session, Lead)
        assert all(r.location_data["radius"] == 25 for r in rows)

    @pytest.mark.asyncio
    async def test_charges_for_requested_even_when_filtered_out(self, db_session, owner):
        body = _advanced(advanced_filters={"lead_score_min": 100, "has_email": True})
        with patch("lead_generation.generate_leads", AsyncMock(return_value=MIXED_LEADS[1:])):
            result = await run_advanced_search(db_session, owner, body)
        assert result["leads"] == []
        assert result["usage"]["remaining_credits"] == 9

    @pytest.mark.asyncio
    async def test_saves_search_with_alert(self, db_session, owner, no_provider_keys):
        body = _advanced(
            save_search=True, search_name="Weekly bakeries", alert_enabled=True, alert_frequency="daily"
        )
        result = await run_advanced_search(db_session, owner, body)

        saved = result["savedSearch"]
        assert saved["name"] == "Weekly bakeries"
        assert saved["results_count"] == 3
        assert saved["last_run_at"] is not None
        assert saved["alert_frequency"] == "daily"
        assert saved["search_criteria"]["business_type"] == "Bakery"
        assert "organization_id" not in saved["search_criteria"]
        assert "search_name" not in saved["search_criteria"]

        alerts = await _fetch(db_session, SearchAlert)
        assert [(a.saved_search_id, a.alert_type) for a in alerts] == [(saved["id"], "new_leads")]

    @pytest.mark.asyncio
    async def test_save_without_name_refused(self, db_session, owner):
        with pytest.raises(InvalidRequest) as exc:
            await run_advanced_search(db_session, owner, _advanced(save_search=True))
        assert any("search_name is required" in d for d in exc.value.details)
        assert await _count(db_session, UserSearch) == 0

    @pytest.mark.asyncio
    async def test_inverted_score_range_refused(self, db_session, owner):
        body = _advanced(advanced_filters={"lead_score_min": 80, "lead_score_max": 20})
        with pytest.raises(InvalidRequest):
            await run_advanced_search(db_session, owner, body)

    @pytest.mark.asyncio
    async def test_save_failure_keeps_results(self, db_session, owner, no_provider_keys):
        failing = AsyncMock(side_effect=SQLAlchemyError("disk full"))
        with patch("lead_generation.save_search_run", failing):
            result = await run_advanced_search(
                db_session, owner, _advanced(save_search=True, search_name="Keep me")
            )

        assert len(result["leads"]) == 3
        assert result["savedSearch"] is None
        assert await _count(db_session, Lead) == 3
        assert await _count(db_session, SavedSearch) == 0

    @pytest.mark.asyncio
    async def test_quota_applies(self, db_session, owner):
        with pytest.raises(QuotaExceeded):
            await run_advanced_search(db_session, owner, _advanced(organization_id=TEST_ORG_EMPTY))
