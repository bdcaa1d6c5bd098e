"""
Tests for webhooks.py

Covers signature computation and verification, the fail-closed secret
check, payload validation, per-status handling, and the rate limiter.
"""

import json
import time

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy import select

from conftest import add_search
from db.models import Lead, UsageRecord, UserSearch
from errors import InvalidRequest, NotFound, ServiceUnavailable, Unauthorized
from webhooks import (
    RateLimiter,
    compute_signature,
    process_lead_update,
    verify_webhook_signature,
    webhook_health,
)

SECRET = "n8n-test-secret"


def _signed(payload: dict, secret: str = SECRET, ts: int | None = None):
    body = json.dumps(payload).encode()
    timestamp = str(int(time.time()) if ts is None else ts)
    return body, compute_signature(body, timestamp, secret), timestamp


@pytest.fixture
def configured():
    broadcast = AsyncMock(return_value=True)
    with patch("webhooks.N8N_WEBHOOK_SECRET", SECRET), \
         patch("webhooks.broadcast_search_update", broadcast):
        yield broadcast


async def _reload(db, search_id) -> UserSearch:
    stmt = select(UserSearch).where(UserSearch.id == search_id).execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalar_one()


# ═══════════════════════════════════════════════
# Signatures
# ═══════════════════════════════════════════════

class TestSignature:
    def test_format(self):
        sig = compute_signature(b'{"a":1}', "1700000000", SECRET)
        assert sig.startswith("sha256=")
        assert len(sig) == len("sha256=") + 64

    def test_valid(self):
        body, sig, ts = _signed({"a": 1}, ts=1_700_000_000)
        assert verify_webhook_signature(body, sig, ts, SECRET, now=1_700_000_100)

    def test_tampered_body(self):
        body, sig, ts = _signed({"a": 1}, ts=1_700_000_000)
        assert not verify_webhook_signature(body + b" ", sig, ts, SECRET, now=1_700_000_000)

    def test_wrong_secret(self):
        body, sig, ts = _signed({"a": 1}, secret="other", ts=1_700_000_000)
        assert not verify_webhook_signature(body, sig, ts, SECRET, now=1_700_000_000)

    @pytest.mark.parametrize("skew", [301, -301, 600])
    def test_stale_or_future_timestamp(self, skew):
        body, sig, ts = _signed({"a": 1}, ts=1_700_000_000)
        assert not verify_webhook_signature(body, sig, ts, SECRET, now=1_700_000_000 + skew)

    def test_boundary_accepted(self):
        body, sig, ts = _signed({"a": 1}, ts=1_700_000_000)
        assert verify_webhook_signature(body, sig, ts, SECRET, now=1_700_000_300)

    def test_non_numeric_timestamp(self):
        assert not verify_webhook_signature(b"{}", "sha256=00", "yesterday", SECRET)

    def test_empty_secret_never_verifies(self):
        body, sig, ts = _signed({"a": 1}, secret="")
        assert not verify_webhook_signature(body, sig, ts, "")


# ═══════════════════════════════════════════════
# process_lead_update
# ═══════════════════════════════════════════════

class TestProcessLeadUpdate:
    @pytest.mark.asyncio
    async def test_unconfigured_secret_fails_closed(self, db_session):
        search = await add_search(db_session, status="processing")
        body, sig, ts = _signed({"search_id": search.id, "status": "failed"})
        with patch("webhooks.N8N_WEBHOOK_SECRET", ""):
            with pytest.raises(ServiceUnavailable, match="Webhook verification not configured"):
                await process_lead_update(db_session, body, sig, ts)
        assert (await _reload(db_session, search.id)).status == "processing"

    @pytest.mark.asyncio
    async def test_missing_headers(self, db_session, configured):
        with pytest.raises(Unauthorized, match="Missing webhook signature or timestamp"):
            await process_lead_update(db_session, b"{}", None, None)

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, db_session, configured):
        search = await add_search(db_session, status="processing")
        body, sig, ts = _signed({"search_id": search.id, "status": "completed"}, ts=int(time.time()) - 301)
        with pytest.raises(Unauthorized, match="Invalid webhook signature"):
            await process_lead_update(db_session, body, sig, ts)
        assert (await _reload(db_session, search.id)).status == "processing"

    @pytest.mark.asyncio
    async def test_bad_payload(self, db_session, configured):
        body, sig, ts = _signed({"search_id": "nope", "status": "done"})
        with pytest.raises(InvalidRequest) as exc:
            await process_lead_update(db_session, body, sig, ts)
        assert exc.value.message == "Invalid webhook payload"
        assert exc.value.details

    @pytest.mark.asyncio
    async def test_malformed_json(self, db_session, configured):
        body = b"{not json"
        ts = str(int(time.time()))
        with pytest.raises(InvalidRequest):
            await process_lead_update(db_session, body, compute_signature(body, ts, SECRET), ts)

    @pytest.mark.asyncio
    async def test_unknown_search(self, db_session, configured):
        body, sig, ts = _signed({"search_id": "30000000-0000-4000-8000-00000000beef", "status": "processing"})
        with pytest.raises(NotFound):
            await process_lead_update(db_session, body, sig, ts)

    @pytest.mark.asyncio
    async def test_processing(self, db_session, configured):
        search = await add_search(db_session, status="pending")
        body, sig, ts = _signed({"search_id": search.id, "status": "processing"})
        result = await process_lead_update(db_session, body, sig, ts)
        assert result == {"success": True, "message": "Webhook processed successfully"}
        assert (await _reload(db_session, search.id)).status == "processing"
        configured.assert_awaited_once_with(search.id, "processing", search.organization_id, 0)

    @pytest.mark.asyncio
    async def test_completed_stores_leads_and_ledger(self, db_session, configured):
        search = await add_search(db_session, status="processing")
        payload = {
            "search_id": search.id,
            "status": "completed",
            "leads": [
                {"business_name": "Golden Crust", "email": "hi@goldencrust.com", "confidence_score": 88},
                {"business_name": "Mission Pastry", "phone": "+1 415 555 0100"},
            ],
        }
        body, sig, ts = _signed(payload)
        await process_lead_update(db_session, body, sig, ts)

        updated = await _reload(db_session, search.id)
        assert updated.status == "completed"
        assert updated.completed_at is not None

        leads = (await db_session.execute(select(Lead).where(Lead.search_id == search.id))).scalars().all()
        scores = {l.business_name: l.confidence_score for l in leads}
        assert scores == {"Golden Crust": 88, "Mission Pastry": 75}

        records = (await db_session.execute(select(UsageRecord))).scalars().all()
        assert [(r.action_type, r.credits_used) for r in records] == [("lead_generation_completed", 1)]
        configured.assert_awaited_once_with(search.id, "completed", search.organization_id, 2)

    @pytest.mark.asyncio
    async def test_failed_records_message(self, db_session, configured):
        search = await add_search(db_session, status="processing")
        body, sig, ts = _signed({"search_id": search.id, "status": "failed", "error_message": "Workflow timed out"})
        await process_lead_update(db_session, body, sig, ts)

        updated = await _reload(db_session, search.id)
        assert updated.status == "failed"
        assert updated.error_message == "Workflow timed out"


# ═══════════════════════════════════════════════
# Rate limiter & health
# ═══════════════════════════════════════════════

class TestRateLimiter:
    def test_limit_per_key(self):
        limiter = RateLimiter(max_requests=3, window_seconds=60)
        assert all(limiter.check("1.2.3.4") for _ in range(3))
        assert limiter.check("1.2.3.4") is False
        assert limiter.check("5.6.7.8") is True
        assert limiter.remaining("1.2.3.4") == 0

    def test_window_expiry(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60)
        with patch("webhooks.time.time", return_value=1000.0):
            assert limiter.check("ip")
            assert not limiter.check("ip")
        with patch("webhooks.time.time", return_value=1061.0):
            assert limiter.check("ip")


def test_webhook_health():
    health = webhook_health()
    assert health["status"] == "healthy"
    assert health["service"] == "lead-updates-webhook"
