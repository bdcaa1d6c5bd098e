"""
Lead-updates webhook — status callbacks from the n8n generation workflow.

Request headers:
  x-webhook-signature   ``sha256=<hex>`` where hex = SHA-256("{timestamp}.{body}" + secret)
  x-webhook-timestamp   unix seconds; must be within ±300 s of server time

Without ``N8N_WEBHOOK_SECRET`` the endpoint refuses every request (503)
rather than accepting unsigned calls.

Per-status handling:
  processing  search → processing
  completed   search → completed; provided leads are stored (scored when the
              payload has no score) and a ``lead_generation_completed`` ledger
              row is appended; any failure flips the search to failed
  failed      search → failed with the reported error message

Every accepted call is broadcast on the realtime channel as ``search_update``.

The rate limiter is in-memory and per process: limits reset on restart and
are not shared between instances.
"""

import hashlib
import hmac
import json
import logging
import math
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import N8N_WEBHOOK_SECRET, WEBHOOK_RATE_LIMIT, WEBHOOK_TOLERANCE_SECONDS
from db.models import Lead, UserSearch
from errors import InvalidRequest, NotFound, ServiceUnavailable, Unauthorized
from lead_generation import mark_search_failed
from realtime import broadcast_search_update
from scoring import calculate_confidence_score
from usage import create_usage_record
from validation import WebhookLead, validate_webhook_payload

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-webhook-signature"
TIMESTAMP_HEADER = "x-webhook-timestamp"
ACTION_LEAD_GENERATION_COMPLETED = "lead_generation_completed"


# ──────────────────────────────────────────────
# Rate Limiter (in-memory, per key)
# ──────────────────────────────────────────────

class RateLimiter:
    """Sliding-window rate limiter with periodic stale-key cleanup."""

    def __init__(self, max_requests: int = 100, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._last_cleanup = time.time()
        self._cleanup_interval = 300

    def _maybe_cleanup(self, now: float):
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now
        stale_keys = [
            k for k, timestamps in self._requests.items()
            if not timestamps or (now - max(timestamps)) > self.window
        ]
        for k in stale_keys:
            del self._requests[k]

    def check(self, key: str) -> bool:
        """Returns True if the request is allowed (and counts it)."""
        now = time.time()
        self._maybe_cleanup(now)
        self._requests[key] = [t for t in self._requests[key] if now - t < self.window]
        if len(self._requests[key]) >= self.max_requests:
            return False
        self._requests[key].append(now)
        return True

    def remaining(self, key: str) -> int:
        now = time.time()
        active = [t for t in self._requests.get(key, []) if now - t < self.window]
        return max(0, self.max_requests - len(active))


webhook_rate_limiter = RateLimiter(max_requests=WEBHOOK_RATE_LIMIT, window_seconds=60)


# ──────────────────────────────────────────────
# Signature
# ──────────────────────────────────────────────

def is_webhook_configured() -> bool:
    return bool(N8N_WEBHOOK_SECRET)


def compute_signature(body: bytes, timestamp: str, secret: str) -> str:
    digest = hashlib.sha256()
    digest.update(timestamp.encode("utf-8") + b"." + body)
    digest.update(secret.encode("utf-8"))
    return f"sha256={digest.hexdigest()}"


def verify_webhook_signature(
    body: bytes,
    signature: str,
    timestamp: str,
    secret: str,
    now: Optional[float] = None,
) -> bool:
    """Timestamp within tolerance and signature matches (constant-time)."""
    if not secret:
        return False
    try:
        sent_at = int(timestamp)
    except (TypeError, ValueError):
        return False

    now = time.time() if now is None else now
    if abs(int(now) - sent_at) > WEBHOOK_TOLERANCE_SECONDS:
        logger.warning("Webhook timestamp outside tolerance (%ss)", int(now) - sent_at)
        return False

    expected = compute_signature(body, timestamp, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


# ──────────────────────────────────────────────
# Handlers
# ──────────────────────────────────────────────

def _lead_from_webhook(item: WebhookLead, search: UserSearch) -> Lead:
    if item.confidence_score is not None:
        score = round(item.confidence_score)
    else:
        score = calculate_confidence_score(item.model_dump())
    return Lead(
        organization_id=search.organization_id,
        search_id=search.id,
        business_name=item.business_name or "Unknown Business",
        email=item.email,
        phone=item.phone,
        website=item.website,
        confidence_score=score,
    )


async def process_lead_update(
    db: AsyncSession,
    body: bytes,
    signature: Optional[str],
    timestamp: Optional[str],
) -> dict:
    """Verify, validate and apply one webhook call."""
    if not is_webhook_configured():
        logger.error("Lead-updates webhook called but N8N_WEBHOOK_SECRET is not set")
        raise ServiceUnavailable("Webhook verification not configured")

    if not signature or not timestamp:
        raise Unauthorized("Missing webhook signature or timestamp")
    if not verify_webhook_signature(body, signature, timestamp, N8N_WEBHOOK_SECRET):
        raise Unauthorized("Invalid webhook signature")

    try:
        data = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise InvalidRequest("Invalid webhook payload", details=["body: Malformed JSON"])

    validation = validate_webhook_payload(data)
    if not validation.success:
        raise InvalidRequest("Invalid webhook payload", details=validation.errors)
    payload = validation.data

    search = (await db.execute(
        select(UserSearch).where(UserSearch.id == payload.search_id)
    )).scalar_one_or_none()
    if search is None:
        raise NotFound("Search not found")

    search_id = search.id
    organization_id = search.organization_id
    status = payload.status
    leads = payload.leads or []

    try:
        search.status = status
        if status == "processing":
            logger.info("Search %s started processing", search_id)
        elif status == "completed":
            search.completed_at = datetime.now(timezone.utc)
            if leads:
                db.add_all([_lead_from_webhook(item, search) for item in leads])
                await create_usage_record(
                    db,
                    organization_id,
                    search.user_id,
                    ACTION_LEAD_GENERATION_COMPLETED,
                    math.ceil(len(leads) / 100),
                )
            logger.info("Search %s completed with %d leads", search_id, len(leads))
        else:
            search.error_message = payload.error_message
            search.completed_at = datetime.now(timezone.utc)
            logger.warning("Search %s failed: %s", search_id, payload.error_message)
        await db.commit()
    except SQLAlchemyError:
        logger.error("Error applying %s update to search %s", status, search_id, exc_info=True)
        await db.rollback()
        await mark_search_failed(db, search_id, "Failed to save webhook leads")
        status = "failed"

    await broadcast_search_update(search_id, status, organization_id, len(leads))
    return {"success": True, "message": "Webhook processed successfully"}


def webhook_health() -> dict:
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "lead-updates-webhook",
    }
