"""
Search-result cache — provider results keyed by a hash of the query.

The key is SHA-256 over ``"{business_type}-{country}-{state}-{city}-{leads_requested}"``
lower-cased, so two requests differing only in letter case share an entry.
Entries expire after ``CACHE_TTL_HOURS`` (24h); expired rows are ignored on
read and overwritten on the next store, never purged here.

Usage:
    from lead_cache import create_query_hash, get_cached_results, cache_results

    key = create_query_hash("Dentists", "USA", "NY", "NYC", 50)
    hit = await get_cached_results(db, key)      # list[dict] | None
    await cache_results(db, key, leads)
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import CACHE_TTL_HOURS
from db.models import SerpCache

logger = logging.getLogger(__name__)


def create_query_hash(
    business_type: str,
    country: str,
    state: str,
    city: str,
    leads_requested: int,
) -> str:
    """Deterministic, case-insensitive cache key for a search."""
    raw = f"{business_type}-{country}-{state}-{city}-{leads_requested}".lower()
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


async def get_cached_results(db: AsyncSession, query_hash: str) -> list[dict] | None:
    """Return the cached result list if a live entry exists, else None."""
    now = datetime.now(timezone.utc)
    row = (await db.execute(
        select(SerpCache).where(
            SerpCache.query_hash == query_hash,
            SerpCache.expires_at > now,
        )
    )).scalar_one_or_none()

    if row is None:
        return None
    if not isinstance(row.results, list):
        logger.warning("Cache entry %s holds non-list results; ignoring", query_hash[:12])
        return None

    logger.info("Cache hit for %s (%d results)", query_hash[:12], len(row.results))
    return row.results


async def cache_results(
    db: AsyncSession,
    query_hash: str,
    results: list[dict],
    ttl_hours: int = CACHE_TTL_HOURS,
) -> None:
    """Store (or replace) the results for ``query_hash``.  Caller commits."""
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=ttl_hours)

    row = (await db.execute(
        select(SerpCache).where(SerpCache.query_hash == query_hash)
    )).scalar_one_or_none()

    if row is None:
        db.add(SerpCache(
            query_hash=query_hash,
            results=results,
            created_at=now,
            expires_at=expires_at,
        ))
    else:
        row.results = results
        row.created_at = now
        row.expires_at = expires_at

    await db.flush()
