"""
Realtime — push search status changes to dashboards via Supabase Broadcast.

Best effort: a failed or unconfigured broadcast is logged and never fails
the request that triggered it.
"""

import logging
from typing import Optional

import httpx

from config import SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY, REALTIME_CHANNEL, PROVIDER_TIMEOUT

logger = logging.getLogger(__name__)

SEARCH_UPDATE_EVENT = "search_update"


def is_realtime_configured() -> bool:
    return bool(SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY)


async def broadcast(
    event: str,
    payload: dict,
    channel: str = REALTIME_CHANNEL,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """Send one broadcast message.  Returns True if Supabase accepted it."""
    if not is_realtime_configured():
        logger.debug("Realtime not configured; dropping %s on %s", event, channel)
        return False

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=PROVIDER_TIMEOUT)
    try:
        response = await client.post(
            f"{SUPABASE_URL}/realtime/v1/api/broadcast",
            headers={
                "apikey": SUPABASE_SERVICE_ROLE_KEY,
                "Authorization": f"Bearer {SUPABASE_SERVICE_ROLE_KEY}",
            },
            json={"messages": [{"topic": channel, "event": event, "payload": payload}]},
        )
        response.raise_for_status()
        return True
    except httpx.HTTPError as e:
        logger.warning("Realtime broadcast %s failed: %s", event, e)
        return False
    finally:
        if owns_client:
            await client.aclose()


async def broadcast_search_update(
    search_id: str,
    status: str,
    organization_id: str,
    leads_count: int = 0,
) -> bool:
    return await broadcast(SEARCH_UPDATE_EVENT, {
        "search_id": search_id,
        "status": status,
        "organization_id": organization_id,
        "leads_count": leads_count,
    })
