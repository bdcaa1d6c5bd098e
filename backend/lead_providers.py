"""
Lead Providers — search results → (optional) AI extraction → synthetic fallback.

Tiers, in order:
  1. SerpAPI Google search for "{business_type} in {city}, {state}, {country}",
     asking for up to 2× the requested count (max 100).
  2a. Results found: Gemini restructures them into leads.  Without a Gemini key,
      or when the reply isn't a JSON array, each result is mapped directly
      (title → name, domain → synthetic email, snippet → description).
  2b. No results: Gemini invents plausible businesses.  Without a key, or on
      an unusable reply, deterministic synthetic leads are generated.

Every tier swallows its own provider errors and degrades to the next one, so
the chain only raises ``LeadGenerationError`` on a genuinely unexpected bug.
An empty list is a valid outcome.

Environment variables (see config.py):
  SERPAPI_KEY     — tier 1; unset ⇒ skipped
  GEMINI_API_KEY  — tiers 2a/2b AI steps; unset ⇒ skipped
  GEMINI_MODEL    — default gemini-1.5-flash
"""

import hashlib
import json
import logging
import re
from typing import Any, Optional
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel

from config import (
    SERPAPI_KEY,
    SERPAPI_BASE_URL,
    GEMINI_API_KEY,
    GEMINI_API_BASE,
    GEMINI_MODEL,
    PROVIDER_TIMEOUT,
)

logger = logging.getLogger(__name__)

USER_AGENT = "EvoLeadAI/1.0"
MAX_SERP_RESULTS = 100
PROMPT_RESULT_LIMIT = 20  # search results included in the extraction prompt

EMAIL_PREFIXES = ["contact", "info", "hello", "sales", "support"]

MOCK_SUFFIXES: dict[str, list[str]] = {
    "restaurant": ["Bistro", "Cafe", "Grill", "Kitchen", "Diner"],
    "retail": ["Store", "Shop", "Boutique", "Market", "Outlet"],
    "service": ["Services", "Solutions", "Group", "Company", "Associates"],
    "default": ["Business", "Company", "Enterprise", "Group", "Services"],
}


class LeadGenerationError(Exception):
    """All provider tiers failed unexpectedly."""


class SearchParams(BaseModel):
    business_type: str
    country: str
    state: str
    city: str
    leads_requested: int


class RawLead(BaseModel):
    """A candidate lead as produced by a provider, before scoring."""
    business_name: str = "Unknown Business"
    email: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    address: Optional[str] = None
    industry: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_provider(cls, item: dict) -> "RawLead":
        """Build from a loosely-shaped provider object, defaulting every field."""
        def _text(key: str) -> Optional[str]:
            value = item.get(key)
            if value is None or value == "" or isinstance(value, (dict, list, bool)):
                return None
            return str(value).strip() or None

        return cls(
            business_name=_text("business_name") or _text("name") or "Unknown Business",
            email=_text("email"),
            phone=_text("phone"),
            website=_text("website"),
            address=_text("address"),
            industry=_text("industry"),
            description=_text("description"),
        )


def coerce_leads(items: Any) -> list[RawLead]:
    """Turn a list of provider objects (or cached dicts) into RawLeads.

    Elements that aren't JSON objects are dropped.
    """
    if not isinstance(items, list):
        return []
    return [RawLead.from_provider(item) for item in items if isinstance(item, dict)]


# ──────────────────────────────────────────────
# Deterministic synthesis helpers
# ──────────────────────────────────────────────

def _digest(seed: str) -> int:
    return int(hashlib.sha256(seed.encode("utf-8")).hexdigest(), 16)


def extract_domain(url: Optional[str]) -> str:
    """Hostname without ``www.``; ``example.com`` when the URL can't be parsed."""
    if not url:
        return "example.com"
    host = urlparse(url).hostname
    if not host:
        return "example.com"
    return host[4:] if host.startswith("www.") else host


def synthetic_email(domain: str, index: int) -> str:
    return f"{EMAIL_PREFIXES[index % len(EMAIL_PREFIXES)]}@{domain}"


def synthetic_phone(seed: str, index: int) -> str:
    """``+1-AAA-EEE-NNNN``, stable for the same (seed, index)."""
    n = _digest(f"{seed}:{index}")
    area = 100 + n % 900
    exchange = 100 + (n // 1000) % 900
    number = 1000 + (n // 1_000_000) % 9000
    return f"+1-{area}-{exchange}-{number}"


def _suffixes_for(business_type: str) -> list[str]:
    bt = business_type.lower()
    for keyword, suffixes in MOCK_SUFFIXES.items():
        if keyword != "default" and keyword in bt:
            return suffixes
    return MOCK_SUFFIXES["default"]


def generate_mock_leads(params: SearchParams, start: int = 0) -> list[RawLead]:
    """Synthetic leads ``start .. leads_requested-1``; same params ⇒ same leads."""
    suffixes = _suffixes_for(params.business_type)
    leads = []
    for i in range(start, params.leads_requested):
        name = f"{params.city} {suffixes[i % len(suffixes)]} {i + 1}"
        domain = re.sub(r"\s+", "", name.lower()) + ".com"
        leads.append(RawLead(
            business_name=name,
            email=f"contact@{domain}",
            phone=synthetic_phone(name, i),
            website=f"https://{domain}",
            address=f"{100 + i} Main Street, {params.city}, {params.state}",
            industry=params.business_type,
            description=f"Professional {params.business_type} business serving {params.city} area",
        ))
    return leads


def process_serp_results_basic(results: list[dict], max_leads: int, start: int = 0) -> list[RawLead]:
    """Map raw search results straight to leads, without AI."""
    leads = []
    for i, result in enumerate(results[:max_leads]):
        if i < start:
            continue
        link = result.get("link") or None
        name = result.get("title") or f"Business {i + 1}"
        leads.append(RawLead(
            business_name=name,
            email=synthetic_email(extract_domain(link), i),
            phone=synthetic_phone(name, i),
            website=link,
            description=result.get("snippet") or None,
        ))
    return leads


# ──────────────────────────────────────────────
# AI response parsing
# ──────────────────────────────────────────────

def parse_ai_lead_response(text: str, max_leads: int) -> list[RawLead]:
    """Extract the JSON array from a model reply.

    Raises ValueError when no array can be found or parsed.
    """
    match = re.search(r"\[[\s\S]*\]", text or "")
    if not match:
        raise ValueError("No JSON array found in AI response")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ValueError(f"AI response is not valid JSON: {e}") from e
    if not isinstance(data, list):
        raise ValueError("AI response is not an array")
    return coerce_leads(data[:max_leads])


def build_extraction_prompt(results: list[dict], params: SearchParams) -> str:
    results_text = "\n\n".join(
        f"Title: {r.get('title', '')}\nSnippet: {r.get('snippet', '')}\nLink: {r.get('link', '')}"
        for r in results[:PROMPT_RESULT_LIMIT]
    )
    return f"""Extract business lead information from these search results for {params.business_type} businesses in {params.city}, {params.state}, {params.country}.

Search Results:
{results_text}

Return exactly {params.leads_requested} business leads as a JSON array of objects with the keys
"business_name", "email", "phone", "website", "address", "industry" ("{params.business_type}") and "description".

Rules:
- Only include businesses that match the requested type
- Use proper phone number formats
- Keep all data relevant to {params.city}, {params.state}
- If there are not enough real businesses, add realistic ones
- Return valid JSON only, no additional text"""


def build_direct_prompt(params: SearchParams) -> str:
    return f"""Generate {params.leads_requested} realistic business leads for {params.business_type} businesses located in {params.city}, {params.state}, {params.country}.

Return a JSON array of objects with the keys "business_name", "email", "phone", "website",
"address" (in {params.city}, {params.state}), "industry" ("{params.business_type}") and "description".

Requirements:
- Business names relevant to {params.business_type}
- Professional email addresses based on the business names
- Phone number formats used in {params.country}
- Websites on .com, .net or .org
- Return valid JSON only, no additional text"""


# ──────────────────────────────────────────────
# Provider calls
# ──────────────────────────────────────────────

async def search_businesses(params: SearchParams, client: httpx.AsyncClient) -> list[dict]:
    """Tier 1: SerpAPI organic results.  Any failure returns []."""
    if not SERPAPI_KEY:
        logger.warning("SERPAPI_KEY not configured, skipping search")
        return []

    query = f"{params.business_type} in {params.city}, {params.state}, {params.country}"
    try:
        response = await client.get(
            SERPAPI_BASE_URL,
            params={
                "engine": "google",
                "q": query,
                "api_key": SERPAPI_KEY,
                "num": min(params.leads_requested * 2, MAX_SERP_RESULTS),
            },
            headers={"User-Agent": USER_AGENT},
        )
        response.raise_for_status()
        data = response.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("SerpAPI search failed: %s", e)
        return []

    if not isinstance(data, dict):
        logger.warning("SerpAPI returned %s instead of an object, skipping", type(data).__name__)
        return []
    results = data.get("organic_results") or []
    if not isinstance(results, list):
        logger.warning("SerpAPI organic_results is not a list, skipping")
        return []

    results = [r for r in results if isinstance(r, dict)]
    logger.info("SerpAPI returned %d results for %r", len(results), query)
    return results


async def call_gemini(prompt: str, client: httpx.AsyncClient, temperature: float) -> Optional[str]:
    """Send one prompt to Gemini and return the reply text (None if empty).

    Raises httpx.HTTPError on transport / HTTP failures.
    """
    response = await client.post(
        f"{GEMINI_API_BASE}/models/{GEMINI_MODEL}:generateContent",
        headers={"x-goog-api-key": GEMINI_API_KEY, "Content-Type": "application/json"},
        json={
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": temperature,
                "topK": 40,
                "topP": 0.95,
                "maxOutputTokens": 2048,
            },
        },
    )
    response.raise_for_status()
    data = response.json()
    try:
        text = data["candidates"][0]["content"]["parts"][0]["text"]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(text, str):
        logger.warning("Gemini reply text is %s, not a string", type(text).__name__)
        return None
    return text or None


async def enhance_leads_with_ai(
    results: list[dict], params: SearchParams, client: httpx.AsyncClient
) -> list[RawLead]:
    """Tier 2a: restructure search results with Gemini, padding from the raw results."""
    n = params.leads_requested
    if not GEMINI_API_KEY:
        return process_serp_results_basic(results, n)

    try:
        reply = await call_gemini(build_extraction_prompt(results, params), client, temperature=0.3)
        if not reply:
            return process_serp_results_basic(results, n)
        leads = parse_ai_lead_response(reply, n)
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("AI enhancement failed, using basic mapping: %s", e)
        return process_serp_results_basic(results, n)

    if len(leads) < n:
        leads.extend(process_serp_results_basic(results, n, start=len(leads)))
    return leads


async def generate_leads_directly(params: SearchParams, client: httpx.AsyncClient) -> list[RawLead]:
    """Tier 2b: have Gemini invent leads, padding with synthetic ones."""
    if not GEMINI_API_KEY:
        return generate_mock_leads(params)

    try:
        reply = await call_gemini(build_direct_prompt(params), client, temperature=0.7)
        if not reply:
            return generate_mock_leads(params)
        leads = parse_ai_lead_response(reply, params.leads_requested)
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Direct AI generation failed, using synthetic leads: %s", e)
        return generate_mock_leads(params)

    if len(leads) < params.leads_requested:
        leads.extend(generate_mock_leads(params, start=len(leads)))
    return leads


async def generate_leads(params: SearchParams, client: Optional[httpx.AsyncClient] = None) -> list[RawLead]:
    """Run the provider chain.  Raises LeadGenerationError on unexpected failure."""
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=PROVIDER_TIMEOUT)
    try:
        results = await search_businesses(params, client)
        if results:
            return await enhance_leads_with_ai(results, params, client)
        return await generate_leads_directly(params, client)
    except Exception as e:
        logger.error("Lead generation failed: %s", e, exc_info=True)
        raise LeadGenerationError("Lead generation service unavailable") from e
    finally:
        if owns_client:
            await client.aclose()
