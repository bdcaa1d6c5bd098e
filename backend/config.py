"""
Configuration & Constants for Evo Lead AI

Everything configurable lives here:
  - Provider API keys (search results + generative text)
  - Identity provider / realtime settings
  - Billing (Stripe) price IDs
  - Plan rules: trial allowance, credit math, request caps

Values are read once at import from the environment (``.env`` supported).
"""

import os
from dotenv import load_dotenv

load_dotenv()


# ===========================================
# API Keys
# ===========================================
def _get_valid_key(key_name: str) -> str:
    """Get API key, returning empty string if it's a placeholder."""
    key = os.getenv(key_name, "").strip()
    # Filter out placeholder values
    if not key or "your" in key.lower() or key.lower() == "changeme":
        return ""
    return key


SERPAPI_KEY = _get_valid_key("SERPAPI_KEY")
GEMINI_API_KEY = _get_valid_key("GEMINI_API_KEY")

# Shared secret for the lead-updates webhook (n8n workflow)
N8N_WEBHOOK_SECRET = _get_valid_key("N8N_WEBHOOK_SECRET")

# ===========================================
# Supabase (auth + realtime)
# ===========================================
SUPABASE_URL = os.getenv("SUPABASE_URL", "").rstrip("/")
SUPABASE_SERVICE_ROLE_KEY = _get_valid_key("SUPABASE_SERVICE_ROLE_KEY")
REALTIME_CHANNEL = "lead_updates"

# ===========================================
# Provider Config
# ===========================================
SERPAPI_BASE_URL = "https://serpapi.com/search.json"
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-1.5-flash")
PROVIDER_TIMEOUT = float(os.getenv("PROVIDER_TIMEOUT", "30"))  # seconds

# ===========================================
# Plan Rules
# ===========================================
TRIAL_SEARCH_LIMIT = 2
LEADS_PER_CREDIT = 100
MAX_LEADS_PER_REQUEST = 500
CACHE_TTL_HOURS = int(os.getenv("CACHE_TTL_HOURS", "24"))

# ===========================================
# Webhook
# ===========================================
WEBHOOK_TOLERANCE_SECONDS = 300
WEBHOOK_RATE_LIMIT = int(os.getenv("WEBHOOK_RATE_LIMIT", "100"))  # per key per minute

# ===========================================
# Billing (Stripe)
# ===========================================
STRIPE_SECRET_KEY = _get_valid_key("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = _get_valid_key("STRIPE_WEBHOOK_SECRET")
STRIPE_STARTER_PRICE_ID = os.getenv("STRIPE_STARTER_PRICE_ID", "")
STRIPE_GROWTH_PRICE_ID = os.getenv("STRIPE_GROWTH_PRICE_ID", "")
STRIPE_AGENCY_PRICE_ID = os.getenv("STRIPE_AGENCY_PRICE_ID", "")

FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
