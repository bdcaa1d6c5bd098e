"""
Stripe Billing — Checkout, webhooks, portal, and organization plan management.

Handles the Stripe billing lifecycle for organizations:
  - Creating Checkout Sessions for starter / growth / agency subscriptions
  - Processing webhooks (checkout, renewals, plan changes, cancellation, payment failures)
  - Generating Customer Portal sessions for self-service plan management
  - Reporting plan + credit status

A paid plan grants its credit allowance on checkout and on every renewal
invoice.  Cancelling drops the organization back to ``trial`` without
resetting its trial counter.

Environment variables:
  STRIPE_SECRET_KEY        — Stripe secret key (sk_live_... or sk_test_...)
  STRIPE_WEBHOOK_SECRET    — Webhook signing secret (whsec_...)
  STRIPE_STARTER_PRICE_ID  — Price ID for Starter (250 credits)
  STRIPE_GROWTH_PRICE_ID   — Price ID for Growth (800 credits)
  STRIPE_AGENCY_PRICE_ID   — Price ID for Agency (3000 credits)
  FRONTEND_URL             — Base URL for redirect after checkout
"""

import asyncio
import logging
from typing import Optional

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import (
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    STRIPE_STARTER_PRICE_ID,
    STRIPE_GROWTH_PRICE_ID,
    STRIPE_AGENCY_PRICE_ID,
    FRONTEND_URL,
)
from db.models import Organization
from usage import PLAN_LIMITS

logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────
# Stripe Configuration
# ──────────────────────────────────────────────

stripe.api_key = STRIPE_SECRET_KEY

# Plan ID → Price ID mapping
PLAN_PRICE_MAP = {
    "starter": STRIPE_STARTER_PRICE_ID,
    "growth": STRIPE_GROWTH_PRICE_ID,
    "agency": STRIPE_AGENCY_PRICE_ID,
}

# Price ID → Plan name (reverse lookup for webhooks)
PRICE_PLAN_MAP = {v: k for k, v in PLAN_PRICE_MAP.items() if v}


def is_stripe_configured() -> bool:
    """Check if Stripe is properly configured."""
    return bool(STRIPE_SECRET_KEY and any(PLAN_PRICE_MAP.values()))


def plan_credits(plan: str) -> int:
    return (PLAN_LIMITS.get(plan) or {}).get("credits") or 0


async def _org_by_id(db: AsyncSession, organization_id: Optional[str]) -> Optional[Organization]:
    if not organization_id:
        return None
    return (await db.execute(
        select(Organization).where(Organization.id == organization_id)
    )).scalar_one_or_none()


async def _org_by_customer(db: AsyncSession, customer_id: Optional[str]) -> Optional[Organization]:
    if not customer_id:
        return None
    return (await db.execute(
        select(Organization).where(Organization.stripe_customer_id == customer_id)
    )).scalar_one_or_none()


# ──────────────────────────────────────────────
# Checkout Session
# ──────────────────────────────────────────────

async def create_checkout_session(
    db: AsyncSession,
    org: Organization,
    user_email: str,
    plan: str,
) -> str:
    """
    Create a Stripe Checkout Session for an organization subscription.

    Returns the Checkout Session URL to redirect the user to.
    """
    price_id = PLAN_PRICE_MAP.get(plan)
    if not price_id:
        raise ValueError(f"Unknown plan: {plan}. Must be 'starter', 'growth' or 'agency'.")

    customer_id = org.stripe_customer_id
    if not customer_id:
        customer = await asyncio.to_thread(
            stripe.Customer.create,
            email=user_email or None,
            name=org.name,
            metadata={"organization_id": org.id},
        )
        customer_id = customer.id
        org.stripe_customer_id = customer_id
        await db.commit()

    session = await asyncio.to_thread(
        stripe.checkout.Session.create,
        customer=customer_id,
        payment_method_types=["card"],
        mode="subscription",
        line_items=[{"price": price_id, "quantity": 1}],
        success_url=f"{FRONTEND_URL}/dashboard/billing?billing=success",
        cancel_url=f"{FRONTEND_URL}/dashboard/billing?billing=cancelled",
        metadata={"organization_id": org.id, "plan": plan},
        allow_promotion_codes=True,
    )

    return session.url


# ──────────────────────────────────────────────
# Customer Portal
# ──────────────────────────────────────────────

async def create_portal_session(org: Organization) -> str:
    """Create a Stripe Customer Portal session; returns the portal URL."""
    if not org.stripe_customer_id:
        raise ValueError("No Stripe customer found. Subscribe to a plan first.")

    session = await asyncio.to_thread(
        stripe.billing_portal.Session.create,
        customer=org.stripe_customer_id,
        return_url=f"{FRONTEND_URL}/dashboard/billing",
    )
    return session.url


# ──────────────────────────────────────────────
# Billing Status
# ──────────────────────────────────────────────

def get_billing_status(org: Organization) -> dict:
    return {
        "organization_id": org.id,
        "plan": org.plan,
        "credits": org.credits or 0,
        "plan_credits": plan_credits(org.plan),
        "stripe_customer_id": org.stripe_customer_id,
        "has_subscription": bool(org.stripe_subscription_id),
    }


# ──────────────────────────────────────────────
# Webhook Handler
# ──────────────────────────────────────────────

async def handle_webhook(payload: bytes, sig_header: str, db: AsyncSession) -> dict:
    """
    Process a Stripe webhook event.

    Verifies the signature, then dispatches to the appropriate handler.
    Raises ValueError for a bad payload or signature.
    """
    try:
        event = await asyncio.to_thread(
            stripe.Webhook.construct_event,
            payload, sig_header, STRIPE_WEBHOOK_SECRET,
        )
    except ValueError:
        raise ValueError("Invalid payload")
    except stripe.SignatureVerificationError:
        raise ValueError("Invalid signature")

    event_type = event["type"]
    data = event["data"]["object"]

    logger.info("Stripe webhook: %s", event_type)

    if event_type == "checkout.session.completed":
        await _handle_checkout_completed(data, db)
    elif event_type == "invoice.paid":
        await _handle_invoice_paid(data, db)
    elif event_type == "customer.subscription.updated":
        await _handle_subscription_updated(data, db)
    elif event_type == "customer.subscription.deleted":
        await _handle_subscription_deleted(data, db)
    elif event_type == "invoice.payment_failed":
        await _handle_payment_failed(data, db)
    else:
        logger.debug("Unhandled webhook event: %s", event_type)

    return {"event": event_type, "handled": True}


async def _handle_checkout_completed(session_data: dict, db: AsyncSession):
    """Activate the subscription and grant the plan's credits."""
    customer_id = session_data.get("customer")
    metadata = session_data.get("metadata") or {}
    plan = metadata.get("plan")

    org = await _org_by_id(db, metadata.get("organization_id")) or await _org_by_customer(db, customer_id)
    if not org:
        logger.error("Checkout completed but no organization found for customer %s", customer_id)
        return
    if plan not in PLAN_PRICE_MAP:
        logger.error("Checkout completed with unknown plan %r for org %s", plan, org.id)
        return

    org.stripe_customer_id = customer_id
    org.stripe_subscription_id = session_data.get("subscription")
    org.plan = plan
    org.credits = (org.credits or 0) + plan_credits(plan)

    await db.commit()
    logger.info("Organization %s subscribed to %s (+%d credits)", org.id, plan, plan_credits(plan))


async def _handle_invoice_paid(invoice_data: dict, db: AsyncSession):
    """Renewal invoices top the balance up by the plan allowance."""
    if invoice_data.get("billing_reason") != "subscription_cycle":
        return

    org = await _org_by_customer(db, invoice_data.get("customer"))
    if not org or org.plan not in PLAN_PRICE_MAP:
        logger.warning("Renewal paid but no paid organization for customer %s", invoice_data.get("customer"))
        return

    org.credits = (org.credits or 0) + plan_credits(org.plan)
    await db.commit()
    logger.info("Organization %s renewed %s (+%d credits)", org.id, org.plan, plan_credits(org.plan))


async def _handle_subscription_updated(sub_data: dict, db: AsyncSession):
    """Plan changes and status transitions."""
    customer_id = sub_data.get("customer")
    status = sub_data.get("status")

    org = await _org_by_customer(db, customer_id)
    if not org:
        logger.warning("Subscription updated but no organization for customer %s", customer_id)
        return

    org.stripe_subscription_id = sub_data.get("id")

    items = (sub_data.get("items") or {}).get("data") or []
    if items:
        price_id = (items[0].get("price") or {}).get("id", "")
        org.plan = PRICE_PLAN_MAP.get(price_id, org.plan)

    if status in ("canceled", "unpaid"):
        org.plan = "trial"

    await db.commit()
    logger.info("Subscription updated for customer %s: plan=%s, status=%s", customer_id, org.plan, status)


async def _handle_subscription_deleted(sub_data: dict, db: AsyncSession):
    """Cancellation drops the org back to trial; the trial counter is left as is."""
    customer_id = sub_data.get("customer")

    org = await _org_by_customer(db, customer_id)
    if not org:
        logger.warning("Subscription deleted but no organization for customer %s", customer_id)
        return

    org.plan = "trial"
    org.stripe_subscription_id = None

    await db.commit()
    logger.info("Organization %s downgraded to trial (subscription deleted)", org.id)


async def _handle_payment_failed(invoice_data: dict, db: AsyncSession):
    """Log only; Stripe retries automatically."""
    customer_id = invoice_data.get("customer")
    attempt = invoice_data.get("attempt_count", 0)

    org = await _org_by_customer(db, customer_id)
    if org:
        logger.warning("Payment failed for organization %s (attempt %d). Stripe will retry.", org.id, attempt)
    else:
        logger.warning("Payment failed for unknown customer %s", customer_id)
