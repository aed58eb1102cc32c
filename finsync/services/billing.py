"""Subscription state maintained from payment processor events."""

import hmac
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from finsync.core.errors import InvalidInputError
from finsync.models.billing import (
    UserSubscription,
    BillingHistory,
    ProcessedWebhookEvent,
    SubscriptionTier,
    SubscriptionStatus,
)
from finsync.services.audit import AuditLogger, AuditEvent

logger = logging.getLogger(__name__)

EVENT_TYPES = ("created", "updated", "canceled", "payment_succeeded", "payment_failed")

# Processor status -> local status
STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAUSED,
}


@dataclass(frozen=True)
class BillingEvent:
    """A processor event already reduced to the fields we act on."""
    event_id: str
    event_type: str
    customer_id: str
    user_id: str | None = None
    subscription_id: str | None = None
    status: str | None = None
    tier: str | None = None
    cancel_at_period_end: bool = False
    current_period_end: datetime | None = None
    invoice_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Check an HMAC-SHA256 hex signature of the raw request body."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


def map_subscription_status(status: str | None, cancel_at_period_end: bool) -> SubscriptionStatus:
    mapped = STATUS_MAP.get(status or "", SubscriptionStatus.ACTIVE)
    if cancel_at_period_end and mapped == SubscriptionStatus.ACTIVE:
        return SubscriptionStatus.CANCELING
    return mapped


def _parse_tier(tier: str | None) -> SubscriptionTier:
    try:
        return SubscriptionTier(tier or "pro")
    except ValueError:
        return SubscriptionTier.PRO


async def _find_subscription(db: AsyncSession, event: BillingEvent) -> UserSubscription | None:
    result = await db.execute(
        select(UserSubscription).where(UserSubscription.external_customer_id == event.customer_id)
    )
    subscription = result.scalar_one_or_none()
    if subscription or not event.user_id:
        return subscription

    # First event for this customer: attach to the user's row, or create it
    result = await db.execute(
        select(UserSubscription).where(UserSubscription.user_id == event.user_id)
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        subscription = UserSubscription(user_id=event.user_id)
        db.add(subscription)
    subscription.external_customer_id = event.customer_id
    return subscription


async def apply_billing_event(
    db: AsyncSession,
    event: BillingEvent,
    audit: AuditLogger,
) -> bool:
    """
    Apply one processor event exactly once.

    Returns:
        False if the event id was already processed
    """
    if event.event_type not in EVENT_TYPES:
        raise InvalidInputError(f"Unsupported billing event type '{event.event_type}'")

    if await db.get(ProcessedWebhookEvent, event.event_id) is not None:
        logger.info(f"Event {event.event_id} already processed, skipping")
        return False

    subscription = await _find_subscription(db, event)
    if subscription is None:
        logger.warning(f"No subscription for customer {event.customer_id} (event {event.event_id})")
    elif event.event_type in ("created", "updated"):
        subscription.external_subscription_id = event.subscription_id or subscription.external_subscription_id
        subscription.status = map_subscription_status(event.status, event.cancel_at_period_end)
        subscription.cancel_at_period_end = event.cancel_at_period_end
        subscription.current_period_end = event.current_period_end
        if subscription.status == SubscriptionStatus.CANCELED:
            subscription.tier = SubscriptionTier.FREE
        else:
            subscription.tier = _parse_tier(event.tier)
    elif event.event_type == "canceled":
        subscription.tier = SubscriptionTier.FREE
        subscription.status = SubscriptionStatus.CANCELED
        subscription.cancel_at_period_end = False
    else:
        paid = event.event_type == "payment_succeeded"
        db.add(
            BillingHistory(
                user_id=subscription.user_id,
                external_invoice_id=event.invoice_id,
                amount=event.amount or Decimal("0"),
                currency=(event.currency or "usd").upper(),
                status="paid" if paid else "failed",
            )
        )
        if not paid:
            subscription.status = SubscriptionStatus.PAST_DUE

    db.add(ProcessedWebhookEvent(event_id=event.event_id, event_type=event.event_type))
    await db.flush()

    if subscription is not None:
        await audit.log(
            AuditEvent(
                user_id=subscription.user_id,
                action_type="subscription_updated",
                resource_type="subscription",
                resource_id=event.subscription_id,
                performed_by="webhook",
                request_details={"event_id": event.event_id, "event_type": event.event_type},
                response_details={"tier": subscription.tier.value, "status": subscription.status.value},
                response_status=200,
            )
        )
    return True
