"""Payment processor webhook endpoint."""

import logging
import os
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from dotenv import load_dotenv

from finsync.core.database import get_db
from finsync.core.dependencies import get_audit
from finsync.core.errors import FinsyncError
from finsync.services.audit import AuditLogger
from finsync.services.billing import BillingEvent, apply_billing_event, verify_signature

load_dotenv()

logger = logging.getLogger(__name__)

BILLING_WEBHOOK_SECRET = os.getenv("BILLING_WEBHOOK_SECRET")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class BillingEventPayload(BaseModel):
    """Normalized billing event as delivered by the payment processor bridge."""
    id: str
    type: str
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


class WebhookResponse(BaseModel):
    received: bool
    processed: bool


@router.post("/billing", response_model=WebhookResponse)
async def billing_webhook(
    request: Request,
    x_signature: str | None = Header(None, alias="X-Signature"),
    db: AsyncSession = Depends(get_db),
    audit: AuditLogger = Depends(get_audit),
) -> WebhookResponse:
    """
    Apply a signed billing event.

    The X-Signature header carries the hex HMAC-SHA256 of the raw body.
    Events already processed are acknowledged without being applied again.
    """
    if not BILLING_WEBHOOK_SECRET:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="BILLING_WEBHOOK_SECRET not configured",
        )

    body = await request.body()
    if not verify_signature(body, x_signature, BILLING_WEBHOOK_SECRET):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature",
        )

    try:
        payload = BillingEventPayload.model_validate_json(body)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid event payload: {e.error_count()} errors",
        )

    event = BillingEvent(
        event_id=payload.id,
        event_type=payload.type,
        customer_id=payload.customer_id,
        user_id=payload.user_id,
        subscription_id=payload.subscription_id,
        status=payload.status,
        tier=payload.tier,
        cancel_at_period_end=payload.cancel_at_period_end,
        current_period_end=payload.current_period_end,
        invoice_id=payload.invoice_id,
        amount=payload.amount,
        currency=payload.currency,
    )
    try:
        processed = await apply_billing_event(db, event, audit)
    except FinsyncError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    logger.info(f"Billing event {event.event_id} ({event.event_type}) processed={processed}")
    return WebhookResponse(received=True, processed=processed)
