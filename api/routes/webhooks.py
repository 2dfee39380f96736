"""Payment gateway notification route."""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from api.dependencies import get_services
from api.models.responses import APIResponse
from payment_resilience.container import PaymentServices

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments")
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    services: PaymentServices = Depends(get_services)
):
    """
    Receive a gateway notification.

    Processed, replayed, ignored and retries-exhausted notifications are all
    acknowledged with 200. Any error status makes the gateway redeliver.
    """
    payload = await request.body()
    outcome = await services.webhook_guard.handle_raw(payload, stripe_signature)
    return APIResponse.acknowledged(outcome.value)
