"""Payment initiation routes."""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from api.dependencies import get_services
from api.models.requests import PaymentRequest, RefundRequest
from api.models.responses import APIResponse
from payment_resilience.container import PaymentServices
from payment_resilience.services.payment_flow import PaymentIntentRequest

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("")
async def create_payment(
    request: Request,
    payment_request: PaymentRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    services: PaymentServices = Depends(get_services)
):
    """
    Start a payment.

    The Idempotency-Key header takes precedence over the body field.
    Returns 201 for a new payment and 200 with duplicate=true when the
    key already completed.
    """
    key = idempotency_key or payment_request.idempotency_key

    result = await services.payment_flow.initiate(
        PaymentIntentRequest(
            venue_id=payment_request.venue_id,
            user_id=payment_request.user_id,
            amount=payment_request.amount,
            currency=payment_request.currency,
            items=[item.model_dump(exclude_none=True) for item in payment_request.items],
        ),
        idempotency_key=key
    )

    return APIResponse.success(
        data=result.to_dict(),
        status_code=200 if result.duplicate else 201
    )


@router.get("/attempts")
async def list_attempts(
    venue_id: str = Query(..., min_length=1),
    user_id: str = Query(..., min_length=1),
    services: PaymentServices = Depends(get_services)
):
    """Payment attempts of a user at a venue, newest first."""
    attempts = await services.lock_manager.find_by_venue_and_user(venue_id, user_id)
    return APIResponse.success(data={"attempts": [attempt.to_dict() for attempt in attempts]})


@router.get("/{reference}")
async def get_payment(
    reference: str,
    venue_id: str = Query(..., min_length=1),
    services: PaymentServices = Depends(get_services)
):
    """Current gateway view of a payment."""
    payment = await services.payment_flow.retrieve(reference, venue_id)
    return APIResponse.success(data=payment.to_dict())


@router.post("/{reference}/refund")
async def refund_payment(
    reference: str,
    refund_request: RefundRequest,
    services: PaymentServices = Depends(get_services)
):
    """Refund a payment through the venue's circuit breaker."""
    refund = await services.payment_flow.refund(
        reference, refund_request.venue_id, refund_request.amount, refund_request.reason
    )
    return APIResponse.success(data=refund.to_dict())
