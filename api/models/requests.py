"""Request models for API endpoints."""
from typing import Dict, Any, Optional, List
from pydantic import BaseModel, Field, field_validator
import re

from payment_resilience.services.payment_flow import REFUND_REASONS


class OrderItem(BaseModel):
    """One line of the order being paid for."""
    item_id: str = Field(..., description="Menu item or pass identifier", min_length=1, max_length=64)
    name: Optional[str] = Field(None, description="Display name")
    quantity: int = Field(1, description="Quantity ordered", ge=1)
    unit_amount: Optional[int] = Field(None, description="Unit price in minor currency units", ge=0)


class PaymentRequest(BaseModel):
    """Request to initiate a payment."""
    venue_id: str = Field(..., description="Venue the payment belongs to", min_length=1, max_length=64)
    user_id: str = Field(..., description="Paying user", min_length=1, max_length=64)
    amount: int = Field(..., description="Amount in minor currency units", gt=0)
    currency: str = Field("usd", description="ISO 4217 currency code")
    items: List[OrderItem] = Field(default_factory=list, description="Order lines")
    idempotency_key: Optional[str] = Field(
        None, description="Client idempotency key (the Idempotency-Key header wins)", max_length=128
    )

    @field_validator('currency')
    @classmethod
    def validate_currency(cls, v):
        """Validate currency code format."""
        v = v.strip().lower()
        if not re.match(r'^[a-z]{3}$', v):
            raise ValueError("currency must be a three-letter ISO 4217 code")
        return v

    @field_validator('idempotency_key')
    @classmethod
    def validate_idempotency_key(cls, v):
        """Validate idempotency_key format."""
        if v is None:
            return v
        if not v.strip():
            raise ValueError("idempotency_key cannot be empty")
        # Basic format validation - alphanumeric, dash, underscore, dot only
        if not re.match(r'^[a-zA-Z0-9\-_\.]+$', v.strip()):
            raise ValueError("idempotency_key contains invalid characters (use alphanumeric, dash, underscore, dot only)")
        return v.strip()


class RefundRequest(BaseModel):
    """Request to refund a payment, fully when amount is omitted."""
    venue_id: str = Field(..., description="Venue the payment belongs to", min_length=1, max_length=64)
    amount: Optional[int] = Field(None, description="Amount to refund in minor currency units", gt=0)
    reason: Optional[str] = Field(
        None, description="One of duplicate, fraudulent, requested_by_customer"
    )

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, v):
        if v is None:
            return v
        v = v.strip().lower()
        if v not in REFUND_REASONS:
            raise ValueError(f"reason must be one of {', '.join(REFUND_REASONS)}")
        return v


class ThresholdSignal(BaseModel):
    """Load signal for one partition's circuit breakers."""
    level: str = Field(..., description="Signal level; 'critical' tightens the breakers")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Additional signal context")

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        v = v.strip().lower()
        if v not in ("warning", "critical"):
            raise ValueError("level must be 'warning' or 'critical'")
        return v
