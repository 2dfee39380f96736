# db/models/payments.py
import enum
import uuid

from sqlalchemy import Column, String, DateTime, Enum, Integer, Text

from db.models.base import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"


class PaymentModel(Base):
    """The payment-backed entity a gateway notification settles."""
    __tablename__ = 'payments'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    gateway_reference = Column(String(255), unique=True, nullable=False, index=True)
    idempotency_key = Column(String(128), nullable=True, index=True)
    venue_id = Column(String(64), nullable=True, index=True)
    user_id = Column(String(64), nullable=True)
    amount = Column(Integer, nullable=True)  # minor currency units
    currency = Column(String(3), nullable=True)
    status = Column(
        Enum(PaymentStatus, name="payment_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=PaymentStatus.PENDING
    )
    paid_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<Payment {self.gateway_reference} status={self.status}>"
