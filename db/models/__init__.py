# Import all models here to ensure they're registered with Base
from db.models.base import Base
from db.models.idempotency_locks import IdempotencyLockModel, LockStatus
from db.models.payments import PaymentModel, PaymentStatus

__all__ = ["Base", "IdempotencyLockModel", "LockStatus", "PaymentModel", "PaymentStatus"]
