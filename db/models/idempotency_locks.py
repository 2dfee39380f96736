# db/models/idempotency_locks.py
import enum
import uuid

from sqlalchemy import Column, String, DateTime, Enum, Index, JSON

from db.models.base import Base


class LockStatus(str, enum.Enum):
    LOCKED = "locked"
    COMPLETED = "completed"
    FAILED = "failed"
    RELEASED = "released"


class IdempotencyLockModel(Base):
    __tablename__ = 'idempotency_locks'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    # The unique constraint is what serializes concurrent attempts across instances
    idempotency_key = Column(String(128), unique=True, nullable=False, index=True)
    status = Column(
        Enum(LockStatus, name="lock_status", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=LockStatus.LOCKED,
        index=True
    )
    venue_id = Column(String(64), nullable=True)
    user_id = Column(String(64), nullable=True)
    metadata_json = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    # Audit retention, independent of the active-attempt timeout
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        Index('ix_idempotency_locks_venue_user_created', 'venue_id', 'user_id', 'created_at'),
        Index('ix_idempotency_locks_status_created', 'status', 'created_at'),
    )

    @property
    def gateway_reference(self):
        return (self.metadata_json or {}).get("gateway_reference")

    def __repr__(self) -> str:
        return f"<IdempotencyLock {self.idempotency_key} status={self.status}>"
