"""
Idempotency lock manager for payment attempts.

This module decides whether a logical payment has already been attempted or
completed, so that duplicate client requests never charge twice.

LOCK LIFECYCLE:
- acquire creates a `locked` record; completion or failure moves it to
  `completed` or `failed`
- a `completed` record is immutable and answers every later acquire with the
  stored gateway reference
- a `failed` (or swept `released`) record is deleted and replaced on the next
  acquire, which is how a retry under the same key is allowed
- `locked` records older than the active-attempt timeout are swept to
  `released`; all records are purged after the (longer) audit retention

The unique constraint on idempotency_key is the only serialization point.
There is no in-process mutex: several server instances may race on the same
key and the database decides the winner.
"""
import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models.idempotency_locks import IdempotencyLockModel, LockStatus
from payment_resilience.exceptions import conflict, validation
from payment_resilience.utils.datetime_utils import (
    ensure_timezone_aware, format_iso_datetime, get_current_datetime, is_older_than
)
from payment_resilience.utils.error_handling import with_error_boundary
from payment_resilience.utils.logging import get_context_logger
from payment_resilience.utils.transaction import retry_transaction, transaction_scope

MAX_KEY_LENGTH = 128
DEFAULT_ACTIVE_LOCK_TIMEOUT = timedelta(hours=1)
DEFAULT_RETENTION = timedelta(hours=24)

# Statuses whose record may be replaced by a fresh attempt
_REPLACEABLE_STATUSES = (LockStatus.FAILED, LockStatus.RELEASED)


class AcquireStatus(str, Enum):
    ACQUIRED = "acquired"
    DUPLICATE = "duplicate"


@dataclass
class AcquireResult:
    status: AcquireStatus
    key: str
    reference: Optional[str] = None

    @property
    def acquired(self) -> bool:
        return self.status == AcquireStatus.ACQUIRED

    @property
    def duplicate(self) -> bool:
        return self.status == AcquireStatus.DUPLICATE


@dataclass
class LockSnapshot:
    key: str
    status: LockStatus
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def reference(self) -> Optional[str]:
        return self.metadata.get("gateway_reference")

    def is_stale(self, active_lock_timeout: timedelta, now: Optional[datetime] = None) -> bool:
        """True for an in-flight attempt older than the active-attempt timeout."""
        return self.status == LockStatus.LOCKED and is_older_than(self.created_at, active_lock_timeout, now)

    @classmethod
    def from_model(cls, model: IdempotencyLockModel) -> "LockSnapshot":
        return cls(
            key=model.idempotency_key,
            status=LockStatus(model.status),
            metadata=dict(model.metadata_json or {}),
            created_at=ensure_timezone_aware(model.created_at),
            updated_at=ensure_timezone_aware(model.updated_at),
            completed_at=ensure_timezone_aware(model.completed_at),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "idempotency_key": self.key,
            "status": self.status.value,
            "metadata": self.metadata,
            "created_at": format_iso_datetime(self.created_at),
            "updated_at": format_iso_datetime(self.updated_at),
            "completed_at": format_iso_datetime(self.completed_at),
        }


def validate_key(key: Any) -> str:
    """Reject keys the lock table cannot hold."""
    if not isinstance(key, str):
        raise validation("idempotency_key must be a string", field="idempotency_key")
    key = key.strip()
    if not key:
        raise validation("idempotency_key cannot be empty", field="idempotency_key")
    if len(key) > MAX_KEY_LENGTH:
        raise validation(
            f"idempotency_key exceeds maximum length of {MAX_KEY_LENGTH} characters",
            field="idempotency_key"
        )
    return key


def _normalize_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    metadata = dict(metadata or {})
    normalized = {
        "venue_id": metadata.pop("venue_id", None),
        "user_id": metadata.pop("user_id", None),
        "amount": metadata.pop("amount", None),
        "currency": metadata.pop("currency", None),
        "items": list(metadata.pop("items", None) or []),
    }
    # Keep anything else the caller attached, minus outcome fields owned by the manager
    metadata.pop("gateway_reference", None)
    metadata.pop("error", None)
    normalized.update(metadata)
    return normalized


class IdempotencyLockManager:
    """Persisted idempotency locks keyed by idempotency key."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        active_lock_timeout: timedelta = DEFAULT_ACTIVE_LOCK_TIMEOUT,
        retention: timedelta = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = get_current_datetime
    ):
        self._session_factory = session_factory
        self.active_lock_timeout = active_lock_timeout
        self.retention = retention
        self._clock = clock
        # Completion/failure writes that were swallowed; exposed for health checks
        self.bookkeeping_failures = 0

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def new_key() -> str:
        """Fresh key for system-internal flows without a caller-supplied key."""
        return str(uuid.uuid4())

    @staticmethod
    def scoped_key(raw_key: str, venue_id: Optional[str]) -> str:
        """
        Scope a caller-supplied key by venue.

        The same client key sent to two venues identifies two different
        payments, so the stored key is a deterministic hash of both.
        """
        raw_key = validate_key(raw_key)
        if not venue_id:
            return raw_key
        return hashlib.sha256(f"{venue_id}:{raw_key}".encode()).hexdigest()[:32]

    # ------------------------------------------------------------------
    # Acquire
    # ------------------------------------------------------------------

    @with_error_boundary("idempotency.acquire")
    async def acquire(self, key: str, metadata: Optional[Dict[str, Any]] = None) -> AcquireResult:
        """
        Claim key for a new payment attempt.

        Returns ACQUIRED when the caller may proceed, DUPLICATE (with the
        stored gateway reference) when the payment already completed.

        Raises:
            PaymentError(CONFLICT): another attempt under this key is in flight
            PaymentError(VALIDATION): the key is unusable
        """
        key = validate_key(key)
        metadata = _normalize_metadata(metadata)
        logger = get_context_logger("idempotency", venue_id=metadata.get("venue_id"), idempotency_key=key)

        if await self._try_insert(key, metadata):
            logger.info("Lock acquired")
            return AcquireResult(AcquireStatus.ACQUIRED, key)

        existing = await self.get(key)

        if existing is not None and existing.status == LockStatus.COMPLETED:
            logger.info("Duplicate request detected - payment already completed")
            return AcquireResult(AcquireStatus.DUPLICATE, key, reference=existing.reference)

        if existing is None or existing.status in _REPLACEABLE_STATUSES:
            if existing is not None:
                await self._delete_if_status(key, existing.status)
                logger.info(f"Replacing {existing.status.value} lock to allow retry")
            if await self._try_insert(key, metadata):
                logger.info("Lock acquired")
                return AcquireResult(AcquireStatus.ACQUIRED, key)

        if existing is not None and existing.is_stale(self.active_lock_timeout, self._clock()):
            logger.warning("In-flight lock is past the active-attempt timeout and waits for the sweeper")
        logger.warning("Duplicate request detected - attempt already in progress")
        raise conflict("Request already in progress", key=key, retry_after_ms=1000)

    async def _try_insert(self, key: str, metadata: Dict[str, Any]) -> bool:
        now = self._clock()
        async with self._session_factory() as session:
            session.add(IdempotencyLockModel(
                idempotency_key=key,
                status=LockStatus.LOCKED,
                venue_id=_as_str(metadata.get("venue_id")),
                user_id=_as_str(metadata.get("user_id")),
                metadata_json=metadata,
                created_at=now,
                updated_at=now,
                expires_at=now + self.retention,
            ))
            try:
                await session.commit()
                return True
            except IntegrityError:
                await session.rollback()
                return False

    async def _delete_if_status(self, key: str, status: LockStatus) -> int:
        async with self._session_factory() as session:
            async with transaction_scope(session):
                result = await session.execute(
                    delete(IdempotencyLockModel)
                    .where(
                        IdempotencyLockModel.idempotency_key == key,
                        IdempotencyLockModel.status == status
                    )
                    .execution_options(synchronize_session=False)
                )
            return result.rowcount or 0

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def complete(self, key: str, reference: str) -> bool:
        """
        Mark the attempt completed with its gateway reference.

        Best effort: the gateway has already accepted the payment, so transient
        database errors are retried and a write that still fails is logged as
        an alert and reported through the return value instead of failing the
        caller.

        Returns:
            True when the lock holds reference as completed afterwards
        """
        logger = get_context_logger("idempotency", idempotency_key=key, gateway_reference=reference)
        try:
            recorded = await retry_transaction(
                self._session_factory,
                lambda session: self.apply_completion(session, key, reference),
                retry_delay_ms=50
            )
        except Exception as e:
            self.bookkeeping_failures += 1
            logger.error(
                f"Lock completion failed: {type(e).__name__}: {str(e)}",
                extra={"alert": True, "bookkeeping_failures": self.bookkeeping_failures}
            )
            return False

        if not recorded:
            self.bookkeeping_failures += 1
            logger.error(
                "Lock completion not recorded",
                extra={"alert": True, "bookkeeping_failures": self.bookkeeping_failures}
            )
        return recorded

    async def fail(self, key: str, error: Any) -> bool:
        """Mark the attempt failed so a later acquire may retry it. Best effort, like complete."""
        logger = get_context_logger("idempotency", idempotency_key=key)
        try:
            return await retry_transaction(
                self._session_factory,
                lambda session: self.apply_failure(session, key, error),
                retry_delay_ms=50
            )
        except Exception as e:
            self.bookkeeping_failures += 1
            logger.error(
                f"Lock failure update failed: {type(e).__name__}: {str(e)}",
                extra={"alert": True, "bookkeeping_failures": self.bookkeeping_failures}
            )
            return False

    async def apply_completion(self, session: AsyncSession, key: str, reference: str) -> bool:
        """
        Completion write inside a caller-owned transaction. Raises on failure.

        Returns False when there is no record to update or it was completed
        with a different reference.
        """
        logger = get_context_logger("idempotency", idempotency_key=key, gateway_reference=reference)
        lock = await self._load_for_update(session, key)

        if lock is None:
            logger.warning("No lock record to complete")
            return False

        if lock.status == LockStatus.COMPLETED:
            if lock.gateway_reference and lock.gateway_reference != reference:
                logger.warning(
                    "Completed lock already holds a different gateway reference",
                    extra={"stored_reference": lock.gateway_reference}
                )
                return False
            return True

        now = self._clock()
        metadata = dict(lock.metadata_json or {})
        metadata["gateway_reference"] = reference
        metadata.pop("error", None)
        lock.metadata_json = metadata
        lock.status = LockStatus.COMPLETED
        lock.completed_at = now
        lock.updated_at = now
        await session.flush()

        logger.info("Lock completed")
        return True

    async def apply_failure(self, session: AsyncSession, key: str, error: Any) -> bool:
        """Failure write inside a caller-owned transaction. Raises on failure."""
        logger = get_context_logger("idempotency", idempotency_key=key)
        lock = await self._load_for_update(session, key)

        if lock is None:
            logger.warning("No lock record to fail")
            return False

        if lock.status == LockStatus.COMPLETED:
            logger.warning("Ignoring failure for an already completed lock")
            return False

        metadata = dict(lock.metadata_json or {})
        metadata["error"] = getattr(error, "message", None) or str(error)
        lock.metadata_json = metadata
        lock.status = LockStatus.FAILED
        lock.updated_at = self._clock()
        await session.flush()

        logger.info("Lock marked failed")
        return True

    async def _load_for_update(self, session: AsyncSession, key: str) -> Optional[IdempotencyLockModel]:
        result = await session.execute(
            select(IdempotencyLockModel)
            .where(IdempotencyLockModel.idempotency_key == key)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[LockSnapshot]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(IdempotencyLockModel).where(IdempotencyLockModel.idempotency_key == key)
            )
            lock = result.scalar_one_or_none()
            return LockSnapshot.from_model(lock) if lock else None

    async def find_by_venue_and_user(self, venue_id: str, user_id: str) -> List[LockSnapshot]:
        """All attempts for a venue/user pair, newest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(IdempotencyLockModel)
                .where(
                    IdempotencyLockModel.venue_id == venue_id,
                    IdempotencyLockModel.user_id == user_id
                )
                .order_by(IdempotencyLockModel.created_at.desc())
            )
            return [LockSnapshot.from_model(lock) for lock in result.scalars().all()]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Release `locked` records older than the active-attempt timeout.

        An attempt that never reported back is treated as abandoned; releasing
        it makes its key acquirable again.

        Returns:
            Number of records released
        """
        logger = get_context_logger("idempotency.sweep")
        now = now or self._clock()
        cutoff = now - self.active_lock_timeout

        async with self._session_factory() as session:
            async with transaction_scope(session):
                result = await session.execute(
                    update(IdempotencyLockModel)
                    .where(
                        IdempotencyLockModel.status == LockStatus.LOCKED,
                        IdempotencyLockModel.created_at < cutoff
                    )
                    .values(status=LockStatus.RELEASED, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
        released = result.rowcount or 0

        if released:
            logger.warning(f"Released {released} abandoned lock(s)", extra={"released": released})
        else:
            logger.debug("No abandoned locks to release")
        return released

    async def purge_retained(self, now: Optional[datetime] = None) -> int:
        """Delete lock records past their audit retention window."""
        logger = get_context_logger("idempotency.sweep")
        now = now or self._clock()

        async with self._session_factory() as session:
            async with transaction_scope(session):
                result = await session.execute(
                    delete(IdempotencyLockModel)
                    .where(IdempotencyLockModel.expires_at < now)
                    .execution_options(synchronize_session=False)
                )
        purged = result.rowcount or 0

        if purged:
            logger.info(f"Purged {purged} lock record(s) past retention", extra={"purged": purged})
        return purged


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
