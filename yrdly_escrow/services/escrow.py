"""Escrow state machine: create, transition, dispute, list and aggregate.

Every mutation is an optimistic compare-and-swap on the row's ``version``
(and current ``status``). A writer that lost the race gets ``ConflictError``
and must re-read before retrying. Milestone timestamps are written with
``COALESCE`` so a value, once set, is never replaced.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import pydantic
from sqlalchemy import DateTime, func, literal, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from yrdly_escrow.config import settings
from yrdly_escrow.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from yrdly_escrow.models.escrow import (
    MILESTONE_FIELDS,
    MILESTONE_PREREQUISITES,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    EscrowAction,
    EscrowAuditLog,
    EscrowStatus,
    EscrowTransaction,
    PaymentMethod,
)
from yrdly_escrow.schemas.escrow import DeliveryDetails
from yrdly_escrow.services.fees import CENT, calculate_commission

logger = logging.getLogger(__name__)

# Keys update_status() accepts in additional_data
_MILESTONE_OVERRIDES = {"paid_at", "shipped_at", "delivered_at", "completed_at"}
_UPDATABLE_FIELDS = {"payment_reference", "dispute_reason", *_MILESTONE_OVERRIDES}


@dataclass
class EscrowStats:
    total_transactions: int = 0
    total_volume: Decimal = Decimal("0.00")
    total_commission: Decimal = Decimal("0.00")
    pending_transactions: int = 0
    completed_transactions: int = 0
    disputed_transactions: int = 0
    by_status: dict[str, int] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _validate_amount(amount: Any) -> Decimal:
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be greater than zero")
    if value != value.quantize(CENT):
        raise ValidationError("Amount must have at most two decimal places")
    if value > settings.max_transaction_amount:
        raise ValidationError(f"Amount exceeds the maximum of {settings.max_transaction_amount}")
    return value.quantize(CENT)


def _validate_delivery(details: DeliveryDetails | dict) -> dict:
    if isinstance(details, DeliveryDetails):
        model = details
    else:
        try:
            model = DeliveryDetails.model_validate(details)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid delivery details: {exc.errors()[0]['msg']}")
    return model.model_dump(mode="json", exclude_none=True)


def _coerce_status(status: EscrowStatus | str) -> EscrowStatus:
    if isinstance(status, EscrowStatus):
        return status
    try:
        return EscrowStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown escrow status: {status!r}")


def _validate_additional_data(
    target: EscrowStatus, additional_data: dict | None
) -> dict:
    if not additional_data:
        return {}
    data = {k: v for k, v in additional_data.items() if v is not None}
    unknown = set(data) - _UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

    for key in _MILESTONE_OVERRIDES & set(data):
        if MILESTONE_FIELDS.get(target) != key:
            raise ValidationError(f"{key} can only be supplied when moving to that milestone")
        value = data[key]
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value)
            except ValueError:
                raise ValidationError(f"{key} is not an ISO-8601 timestamp")
        if not isinstance(value, datetime):
            raise ValidationError(f"{key} must be a timestamp")
        data[key] = value

    if "dispute_reason" in data and target != EscrowStatus.DISPUTED:
        raise ValidationError("dispute_reason only applies when disputing")
    return data


def _assert_transition(txn: EscrowTransaction, target: EscrowStatus) -> None:
    """Raise 409 if the transaction may not move to ``target``."""
    current = txn.status
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot transition from {current.value} to {target.value}")
    if current == EscrowStatus.DISPUTED and txn.dispute_resolved_at is None:
        raise InvalidTransitionError("Dispute must be resolved before leaving disputed status")
    prerequisite = MILESTONE_PREREQUISITES.get(target)
    if prerequisite is not None and getattr(txn, prerequisite) is None:
        raise InvalidTransitionError(
            f"Cannot move to {target.value} before {prerequisite.removesuffix('_at')}"
        )


def record_audit(
    db: AsyncSession,
    txn: EscrowTransaction,
    action: EscrowAction,
    from_status: EscrowStatus | None = None,
    to_status: EscrowStatus | None = None,
    metadata: dict | None = None,
) -> None:
    """Append to the immutable audit log."""
    db.add(EscrowAuditLog(
        escrow_audit_id=uuid.uuid4(),
        transaction_id=txn.transaction_id,
        action=action,
        from_status=from_status.value if from_status else None,
        to_status=to_status.value if to_status else None,
        amount=txn.amount,
        metadata_=metadata,
    ))


async def commit_changes(db: AsyncSession) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Escrow commit failed")
        raise PersistenceError("Failed to persist escrow transaction") from exc


async def _get_transaction(db: AsyncSession, transaction_id: uuid.UUID) -> EscrowTransaction:
    try:
        result = await db.execute(
            select(EscrowTransaction)
            .where(EscrowTransaction.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        )
    except SQLAlchemyError as exc:
        raise PersistenceError("Failed to load escrow transaction") from exc
    txn = result.scalar_one_or_none()
    if txn is None:
        raise NotFoundError("Transaction not found")
    return txn


async def _compare_and_swap(
    db: AsyncSession,
    txn: EscrowTransaction,
    values: dict,
    now: datetime,
) -> None:
    """Apply ``values`` only if the row is unchanged since ``txn`` was read."""
    transaction_id, version = txn.transaction_id, txn.version
    stmt = (
        update(EscrowTransaction)
        .where(
            EscrowTransaction.transaction_id == transaction_id,
            EscrowTransaction.version == version,
            EscrowTransaction.status == txn.status,
        )
        .values(**values, version=version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await db.execute(stmt)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError("Failed to update escrow transaction") from exc

    if result.rowcount != 1:
        await db.rollback()
        logger.warning(
            "Escrow %s changed concurrently (expected version %d)", transaction_id, version,
        )
        raise ConflictError("Transaction was modified concurrently, re-read and retry")


def _set_once(column: str, value: datetime) -> Any:
    """COALESCE(column, value): keep an existing timestamp, otherwise write ``value``."""
    return func.coalesce(
        getattr(EscrowTransaction, column), literal(value, DateTime(timezone=True))
    )


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

async def create_transaction(
    db: AsyncSession,
    item_id: str,
    buyer_id: str,
    seller_id: str,
    amount: Decimal | str | int,
    payment_method: PaymentMethod | str,
    delivery_details: DeliveryDetails | dict,
) -> EscrowTransaction:
    """Open a PENDING escrow transaction with commission frozen at creation."""
    for name, value in (("item_id", item_id), ("buyer_id", buyer_id), ("seller_id", seller_id)):
        if not value or not str(value).strip():
            raise ValidationError(f"{name} is required")
    if buyer_id == seller_id:
        raise ValidationError("Buyer and seller must be different users")

    value = _validate_amount(amount)
    try:
        method = PaymentMethod(payment_method)
    except ValueError:
        raise ValidationError(f"Unsupported payment method: {payment_method!r}")
    details = _validate_delivery(delivery_details)
    fees = calculate_commission(value)

    now = datetime.now(UTC)
    txn = EscrowTransaction(
        transaction_id=uuid.uuid4(),
        item_id=item_id,
        buyer_id=buyer_id,
        seller_id=seller_id,
        amount=fees.amount,
        commission=fees.commission,
        total_amount=fees.total_amount,
        seller_amount=fees.seller_amount,
        currency=settings.currency,
        status=EscrowStatus.PENDING,
        payment_method=method,
        delivery_details=details,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.add(txn)
    record_audit(
        db, txn, EscrowAction.CREATED, to_status=EscrowStatus.PENDING,
        metadata={
            "commission": str(fees.commission),
            "seller_amount": str(fees.seller_amount),
            "commission_rate": str(fees.rate),
        },
    )
    await commit_changes(db)
    await db.refresh(txn)
    logger.info(
        "Escrow %s created for item %s (%s %s, commission %s)",
        txn.transaction_id, item_id, txn.currency, txn.amount, txn.commission,
    )
    return txn


async def update_status(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    new_status: EscrowStatus | str,
    additional_data: dict | None = None,
    *,
    expected_status: EscrowStatus | None = None,
) -> EscrowTransaction:
    """Move a transaction to ``new_status``.

    Validates the transition table and milestone prerequisites, stamps the
    status's milestone timestamp if it is still unset, and merges
    ``additional_data`` (caller values win over computed ones, but never over
    a milestone that is already set). Raises ``ConflictError`` if
    ``expected_status`` does not match or the row changed since it was read.
    """
    target = _coerce_status(new_status)
    data = _validate_additional_data(target, additional_data)

    txn = await _get_transaction(db, transaction_id)
    if expected_status is not None and txn.status != expected_status:
        raise ConflictError(
            f"Expected status {expected_status.value}, currently {txn.status.value}"
        )
    _assert_transition(txn, target)

    now = datetime.now(UTC)
    previous = txn.status
    values: dict[str, Any] = {"status": target}

    milestone = MILESTONE_FIELDS.get(target)
    if milestone is not None:
        values[milestone] = _set_once(milestone, data.pop(milestone, None) or now)

    if "payment_reference" in data:
        values["payment_reference"] = data["payment_reference"]

    if target == EscrowStatus.DISPUTED:
        values["dispute_reason"] = data.get("dispute_reason")
        values["disputed_at"] = now
        values["dispute_resolution_note"] = None
        values["dispute_resolved_at"] = None

    await _compare_and_swap(db, txn, values, now)
    record_audit(
        db, txn,
        EscrowAction.DISPUTED if target == EscrowStatus.DISPUTED else EscrowAction.STATUS_CHANGED,
        from_status=previous,
        to_status=target,
        metadata={k: str(v) for k, v in data.items()} or None,
    )
    await commit_changes(db)
    await db.refresh(txn)
    logger.info("Escrow %s: %s -> %s", transaction_id, previous.value, target.value)
    return txn


async def mark_paid(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    payment_reference: str,
    paid_at: datetime | None = None,
) -> tuple[EscrowTransaction, bool]:
    """Idempotent PENDING -> PAID.

    Returns ``(transaction, applied)``. ``applied`` is False when the
    transaction had already been paid, in which case nothing is written.
    A concurrent duplicate callback that wins the race is treated the same way.
    """
    for attempt in range(2):
        txn = await _get_transaction(db, transaction_id)
        if txn.paid_at is not None:
            logger.info("Escrow %s already paid, skipping", transaction_id)
            return txn, False
        if txn.status != EscrowStatus.PENDING:
            raise InvalidTransitionError(
                f"Cannot accept payment for a {txn.status.value} transaction"
            )
        try:
            txn = await update_status(
                db, transaction_id, EscrowStatus.PAID,
                {"payment_reference": payment_reference, "paid_at": paid_at},
                expected_status=EscrowStatus.PENDING,
            )
        except ConflictError:
            if attempt:
                raise
            logger.info("Escrow %s changed while marking paid, re-reading", transaction_id)
            continue
        return txn, True
    raise ConflictError("Transaction was modified concurrently, re-read and retry")


async def get_transaction(db: AsyncSession, transaction_id: uuid.UUID) -> EscrowTransaction:
    """Get a transaction by id. Raises ``NotFoundError``."""
    return await _get_transaction(db, transaction_id)


async def _list_transactions(
    db: AsyncSession, condition: Any, limit: int | None, offset: int
) -> list[EscrowTransaction]:
    if limit is None:
        limit = settings.default_page_size
    limit = max(1, min(limit, settings.max_page_size))
    result = await db.execute(
        select(EscrowTransaction)
        .where(condition)
        .order_by(EscrowTransaction.created_at.desc(), EscrowTransaction.transaction_id.desc())
        .limit(limit)
        .offset(max(offset, 0))
    )
    return list(result.scalars().all())


async def get_user_transactions(
    db: AsyncSession, user_id: str, limit: int | None = None, offset: int = 0
) -> list[EscrowTransaction]:
    """Transactions where ``user_id`` is the buyer, newest first."""
    return await _list_transactions(db, EscrowTransaction.buyer_id == user_id, limit, offset)


async def get_seller_transactions(
    db: AsyncSession, seller_id: str, limit: int | None = None, offset: int = 0
) -> list[EscrowTransaction]:
    """Transactions where ``seller_id`` is the seller, newest first."""
    return await _list_transactions(db, EscrowTransaction.seller_id == seller_id, limit, offset)


async def update_delivery_details(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    delivery_details: DeliveryDetails | dict,
) -> EscrowTransaction:
    """Replace delivery details. Allowed in any non-terminal status."""
    details = _validate_delivery(delivery_details)
    txn = await _get_transaction(db, transaction_id)
    if txn.status in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            f"Delivery details cannot change on a {txn.status.value} transaction"
        )

    now = datetime.now(UTC)
    await _compare_and_swap(db, txn, {"delivery_details": details}, now)
    record_audit(db, txn, EscrowAction.DELIVERY_UPDATED, metadata={"delivery_details": details})
    await commit_changes(db)
    await db.refresh(txn)
    return txn


async def dispute_transaction(
    db: AsyncSession, transaction_id: uuid.UUID, reason: str
) -> EscrowTransaction:
    if not reason or not reason.strip():
        raise ValidationError("A dispute reason is required")
    return await update_status(
        db, transaction_id, EscrowStatus.DISPUTED, {"dispute_reason": reason.strip()}
    )


async def resolve_dispute(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    resolution: str,
    details: dict | None = None,
) -> EscrowTransaction:
    """Record how a dispute was settled.

    Keeps ``status`` at DISPUTED and the original ``dispute_reason``; the
    caller moves the transaction on with ``update_status`` afterwards.
    ``details`` (such as the refund split) is added to the audit entry.
    """
    if not resolution or not resolution.strip():
        raise ValidationError("A resolution note is required")
    txn = await _get_transaction(db, transaction_id)
    if txn.status != EscrowStatus.DISPUTED:
        raise InvalidTransitionError(
            f"Only disputed transactions can be resolved, currently {txn.status.value}"
        )
    if txn.dispute_resolved_at is not None:
        raise ConflictError("Dispute has already been resolved")

    now = datetime.now(UTC)
    await _compare_and_swap(
        db, txn,
        {"dispute_resolution_note": resolution.strip(), "dispute_resolved_at": now},
        now,
    )
    record_audit(
        db, txn, EscrowAction.DISPUTE_RESOLVED,
        from_status=EscrowStatus.DISPUTED, to_status=EscrowStatus.DISPUTED,
        metadata={"resolution": resolution.strip(), **(details or {})},
    )
    await commit_changes(db)
    await db.refresh(txn)
    logger.info("Escrow %s dispute resolved", transaction_id)
    return txn


async def record_item_marked_sold(db: AsyncSession, transaction_id: uuid.UUID) -> bool:
    """Stamp ``item_marked_sold_at`` once. Returns False if it was already set.

    Bookkeeping only: does not bump ``version``, so it never conflicts with
    lifecycle updates.
    """
    txn = await _get_transaction(db, transaction_id)
    now = datetime.now(UTC)
    try:
        result = await db.execute(
            update(EscrowTransaction)
            .where(
                EscrowTransaction.transaction_id == transaction_id,
                EscrowTransaction.item_marked_sold_at.is_(None),
            )
            .values(item_marked_sold_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError("Failed to update escrow transaction") from exc

    if result.rowcount != 1:
        # Nothing written; leave the rest of the session alone
        return False
    record_audit(db, txn, EscrowAction.ITEM_MARKED_SOLD, metadata={"item_id": txn.item_id})
    await commit_changes(db)
    return True


async def get_audit_log(db: AsyncSession, transaction_id: uuid.UUID) -> list[EscrowAuditLog]:
    await _get_transaction(db, transaction_id)
    result = await db.execute(
        select(EscrowAuditLog)
        .where(EscrowAuditLog.transaction_id == transaction_id)
        .order_by(EscrowAuditLog.timestamp.asc())
    )
    return list(result.scalars().all())


async def get_stats(db: AsyncSession) -> EscrowStats:
    """Aggregate volume, commission and status counts in the database."""
    result = await db.execute(
        select(
            EscrowTransaction.status,
            func.count(EscrowTransaction.transaction_id),
            func.sum(EscrowTransaction.amount),
            func.sum(EscrowTransaction.commission),
        ).group_by(EscrowTransaction.status)
    )

    stats = EscrowStats(by_status={s.value: 0 for s in EscrowStatus})
    for status, count, volume, commission in result.all():
        stats.total_transactions += count
        stats.total_volume += Decimal(volume or 0)
        stats.total_commission += Decimal(commission or 0)
        stats.by_status[status.value] = count

    stats.total_volume = stats.total_volume.quantize(CENT)
    stats.total_commission = stats.total_commission.quantize(CENT)
    stats.pending_transactions = stats.by_status[EscrowStatus.PENDING.value]
    stats.completed_transactions = stats.by_status[EscrowStatus.COMPLETED.value]
    stats.disputed_transactions = stats.by_status[EscrowStatus.DISPUTED.value]
    return stats
