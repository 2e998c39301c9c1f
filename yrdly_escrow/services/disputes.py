"""Dispute case files: open, gather evidence, review, settle and close.

The escrow transaction stays the source of truth for status. Opening a
dispute moves the transaction to DISPUTED through the escrow state machine;
resolving one records the refund split on both records but leaves the
transaction DISPUTED. Moving it on afterwards (cancelling after a refund,
which puts the item back on sale, or continuing delivery) is an ordinary
status update.
"""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import pydantic
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from yrdly_escrow.config import settings
from yrdly_escrow.errors import (
    ConflictError,
    EscrowError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from yrdly_escrow.models.dispute import ACTIVE_DISPUTE_STATUSES, Dispute, DisputeStatus
from yrdly_escrow.models.escrow import EscrowAction, EscrowStatus, EscrowTransaction
from yrdly_escrow.schemas.dispute import DisputeEvidence
from yrdly_escrow.services import escrow as escrow_service
from yrdly_escrow.services.fees import CENT

logger = logging.getLogger(__name__)


def _validate_evidence(evidence: DisputeEvidence | dict) -> dict:
    if isinstance(evidence, DisputeEvidence):
        model = evidence
    else:
        try:
            model = DisputeEvidence.model_validate(evidence)
        except pydantic.ValidationError as exc:
            raise ValidationError(f"Invalid evidence: {exc.errors()[0]['msg']}")
    return model.model_dump(mode="json", exclude_none=True)


def _validate_share(name: str, value: Any) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid {name}: {value!r}")
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{name} cannot be negative")
    if amount != amount.quantize(CENT):
        raise ValidationError(f"{name} must have at most two decimal places")
    return amount.quantize(CENT)


def _party_side(txn: EscrowTransaction, user_id: str) -> str:
    if user_id == txn.buyer_id:
        return "buyer"
    if user_id == txn.seller_id:
        return "seller"
    raise ForbiddenError("Only the buyer or seller can take part in this dispute")


async def _get_dispute(db: AsyncSession, dispute_id: uuid.UUID) -> Dispute:
    try:
        result = await db.execute(
            select(Dispute)
            .where(Dispute.dispute_id == dispute_id)
            .execution_options(populate_existing=True)
        )
    except SQLAlchemyError as exc:
        raise PersistenceError("Failed to load dispute") from exc
    dispute = result.scalar_one_or_none()
    if dispute is None:
        raise NotFoundError("Dispute not found")
    return dispute


async def _active_dispute(db: AsyncSession, transaction_id: uuid.UUID) -> Dispute | None:
    result = await db.execute(
        select(Dispute).where(
            Dispute.transaction_id == transaction_id,
            Dispute.status.in_(list(ACTIVE_DISPUTE_STATUSES)),
        )
    )
    return result.scalars().first()


async def _update_dispute(
    db: AsyncSession,
    dispute: Dispute,
    allowed: frozenset[DisputeStatus],
    values: dict,
    now: datetime,
) -> None:
    """Apply ``values`` only while the dispute is still in one of ``allowed``."""
    dispute_id = dispute.dispute_id
    stmt = (
        update(Dispute)
        .where(Dispute.dispute_id == dispute_id, Dispute.status.in_(list(allowed)))
        .values(**values, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    try:
        result = await db.execute(stmt)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError("Failed to update dispute") from exc

    if result.rowcount != 1:
        await db.rollback()
        logger.warning("Dispute %s changed concurrently", dispute_id)
        raise ConflictError("Dispute was modified concurrently, re-read and retry")


async def open_dispute(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    user_id: str,
    reason: str,
    evidence: DisputeEvidence | dict | None = None,
) -> Dispute:
    """Open a case file and move the transaction to DISPUTED in one commit.

    Only the buyer or seller may open one, and a transaction has at most one
    open or under-review dispute. A transaction already DISPUTED without a
    case file (and not yet resolved) gets one attached instead.
    """
    if not reason or not reason.strip():
        raise ValidationError("A dispute reason is required")
    evidence_data = _validate_evidence(evidence) if evidence is not None else None

    txn = await escrow_service.get_transaction(db, transaction_id)
    side = _party_side(txn, user_id)
    if await _active_dispute(db, transaction_id) is not None:
        raise ConflictError("A dispute is already open for this transaction")

    now = datetime.now(UTC)
    dispute = Dispute(
        dispute_id=uuid.uuid4(),
        transaction_id=transaction_id,
        opened_by=user_id,
        reason=reason.strip(),
        buyer_evidence=evidence_data if side == "buyer" else None,
        seller_evidence=evidence_data if side == "seller" else None,
        status=DisputeStatus.OPEN,
        refund_amount=Decimal("0.00"),
        seller_amount=Decimal("0.00"),
        created_at=now,
        updated_at=now,
    )
    db.add(dispute)
    try:
        if txn.status == EscrowStatus.DISPUTED and txn.dispute_resolved_at is None:
            escrow_service.record_audit(
                db, txn, EscrowAction.DISPUTED,
                from_status=EscrowStatus.DISPUTED, to_status=EscrowStatus.DISPUTED,
                metadata={"dispute_id": str(dispute.dispute_id), "opened_by": user_id},
            )
            await escrow_service.commit_changes(db)
        else:
            await escrow_service.dispute_transaction(db, transaction_id, reason)
    except EscrowError:
        # Drop the pending case file along with the failed transition
        await db.rollback()
        raise

    await db.refresh(dispute)
    logger.info(
        "Dispute %s opened on escrow %s by the %s", dispute.dispute_id, transaction_id, side,
    )
    return dispute


async def submit_evidence(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    user_id: str,
    evidence: DisputeEvidence | dict,
) -> Dispute:
    """Replace the caller's side of the evidence while the dispute is active."""
    data = _validate_evidence(evidence)
    dispute = await _get_dispute(db, dispute_id)
    txn = await escrow_service.get_transaction(db, dispute.transaction_id)
    side = _party_side(txn, user_id)
    if dispute.status not in ACTIVE_DISPUTE_STATUSES:
        raise InvalidTransitionError(
            f"Cannot add evidence to a {dispute.status.value} dispute"
        )

    now = datetime.now(UTC)
    await _update_dispute(db, dispute, ACTIVE_DISPUTE_STATUSES, {f"{side}_evidence": data}, now)
    escrow_service.record_audit(
        db, txn, EscrowAction.EVIDENCE_SUBMITTED,
        metadata={"dispute_id": str(dispute_id), "party": side},
    )
    await escrow_service.commit_changes(db)
    await db.refresh(dispute)
    logger.info("Dispute %s: %s evidence updated", dispute_id, side)
    return dispute


async def add_admin_notes(db: AsyncSession, dispute_id: uuid.UUID, notes: str) -> Dispute:
    """Set the reviewer's notes. An open dispute moves to under review."""
    if not notes or not notes.strip():
        raise ValidationError("Notes cannot be empty")
    dispute = await _get_dispute(db, dispute_id)
    if dispute.status == DisputeStatus.CLOSED:
        raise InvalidTransitionError("Cannot annotate a closed dispute")

    values: dict[str, Any] = {"admin_notes": notes.strip()}
    if dispute.status == DisputeStatus.OPEN:
        values["status"] = DisputeStatus.UNDER_REVIEW

    now = datetime.now(UTC)
    txn = await escrow_service.get_transaction(db, dispute.transaction_id)
    await _update_dispute(db, dispute, frozenset({dispute.status}), values, now)
    escrow_service.record_audit(
        db, txn, EscrowAction.DISPUTE_NOTES_ADDED, metadata={"dispute_id": str(dispute_id)},
    )
    await escrow_service.commit_changes(db)
    await db.refresh(dispute)
    return dispute


async def resolve_dispute(
    db: AsyncSession,
    dispute_id: uuid.UUID,
    resolved_by: str,
    resolution: str,
    refund_amount: Decimal | str | int,
    seller_amount: Decimal | str | int,
) -> Dispute:
    """Settle the dispute and record how the escrowed funds are split.

    ``refund_amount`` (back to the buyer) and ``seller_amount`` must add up
    to the transaction's ``total_amount``. The transaction gets its
    resolution note but stays DISPUTED.
    """
    if not resolved_by or not resolved_by.strip():
        raise ValidationError("resolved_by is required")
    if not resolution or not resolution.strip():
        raise ValidationError("A resolution note is required")
    refund = _validate_share("refund_amount", refund_amount)
    payout = _validate_share("seller_amount", seller_amount)

    dispute = await _get_dispute(db, dispute_id)
    if dispute.status not in ACTIVE_DISPUTE_STATUSES:
        raise InvalidTransitionError(f"Cannot resolve a {dispute.status.value} dispute")
    txn = await escrow_service.get_transaction(db, dispute.transaction_id)
    if refund + payout != txn.total_amount:
        raise ValidationError(
            f"Refund and seller amounts must add up to the escrowed {txn.total_amount}"
        )

    now = datetime.now(UTC)
    await _update_dispute(
        db, dispute, ACTIVE_DISPUTE_STATUSES,
        {
            "status": DisputeStatus.RESOLVED,
            "resolution": resolution.strip(),
            "resolved_by": resolved_by.strip(),
            "refund_amount": refund,
            "seller_amount": payout,
            "resolved_at": now,
        },
        now,
    )
    try:
        await escrow_service.resolve_dispute(
            db, txn.transaction_id, resolution,
            details={
                "dispute_id": str(dispute_id),
                "resolved_by": resolved_by.strip(),
                "refund_amount": str(refund),
                "seller_amount": str(payout),
            },
        )
    except EscrowError:
        await db.rollback()
        raise

    await db.refresh(dispute)
    logger.info(
        "Dispute %s resolved: refund %s, seller %s", dispute_id, refund, payout,
    )
    return dispute


async def close_dispute(db: AsyncSession, dispute_id: uuid.UUID) -> Dispute:
    """Archive a resolved dispute once its transaction has left DISPUTED."""
    dispute = await _get_dispute(db, dispute_id)
    if dispute.status != DisputeStatus.RESOLVED:
        raise InvalidTransitionError(
            f"Only resolved disputes can be closed, currently {dispute.status.value}"
        )
    txn = await escrow_service.get_transaction(db, dispute.transaction_id)
    if txn.status == EscrowStatus.DISPUTED:
        raise InvalidTransitionError(
            "Move the transaction out of disputed before closing the dispute"
        )

    now = datetime.now(UTC)
    await _update_dispute(
        db, dispute, frozenset({DisputeStatus.RESOLVED}),
        {"status": DisputeStatus.CLOSED, "closed_at": now},
        now,
    )
    escrow_service.record_audit(
        db, txn, EscrowAction.DISPUTE_CLOSED,
        metadata={"dispute_id": str(dispute_id), "transaction_status": txn.status.value},
    )
    await escrow_service.commit_changes(db)
    await db.refresh(dispute)
    logger.info("Dispute %s closed", dispute_id)
    return dispute


async def get_dispute(db: AsyncSession, dispute_id: uuid.UUID) -> Dispute:
    """Get a dispute by id. Raises ``NotFoundError``."""
    return await _get_dispute(db, dispute_id)


def _page(limit: int | None, offset: int) -> tuple[int, int]:
    if limit is None:
        limit = settings.default_page_size
    return max(1, min(limit, settings.max_page_size)), max(offset, 0)


async def get_user_disputes(
    db: AsyncSession, user_id: str, limit: int | None = None, offset: int = 0
) -> list[Dispute]:
    """Disputes the user opened or is a party to, newest first."""
    limit, offset = _page(limit, offset)
    result = await db.execute(
        select(Dispute)
        .join(EscrowTransaction, EscrowTransaction.transaction_id == Dispute.transaction_id)
        .where(or_(
            Dispute.opened_by == user_id,
            EscrowTransaction.buyer_id == user_id,
            EscrowTransaction.seller_id == user_id,
        ))
        .order_by(Dispute.created_at.desc(), Dispute.dispute_id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def get_disputes_by_status(
    db: AsyncSession,
    status: DisputeStatus | str,
    limit: int | None = None,
    offset: int = 0,
) -> list[Dispute]:
    """Review queue: disputes in ``status``, newest first."""
    try:
        status = DisputeStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown dispute status: {status!r}")
    limit, offset = _page(limit, offset)
    result = await db.execute(
        select(Dispute)
        .where(Dispute.status == status)
        .order_by(Dispute.created_at.desc(), Dispute.dispute_id.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())
