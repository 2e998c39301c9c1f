"""Payment verification flow.

Verifies a charge with the gateway, moves the escrow transaction to PAID
and flags the item sold. Both the buyer's redirect (``POST /payments/verify``)
and the gateway webhook go through ``verify_payment``, so repeated callbacks
for one charge leave a single PAID transition behind.
"""

import hashlib
import hmac
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from yrdly_escrow.config import settings
from yrdly_escrow.errors import (
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    PaymentMismatchError,
    ValidationError,
)
from yrdly_escrow.models.escrow import EscrowAction, EscrowTransaction
from yrdly_escrow.services import escrow as escrow_service
from yrdly_escrow.services.item_sold_queue import enqueue_item_sold
from yrdly_escrow.services.item_tracking import ItemTracker
from yrdly_escrow.services.payment_gateway import PaymentGateway, PaymentVerificationResult

logger = logging.getLogger(__name__)

WEBHOOK_SIGNATURE_HEADER = "verif-hash"


@dataclass
class PaymentConfirmation:
    transaction: EscrowTransaction
    amount: Decimal
    already_paid: bool = False


async def _mark_item_sold(
    db: AsyncSession,
    tracker: ItemTracker,
    redis: aioredis.Redis,
    txn: EscrowTransaction,
) -> None:
    """Best effort: failures are queued for retry, never raised."""
    transaction_id, item_id, buyer_id = txn.transaction_id, txn.item_id, txn.buyer_id
    try:
        await tracker.mark_item_as_sold(item_id, transaction_id, buyer_id)
        await escrow_service.record_item_marked_sold(db, transaction_id)
        return
    except Exception:
        logger.warning(
            "Marking item %s sold failed for escrow %s, queueing retry",
            item_id, transaction_id, exc_info=True,
        )

    try:
        await enqueue_item_sold(redis, transaction_id)
    except RedisError:
        logger.exception(
            "Could not queue item-sold retry for escrow %s; startup recovery will pick it up",
            transaction_id,
        )


async def _record_unapplied_charge(
    db: AsyncSession,
    txn: EscrowTransaction,
    reference: str,
    result: PaymentVerificationResult,
    reason: str,
) -> None:
    """Audit a captured charge that was not applied, once per gateway reference.

    The money sits with the gateway until someone refunds or reconciles it.
    """
    logger.error(
        "Captured payment %s (%s %s) not applied to %s escrow %s: %s",
        reference, result.amount, result.currency, txn.status.value, txn.transaction_id, reason,
    )
    entries = await escrow_service.get_audit_log(db, txn.transaction_id)
    if any(
        e.action == EscrowAction.PAYMENT_NOT_APPLIED and (e.metadata_ or {}).get("reference") == reference
        for e in entries
    ):
        return
    escrow_service.record_audit(
        db, txn, EscrowAction.PAYMENT_NOT_APPLIED,
        from_status=txn.status, to_status=txn.status,
        metadata={
            "reference": reference,
            "tx_ref": result.transaction_reference,
            "gateway_reference": result.gateway_reference,
            "amount": str(result.amount) if result.amount is not None else None,
            "currency": result.currency,
            "reason": reason,
        },
    )
    await escrow_service.commit_changes(db)


async def verify_payment(
    db: AsyncSession,
    gateway: PaymentGateway,
    tracker: ItemTracker,
    redis: aioredis.Redis,
    reference: str | None,
) -> PaymentConfirmation:
    """Verify a gateway charge and settle it against its escrow transaction.

    Raises ``ValidationError`` for a missing reference, ``GatewayError`` if
    the gateway declines or cannot be reached, ``PaymentMismatchError`` if it
    reports less money or another currency than the transaction requires,
    ``NotFoundError`` if the charge does not belong to a known transaction and
    ``InvalidTransitionError`` if the transaction can no longer be paid.

    A confirmed charge that cannot be applied (mismatch, unpayable status or
    a second capture) leaves the transaction untouched but gets a
    ``payment_not_applied`` audit entry for reconciliation.
    """
    reference = (reference or "").strip()
    if not reference:
        raise ValidationError("Transaction reference is required")
    if len(reference) > 128:
        raise ValidationError("Transaction reference is too long")

    result = await gateway.verify_payment(reference)
    if not result.success:
        logger.warning("Gateway rejected payment %s: %s", reference, result.error)
        raise GatewayError(result.error or "Payment verification failed")

    try:
        transaction_id = uuid.UUID(str(result.transaction_reference))
    except ValueError:
        logger.warning(
            "Payment %s carries unknown tx_ref %r", reference, result.transaction_reference,
        )
        raise NotFoundError("Transaction not found")

    txn = await escrow_service.get_transaction(db, transaction_id)
    if result.amount is None or result.amount < txn.total_amount:
        await _record_unapplied_charge(
            db, txn, reference, result,
            f"short payment: paid {result.amount}, due {txn.total_amount}",
        )
        raise PaymentMismatchError("Paid amount does not cover the transaction total")
    if result.currency != txn.currency:
        await _record_unapplied_charge(
            db, txn, reference, result,
            f"currency {result.currency}, expected {txn.currency}",
        )
        raise PaymentMismatchError("Payment currency does not match the transaction")

    try:
        txn, applied = await escrow_service.mark_paid(db, transaction_id, reference)
    except InvalidTransitionError as exc:
        txn = await escrow_service.get_transaction(db, transaction_id)
        await _record_unapplied_charge(db, txn, reference, result, exc.detail)
        raise

    if applied:
        logger.info("Payment %s verified for escrow %s", reference, transaction_id)
        await _mark_item_sold(db, tracker, redis, txn)
        # Reload; a failed side effect rolls back the session and expires txn
        txn = await escrow_service.get_transaction(db, transaction_id)
    elif txn.payment_reference != reference:
        # Second capture for an already paid transaction
        await _record_unapplied_charge(
            db, txn, reference, result,
            f"duplicate charge, settled by {txn.payment_reference}",
        )

    return PaymentConfirmation(transaction=txn, amount=result.amount, already_paid=not applied)


def verify_webhook_signature(body: bytes, signature: str | None) -> bool:
    """Check the webhook's HMAC-SHA256 hex digest of the raw body."""
    secret = settings.flutterwave_secret_hash
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature)


async def handle_webhook(
    db: AsyncSession,
    gateway: PaymentGateway,
    tracker: ItemTracker,
    redis: aioredis.Redis,
    payload: dict,
) -> PaymentConfirmation | None:
    """Process an authenticated gateway event. Returns None for ignored events.

    The payload is only a hint: the charge is re-verified with the gateway
    before anything is written.
    """
    event = payload.get("event")
    data = payload.get("data") or {}
    if event != "charge.completed" or data.get("status") != "successful":
        logger.info("Ignoring gateway event %s (status %s)", event, data.get("status"))
        return None

    gateway_id = data.get("id")
    if gateway_id is None:
        raise ValidationError("Webhook payload is missing data.id")
    return await verify_payment(db, gateway, tracker, redis, str(gateway_id))
