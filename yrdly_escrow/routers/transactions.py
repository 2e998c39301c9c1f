"""Escrow transaction lifecycle endpoints."""

import logging
import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from yrdly_escrow.database import get_db
from yrdly_escrow.errors import InvalidTransitionError
from yrdly_escrow.models.escrow import EscrowStatus, EscrowTransaction
from yrdly_escrow.rate_limit import check_rate_limit
from yrdly_escrow.schemas.escrow import (
    AuditEntryResponse,
    DeliveryDetails,
    DisputeCreate,
    DisputeResolve,
    EscrowStatsResponse,
    StatusUpdate,
    TransactionCreate,
    TransactionResponse,
)
from yrdly_escrow.schemas.payment import CheckoutRequest, CheckoutResponse
from yrdly_escrow.services import escrow as escrow_service
from yrdly_escrow.services.item_tracking import ItemTracker, get_item_tracker
from yrdly_escrow.services.payment_gateway import (
    PaymentGateway,
    PaymentInitiation,
    get_payment_gateway,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/escrow", tags=["escrow"])


async def _release_item(tracker: ItemTracker, txn: EscrowTransaction) -> None:
    """Put a cancelled sale's item back on the market. Failures are only logged."""
    item_id, transaction_id = txn.item_id, txn.transaction_id
    try:
        await tracker.mark_item_as_available(item_id, transaction_id)
    except Exception:
        logger.exception(
            "Failed to release item %s for cancelled escrow %s", item_id, transaction_id,
        )


@router.post(
    "/transactions", response_model=TransactionResponse, status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def create_transaction(
    data: TransactionCreate,
    db: AsyncSession = Depends(get_db),
) -> TransactionResponse:
    """Buyer opens an escrow transaction. Commission is fixed at this point."""
    txn = await escrow_service.create_transaction(
        db,
        item_id=data.item_id,
        buyer_id=data.buyer_id,
        seller_id=data.seller_id,
        amount=data.amount,
        payment_method=data.payment_method,
        delivery_details=data.delivery_details,
    )
    return TransactionResponse.model_validate(txn)


@router.get("/stats", response_model=EscrowStatsResponse, dependencies=[Depends(check_rate_limit)])
async def get_stats(db: AsyncSession = Depends(get_db)) -> EscrowStatsResponse:
    stats = await escrow_service.get_stats(db)
    return EscrowStatsResponse.model_validate(stats)


@router.get(
    "/transactions/{transaction_id}", response_model=TransactionResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def get_transaction(
    transaction_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> TransactionResponse:
    txn = await escrow_service.get_transaction(db, transaction_id)
    return TransactionResponse.model_validate(txn)


@router.post(
    "/transactions/{transaction_id}/status", response_model=TransactionResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def update_status(
    transaction_id: uuid.UUID,
    data: StatusUpdate,
    db: AsyncSession = Depends(get_db),
    tracker: ItemTracker = Depends(get_item_tracker),
) -> TransactionResponse:
    """Move the transaction along its lifecycle.

    Send ``expected_status`` to make the change conditional on the status you
    last read. Cancelling a paid transaction puts the item back on sale.
    PAID is only reached through gateway verification (``/payments/verify``).
    """
    if data.status == EscrowStatus.PAID:
        raise InvalidTransitionError(
            "Payment must be confirmed through payment verification"
        )
    txn = await escrow_service.update_status(
        db, transaction_id, data.status, data.additional_data(),
        expected_status=data.expected_status,
    )
    response = TransactionResponse.model_validate(txn)
    if txn.status == EscrowStatus.CANCELLED and txn.paid_at is not None:
        await _release_item(tracker, txn)
    return response


@router.patch(
    "/transactions/{transaction_id}/delivery", response_model=TransactionResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def update_delivery(
    transaction_id: uuid.UUID,
    data: DeliveryDetails,
    db: AsyncSession = Depends(get_db),
) -> TransactionResponse:
    txn = await escrow_service.update_delivery_details(db, transaction_id, data)
    return TransactionResponse.model_validate(txn)


@router.post(
    "/transactions/{transaction_id}/dispute", response_model=TransactionResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def open_dispute(
    transaction_id: uuid.UUID,
    data: DisputeCreate,
    db: AsyncSession = Depends(get_db),
) -> TransactionResponse:
    txn = await escrow_service.dispute_transaction(db, transaction_id, data.reason)
    return TransactionResponse.model_validate(txn)


@router.post(
    "/transactions/{transaction_id}/resolve", response_model=TransactionResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def resolve_dispute(
    transaction_id: uuid.UUID,
    data: DisputeResolve,
    db: AsyncSession = Depends(get_db),
) -> TransactionResponse:
    """Record the dispute outcome. The status stays ``disputed`` until moved on."""
    txn = await escrow_service.resolve_dispute(db, transaction_id, data.resolution)
    return TransactionResponse.model_validate(txn)


@router.post(
    "/transactions/{transaction_id}/checkout", response_model=CheckoutResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def checkout(
    transaction_id: uuid.UUID,
    data: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> CheckoutResponse:
    """Create a hosted payment page for a pending transaction."""
    txn = await escrow_service.get_transaction(db, transaction_id)
    if txn.status != EscrowStatus.PENDING:
        raise InvalidTransitionError(
            f"Cannot start payment for a {txn.status.value} transaction"
        )
    link = await gateway.initialize_payment(PaymentInitiation(
        transaction_id=str(txn.transaction_id),
        amount=txn.total_amount,
        currency=txn.currency,
        buyer_email=data.buyer_email,
        buyer_name=data.buyer_name,
        item_title=data.item_title,
        seller_name=data.seller_name,
    ))
    return CheckoutResponse(
        transaction_id=str(txn.transaction_id),
        amount=txn.total_amount,
        currency=txn.currency,
        payment_link=link,
    )


@router.get(
    "/transactions/{transaction_id}/audit", response_model=list[AuditEntryResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def get_audit_log(
    transaction_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> list[AuditEntryResponse]:
    entries = await escrow_service.get_audit_log(db, transaction_id)
    return [AuditEntryResponse.model_validate(e) for e in entries]


@router.get(
    "/users/{user_id}/purchases", response_model=list[TransactionResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def list_purchases(
    user_id: str,
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> list[TransactionResponse]:
    """Transactions where the user is the buyer, newest first."""
    txns = await escrow_service.get_user_transactions(db, user_id, limit=limit, offset=offset)
    return [TransactionResponse.model_validate(t) for t in txns]


@router.get(
    "/sellers/{seller_id}/sales", response_model=list[TransactionResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def list_sales(
    seller_id: str,
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> list[TransactionResponse]:
    """Transactions where the user is the seller, newest first."""
    txns = await escrow_service.get_seller_transactions(db, seller_id, limit=limit, offset=offset)
    return [TransactionResponse.model_validate(t) for t in txns]
