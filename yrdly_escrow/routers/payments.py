"""Payment verification and gateway webhook endpoints.

``/payments/verify`` keeps the contract the marketplace client was built
against: camelCase fields and ``{"error": ...}`` bodies on failure.
"""

import json
import logging

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from yrdly_escrow.database import get_db
from yrdly_escrow.errors import (
    EscrowError,
    GatewayError,
    InvalidTransitionError,
    NotFoundError,
    PaymentMismatchError,
    ValidationError,
)
from yrdly_escrow.rate_limit import check_rate_limit
from yrdly_escrow.redis import get_redis
from yrdly_escrow.schemas.payment import VerifyPaymentRequest, VerifyPaymentResponse
from yrdly_escrow.services import payments as payment_service
from yrdly_escrow.services.item_tracking import ItemTracker, get_item_tracker
from yrdly_escrow.services.payment_gateway import PaymentGateway, get_payment_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post(
    "/verify", response_model=VerifyPaymentResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def verify_payment(
    data: VerifyPaymentRequest,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    tracker: ItemTracker = Depends(get_item_tracker),
) -> VerifyPaymentResponse | JSONResponse:
    """Confirm a payment after the buyer returns from the hosted checkout.

    Safe to call repeatedly for the same payment.
    """
    try:
        confirmation = await payment_service.verify_payment(
            db, gateway, tracker, redis, data.transaction_reference
        )
    except (ValidationError, GatewayError) as exc:
        return _error(400, exc.detail)
    except EscrowError as exc:
        if exc.status_code >= 500:
            logger.error("Payment verification failed: %s", exc.detail)
            return _error(500, "Internal server error")
        return _error(exc.status_code, exc.detail)
    except Exception:
        logger.exception("Payment verification error")
        return _error(500, "Internal server error")

    return VerifyPaymentResponse(
        transaction_id=str(confirmation.transaction.transaction_id),
        amount=float(confirmation.amount),
    )


@router.post("/webhook")
async def gateway_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    tracker: ItemTracker = Depends(get_item_tracker),
) -> dict:
    """Gateway event callback, authenticated by the ``verif-hash`` header.

    Not rate limited: the gateway retries undelivered events.
    """
    body = await request.body()
    signature = request.headers.get(payment_service.WEBHOOK_SIGNATURE_HEADER)
    if not payment_service.verify_webhook_signature(body, signature):
        logger.warning("Rejected gateway webhook with bad signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        payload = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    try:
        confirmation = await payment_service.handle_webhook(db, gateway, tracker, redis, payload)
    except (ValidationError, NotFoundError, InvalidTransitionError, PaymentMismatchError) as exc:
        # Redelivery cannot fix these; acknowledge so the gateway stops retrying
        logger.warning("Gateway webhook not applied: %s", exc.detail)
        return {"status": "rejected", "detail": exc.detail}

    if confirmation is None:
        return {"status": "ignored"}
    return {
        "status": "processed",
        "transaction_id": str(confirmation.transaction.transaction_id),
        "already_paid": confirmation.already_paid,
    }
