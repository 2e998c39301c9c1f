"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from yrdly_escrow.config import settings
from yrdly_escrow.middleware import BodySizeLimitMiddleware, SecurityHeadersMiddleware
from yrdly_escrow.routers import disputes, fees, items, payments, transactions

logger = logging.getLogger(__name__)


async def _recover_item_sold_retries(
    session_factory: Callable[[], AsyncSession] | None = None,
    redis_client: aioredis.Redis | None = None,
) -> int:
    """Re-enqueue paid transactions whose item was never marked sold.

    Covers retries lost with Redis and processes that died between the PAID
    commit and the item-tracking call. ZADD NX keeps existing schedules, so
    this is safe to call unconditionally at startup.
    """
    from yrdly_escrow.models.escrow import EscrowStatus, EscrowTransaction
    from yrdly_escrow.services.item_sold_queue import enqueue_item_sold

    if session_factory is None:
        from yrdly_escrow.database import async_session_factory
        session_factory = async_session_factory

    try:
        async with session_factory() as db:
            result = await db.execute(
                select(EscrowTransaction.transaction_id).where(
                    EscrowTransaction.paid_at.isnot(None),
                    EscrowTransaction.item_marked_sold_at.is_(None),
                    EscrowTransaction.status != EscrowStatus.CANCELLED,
                )
            )
            transaction_ids = list(result.scalars().all())

        if not transaction_ids:
            logger.info("Item-sold recovery: nothing pending")
            return 0

        if redis_client is None:
            from yrdly_escrow.redis import redis_pool
            redis = aioredis.Redis(connection_pool=redis_pool)
        else:
            redis = redis_client
        try:
            for transaction_id in transaction_ids:
                await enqueue_item_sold(redis, transaction_id, delay=0)
        finally:
            if redis_client is None:
                await redis.aclose()

        logger.info("Item-sold recovery: re-enqueued %d transactions", len(transaction_ids))
        return len(transaction_ids)

    except Exception:
        logger.exception("Item-sold recovery failed")
        return 0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    from yrdly_escrow.services.item_sold_queue import run_item_sold_consumer
    consumer_task = asyncio.create_task(run_item_sold_consumer())
    await _recover_item_sold_retries()

    yield

    consumer_task.cancel()
    try:
        await consumer_task
    except asyncio.CancelledError:
        pass


app = FastAPI(
    title="Yrdly Escrow",
    description="Escrow transactions and payment verification for the Yrdly marketplace",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS - restrict to configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware (order matters: outermost first)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware)

# Routers
app.include_router(transactions.router)
app.include_router(disputes.router)
app.include_router(payments.router)
app.include_router(items.router)
app.include_router(fees.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
