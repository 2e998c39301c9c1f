"""Retry queue for marking items sold, using a Redis sorted set.

A verified payment is committed before the item is flagged sold. If the
item-tracking call fails, the transaction id is ZADDed with score = next
attempt unix timestamp. A single async consumer wakes when the earliest
entry is due and retries with exponential backoff.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Callable

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from yrdly_escrow.config import settings
from yrdly_escrow.errors import ConflictError, NotFoundError
from yrdly_escrow.models.escrow import EscrowStatus
from yrdly_escrow.services import escrow as escrow_service
from yrdly_escrow.services.item_tracking import ItemTracker, SqlItemTracker

logger = logging.getLogger(__name__)

RETRY_KEY = "escrow:item_sold_retries"
ATTEMPTS_KEY = "escrow:item_sold_attempts"


def _member(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


def retry_delay(attempt: int) -> float:
    return settings.item_sold_retry_base_delay_seconds * (2 ** attempt)


async def enqueue_item_sold(
    redis: aioredis.Redis,
    transaction_id: uuid.UUID,
    delay: float | None = None,
) -> None:
    """Schedule a mark-sold retry. An already queued transaction keeps its slot."""
    due = time.time() + (retry_delay(0) if delay is None else delay)
    await redis.zadd(RETRY_KEY, {str(transaction_id): due}, nx=True)
    logger.info("Queued item-sold retry for escrow %s", transaction_id)


async def _reschedule(redis: aioredis.Redis, member: str, now: float) -> None:
    attempts = await redis.hincrby(ATTEMPTS_KEY, member, 1)
    if attempts >= settings.item_sold_retry_max_attempts:
        await redis.hdel(ATTEMPTS_KEY, member)
        logger.error(
            "Giving up marking item sold for escrow %s after %d attempts", member, attempts,
        )
        return
    await redis.zadd(RETRY_KEY, {member: now + retry_delay(attempts)})
    logger.warning("Item-sold retry %d for escrow %s failed, rescheduled", attempts, member)


async def retry_item_sold(
    transaction_id: uuid.UUID,
    session_factory: Callable[[], AsyncSession] | None = None,
    tracker_factory: Callable[[AsyncSession], ItemTracker] | None = None,
) -> bool:
    """Attempt the mark-sold side effect once.

    Returns True when there is nothing left to do (recorded, cancelled,
    unknown transaction, or the item belongs to another sale) and False
    when the attempt should be retried later.
    """
    if session_factory is None:
        from yrdly_escrow.database import async_session_factory
        session_factory = async_session_factory
    make_tracker = tracker_factory or SqlItemTracker

    async with session_factory() as db:
        try:
            txn = await escrow_service.get_transaction(db, transaction_id)
        except NotFoundError:
            logger.warning("Item-sold retry for nonexistent escrow %s", transaction_id)
            return True

        if txn.status == EscrowStatus.CANCELLED or txn.paid_at is None:
            logger.info(
                "Escrow %s is %s, skipping item-sold retry", transaction_id, txn.status.value,
            )
            return True
        if txn.item_marked_sold_at is not None:
            return True

        tracker = make_tracker(db)
        try:
            await tracker.mark_item_as_sold(txn.item_id, txn.transaction_id, txn.buyer_id)
        except ConflictError as exc:
            logger.error("Cannot mark item sold for escrow %s: %s", transaction_id, exc.detail)
            return True
        except Exception:
            logger.warning("Marking item sold failed for escrow %s", transaction_id, exc_info=True)
            return False

        await escrow_service.record_item_marked_sold(db, transaction_id)
        logger.info("Item %s marked sold on retry (escrow %s)", txn.item_id, transaction_id)
        return True


async def process_due_retries(
    redis: aioredis.Redis,
    session_factory: Callable[[], AsyncSession] | None = None,
    tracker_factory: Callable[[AsyncSession], ItemTracker] | None = None,
    now: float | None = None,
) -> int:
    """Run every retry whose time has come. Returns how many were attempted."""
    now = time.time() if now is None else now
    due = await redis.zrangebyscore(RETRY_KEY, "-inf", now)

    attempted = 0
    for raw in due:
        if not await redis.zrem(RETRY_KEY, raw):
            # Another consumer got it
            continue
        member = _member(raw)
        try:
            transaction_id = uuid.UUID(member)
        except ValueError:
            logger.error("Dropping malformed item-sold retry entry %r", member)
            await redis.hdel(ATTEMPTS_KEY, member)
            continue

        try:
            done = await retry_item_sold(transaction_id, session_factory, tracker_factory)
        except Exception:
            logger.exception("Item-sold retry for escrow %s raised", transaction_id)
            done = False

        if done:
            await redis.hdel(ATTEMPTS_KEY, member)
        else:
            await _reschedule(redis, member, now)
        attempted += 1
    return attempted


async def run_item_sold_consumer() -> None:
    """Sleep until the earliest retry is due, then process everything due."""
    from yrdly_escrow.redis import redis_pool

    redis = aioredis.Redis(connection_pool=redis_pool)

    while True:
        try:
            entries = await redis.zrangebyscore(
                RETRY_KEY, "-inf", "+inf", start=0, num=1, withscores=True
            )

            if not entries:
                await asyncio.sleep(10)
                continue

            _, due_ts = entries[0]
            now = time.time()

            if due_ts > now:
                # Wake at most every 60s to pick up newly queued earlier entries
                await asyncio.sleep(min(due_ts - now, 60.0))
                continue

            await process_due_retries(redis)

        except asyncio.CancelledError:
            logger.info("Item-sold consumer shutting down")
            break
        except Exception:
            logger.exception("Item-sold consumer error, retrying in 5s")
            await asyncio.sleep(5)

    await redis.aclose()
