"""Marketplace item sale tracking.

The escrow service flags an item as sold once its payment is verified and
releases it again if the sale is cancelled. ``SqlItemTracker`` keeps that
state in the ``marketplace_items`` table.
"""

import logging
import uuid
from datetime import UTC, datetime
from typing import Protocol

from fastapi import Depends
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from yrdly_escrow.database import get_db
from yrdly_escrow.errors import ConflictError, NotFoundError, PersistenceError
from yrdly_escrow.models.item import MarketplaceItem

logger = logging.getLogger(__name__)


class ItemTracker(Protocol):
    async def mark_item_as_sold(
        self, item_id: str, transaction_id: uuid.UUID, buyer_id: str
    ) -> None: ...

    async def mark_item_as_available(self, item_id: str, transaction_id: uuid.UUID) -> bool: ...

    async def is_item_available(self, item_id: str) -> bool: ...


class SqlItemTracker:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _get_item(self, item_id: str) -> MarketplaceItem:
        result = await self.db.execute(
            select(MarketplaceItem)
            .where(MarketplaceItem.item_id == item_id)
            .execution_options(populate_existing=True)
        )
        item = result.scalar_one_or_none()
        if item is None:
            raise NotFoundError("Item not found")
        return item

    async def _execute_and_commit(self, stmt) -> int:  # type: ignore[no-untyped-def]
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception("Item tracking update failed")
            raise PersistenceError("Failed to update item") from exc
        return result.rowcount

    async def mark_item_as_sold(
        self, item_id: str, transaction_id: uuid.UUID, buyer_id: str
    ) -> None:
        """Flag the item sold to ``buyer_id``.

        Repeating the call for the same transaction is a no-op. Raises
        ``ConflictError`` if another transaction already holds the item.
        """
        item = await self._get_item(item_id)
        if item.is_sold:
            if item.transaction_id == transaction_id:
                return
            raise ConflictError(f"Item {item_id} was already sold in another transaction")

        now = datetime.now(UTC)
        updated = await self._execute_and_commit(
            update(MarketplaceItem)
            .where(MarketplaceItem.item_id == item_id, MarketplaceItem.is_sold.is_(False))
            .values(
                is_sold=True,
                sold_to_user_id=buyer_id,
                sold_at=now,
                transaction_id=transaction_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if updated != 1:
            # Lost a race; fine only if the winner was this same transaction
            item = await self._get_item(item_id)
            if item.transaction_id != transaction_id:
                raise ConflictError(f"Item {item_id} was already sold in another transaction")
            return
        logger.info("Item %s marked sold to %s (escrow %s)", item_id, buyer_id, transaction_id)

    async def mark_item_as_available(self, item_id: str, transaction_id: uuid.UUID) -> bool:
        """Release the item if ``transaction_id`` holds it. Returns whether it was released."""
        updated = await self._execute_and_commit(
            update(MarketplaceItem)
            .where(
                MarketplaceItem.item_id == item_id,
                MarketplaceItem.transaction_id == transaction_id,
            )
            .values(
                is_sold=False,
                sold_to_user_id=None,
                sold_at=None,
                transaction_id=None,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        if updated:
            logger.info("Item %s available again (escrow %s cancelled)", item_id, transaction_id)
        return bool(updated)

    async def is_item_available(self, item_id: str) -> bool:
        item = await self._get_item(item_id)
        return not item.is_sold


def get_item_tracker(db: AsyncSession = Depends(get_db)) -> ItemTracker:
    return SqlItemTracker(db)
