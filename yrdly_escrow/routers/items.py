"""Marketplace item availability."""

from fastapi import APIRouter, Depends

from yrdly_escrow.rate_limit import check_rate_limit
from yrdly_escrow.services.item_tracking import ItemTracker, get_item_tracker

router = APIRouter(prefix="/items", tags=["items"])


@router.get("/{item_id}/availability", dependencies=[Depends(check_rate_limit)])
async def item_availability(
    item_id: str,
    tracker: ItemTracker = Depends(get_item_tracker),
) -> dict:
    """Whether the item can still be bought. 404 for unknown items."""
    return {"item_id": item_id, "available": await tracker.is_item_available(item_id)}
