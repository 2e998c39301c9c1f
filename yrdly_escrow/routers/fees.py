"""Fee schedule endpoint. Public."""

from fastapi import APIRouter

from yrdly_escrow.services.fees import get_fee_schedule

router = APIRouter(tags=["fees"])


@router.get("/fees")
async def fee_schedule() -> dict:
    """Current commission rate, who pays it, and a worked example.

    Buyers pay the listed price; the commission is withheld from the seller.
    """
    return get_fee_schedule()
