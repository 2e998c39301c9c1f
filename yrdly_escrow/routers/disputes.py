"""Dispute case file endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from yrdly_escrow.database import get_db
from yrdly_escrow.models.dispute import DisputeStatus
from yrdly_escrow.rate_limit import check_rate_limit
from yrdly_escrow.schemas.dispute import (
    AdminNotes,
    DisputeDetailResponse,
    DisputeOpen,
    DisputeResponse,
    DisputeSettle,
    EvidenceSubmit,
)
from yrdly_escrow.schemas.escrow import TransactionResponse
from yrdly_escrow.services import disputes as dispute_service
from yrdly_escrow.services import escrow as escrow_service

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.post(
    "", response_model=DisputeResponse, status_code=201,
    dependencies=[Depends(check_rate_limit)],
)
async def open_dispute(
    data: DisputeOpen,
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    """Buyer or seller opens a dispute. The transaction moves to ``disputed``."""
    dispute = await dispute_service.open_dispute(
        db, data.transaction_id, data.user_id, data.reason, data.evidence,
    )
    return DisputeResponse.model_validate(dispute)


@router.get(
    "", response_model=list[DisputeResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def list_disputes_by_status(
    status: DisputeStatus = Query(DisputeStatus.OPEN),
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> list[DisputeResponse]:
    """Review queue, newest first."""
    disputes = await dispute_service.get_disputes_by_status(db, status, limit=limit, offset=offset)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.get(
    "/users/{user_id}", response_model=list[DisputeResponse],
    dependencies=[Depends(check_rate_limit)],
)
async def list_user_disputes(
    user_id: str,
    limit: int | None = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> list[DisputeResponse]:
    disputes = await dispute_service.get_user_disputes(db, user_id, limit=limit, offset=offset)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.get(
    "/{dispute_id}", response_model=DisputeDetailResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def get_dispute(
    dispute_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> DisputeDetailResponse:
    """The case file together with its transaction."""
    dispute = await dispute_service.get_dispute(db, dispute_id)
    txn = await escrow_service.get_transaction(db, dispute.transaction_id)
    return DisputeDetailResponse(
        **DisputeResponse.model_validate(dispute).model_dump(),
        transaction=TransactionResponse.model_validate(txn),
    )


@router.post(
    "/{dispute_id}/evidence", response_model=DisputeResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def submit_evidence(
    dispute_id: uuid.UUID,
    data: EvidenceSubmit,
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    dispute = await dispute_service.submit_evidence(db, dispute_id, data.user_id, data.evidence)
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/notes", response_model=DisputeResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def add_admin_notes(
    dispute_id: uuid.UUID,
    data: AdminNotes,
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    dispute = await dispute_service.add_admin_notes(db, dispute_id, data.notes)
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/resolve", response_model=DisputeResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    data: DisputeSettle,
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    """Record the outcome and refund split. The transaction stays ``disputed``."""
    dispute = await dispute_service.resolve_dispute(
        db, dispute_id, data.admin_id, data.resolution, data.refund_amount, data.seller_amount,
    )
    return DisputeResponse.model_validate(dispute)


@router.post(
    "/{dispute_id}/close", response_model=DisputeResponse,
    dependencies=[Depends(check_rate_limit)],
)
async def close_dispute(
    dispute_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> DisputeResponse:
    dispute = await dispute_service.close_dispute(db, dispute_id)
    return DisputeResponse.model_validate(dispute)
