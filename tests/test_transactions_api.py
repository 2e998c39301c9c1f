"""Tests for the escrow transaction HTTP endpoints (/escrow/...)."""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from yrdly_escrow.errors import GatewayError
from yrdly_escrow.main import app
from yrdly_escrow.models.escrow import EscrowStatus
from yrdly_escrow.services import escrow as escrow_service
from yrdly_escrow.services.item_tracking import get_item_tracker
from tests.conftest import (
    BUYER_ID,
    SELLER_ID,
    FakeGateway,
    add_item,
    make_transaction_data,
    reload_item,
)
from tests.test_payments import BrokenTracker


async def _create(client: AsyncClient, **overrides) -> dict:
    resp = await client.post("/escrow/transactions", json=make_transaction_data(**overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _set_status(client: AsyncClient, transaction_id: str, status: str, **extra):
    return await client.post(
        f"/escrow/transactions/{transaction_id}/status", json={"status": status, **extra}
    )


async def _pay(
    client: AsyncClient,
    db_session: AsyncSession,
    gateway: FakeGateway,
    transaction_id: str,
    reference: str = "9001",
) -> dict:
    """Settle a transaction the way the buyer does: gateway-approved verification."""
    txn = await escrow_service.get_transaction(db_session, uuid.UUID(transaction_id))
    gateway.approve(reference, txn)
    resp = await client.post("/payments/verify", json={"transactionReference": reference})
    assert resp.status_code == 200, resp.text
    return (await client.get(f"/escrow/transactions/{transaction_id}")).json()


@pytest.mark.asyncio
async def test_create_transaction(client: AsyncClient) -> None:
    body = await _create(client)
    assert body["status"] == "pending"
    assert body["amount"] == "10000.00"
    assert body["commission"] == "200.00"
    assert body["seller_amount"] == "9800.00"
    assert body["total_amount"] == "10000.00"
    assert body["currency"] == "NGN"
    assert body["payment_method"] == "card"
    assert body["delivery_details"]["option"] == "face_to_face"
    assert body["version"] == 1
    uuid.UUID(body["transaction_id"])


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [
    {"amount": "0"},
    {"amount": "-1"},
    {"amount": "12.345"},
    {"payment_method": "cash"},
    {"delivery_details": {"option": "drone"}},
    {"buyer_id": ""},
])
async def test_create_validation_errors(client: AsyncClient, overrides: dict) -> None:
    resp = await client.post("/escrow/transactions", json=make_transaction_data(**overrides))
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_create_self_trade_rejected(client: AsyncClient) -> None:
    resp = await client.post(
        "/escrow/transactions", json=make_transaction_data(buyer_id=SELLER_ID),
    )
    assert resp.status_code == 422
    assert "different" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_get_transaction(client: AsyncClient) -> None:
    created = await _create(client)
    resp = await client.get(f"/escrow/transactions/{created['transaction_id']}")
    assert resp.status_code == 200
    assert resp.json()["transaction_id"] == created["transaction_id"]


@pytest.mark.asyncio
async def test_get_transaction_not_found(client: AsyncClient) -> None:
    resp = await client.get(f"/escrow/transactions/{uuid.uuid4()}")
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Transaction not found"


@pytest.mark.asyncio
async def test_get_transaction_bad_id(client: AsyncClient) -> None:
    resp = await client.get("/escrow/transactions/not-a-uuid")
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_full_lifecycle(
    client: AsyncClient, db_session: AsyncSession, gateway: FakeGateway,
) -> None:
    txn_id = (await _create(client))["transaction_id"]

    paid = await _pay(client, db_session, gateway, txn_id, reference="7001")
    assert paid["status"] == "paid"
    assert paid["payment_reference"] == "7001"
    for status in ("shipped", "delivered", "completed"):
        resp = await _set_status(client, txn_id, status)
        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == status

    body = resp.json()
    assert body["paid_at"] and body["shipped_at"] and body["delivered_at"] and body["completed_at"]
    assert body["version"] == 5


@pytest.mark.asyncio
async def test_invalid_transition_is_409(client: AsyncClient) -> None:
    txn_id = (await _create(client))["transaction_id"]
    resp = await _set_status(client, txn_id, "completed")
    assert resp.status_code == 409
    assert "pending" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_unknown_status_is_422(client: AsyncClient) -> None:
    txn_id = (await _create(client))["transaction_id"]
    resp = await _set_status(client, txn_id, "refunded")
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_expected_status_conflict(
    client: AsyncClient, db_session: AsyncSession, gateway: FakeGateway,
) -> None:
    txn_id = (await _create(client))["transaction_id"]
    await _pay(client, db_session, gateway, txn_id)
    resp = await _set_status(client, txn_id, "cancelled", expected_status="pending")
    assert resp.status_code == 409
    assert "Expected status" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_cancel_after_payment_releases_item(
    client: AsyncClient, db_session: AsyncSession, gateway: FakeGateway,
) -> None:
    await add_item(db_session)
    created = await _create(client)
    txn = await escrow_service.get_transaction(db_session, uuid.UUID(created["transaction_id"]))
    gateway.approve("9001", txn)
    resp = await client.post("/payments/verify", json={"transactionReference": "9001"})
    assert resp.status_code == 200
    assert (await reload_item(db_session)).is_sold is True

    resp = await _set_status(client, created["transaction_id"], "cancelled")

    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    item = await reload_item(db_session)
    assert item.is_sold is False
    assert item.transaction_id is None


@pytest.mark.asyncio
async def test_cancel_release_failure_is_not_surfaced(
    client: AsyncClient, db_session: AsyncSession, gateway: FakeGateway,
) -> None:
    txn_id = (await _create(client))["transaction_id"]
    await _pay(client, db_session, gateway, txn_id)
    app.dependency_overrides[get_item_tracker] = lambda: BrokenTracker()

    resp = await _set_status(client, txn_id, "cancelled")

    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"


@pytest.mark.asyncio
async def test_update_delivery(client: AsyncClient) -> None:
    txn_id = (await _create(client))["transaction_id"]
    resp = await client.patch(
        f"/escrow/transactions/{txn_id}/delivery",
        json={"option": "seller_delivery", "address": "4 Admiralty Way, Lekki"},
    )
    assert resp.status_code == 200
    assert resp.json()["delivery_details"] == {
        "option": "seller_delivery", "address": "4 Admiralty Way, Lekki",
    }
    assert resp.json()["version"] == 2


@pytest.mark.asyncio
async def test_update_delivery_after_completion_is_409(client: AsyncClient) -> None:
    txn_id = (await _create(client))["transaction_id"]
    await _set_status(client, txn_id, "cancelled")
    resp = await client.patch(
        f"/escrow/transactions/{txn_id}/delivery", json={"option": "seller_delivery"},
    )
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_dispute_and_resolve_flow(
    client: AsyncClient, db_session: AsyncSession, gateway: FakeGateway,
) -> None:
    txn_id = (await _create(client))["transaction_id"]
    await _pay(client, db_session, gateway, txn_id)
    await _set_status(client, txn_id, "shipped")

    resp = await client.post(
        f"/escrow/transactions/{txn_id}/dispute", json={"reason": "item not delivered"},
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "disputed"
    assert resp.json()["dispute_reason"] == "item not delivered"

    # Cannot leave the dispute before it is resolved
    assert (await _set_status(client, txn_id, "cancelled")).status_code == 409

    resp = await client.post(
        f"/escrow/transactions/{txn_id}/resolve", json={"resolution": "refund issued"},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "disputed"
    assert body["dispute_reason"] == "item not delivered"
    assert body["dispute_resolution_note"] == "refund issued"
    assert body["dispute_resolved_at"] is not None

    resp = await _set_status(client, txn_id, "cancelled")
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"


@pytest.mark.asyncio
async def test_dispute_requires_reason(client: AsyncClient) -> None:
    txn_id = (await _create(client))["transaction_id"]
    resp = await client.post(f"/escrow/transactions/{txn_id}/dispute", json={"reason": ""})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_audit_trail(
    client: AsyncClient, db_session: AsyncSession, gateway: FakeGateway,
) -> None:
    txn_id = (await _create(client))["transaction_id"]
    await _pay(client, db_session, gateway, txn_id)
    await client.post(f"/escrow/transactions/{txn_id}/dispute", json={"reason": "damaged"})

    resp = await client.get(f"/escrow/transactions/{txn_id}/audit")
    assert resp.status_code == 200
    entries = resp.json()
    assert [e["action"] for e in entries] == ["created", "status_changed", "disputed"]
    assert entries[1]["from_status"] == "pending"
    assert entries[1]["to_status"] == "paid"
    assert entries[2]["metadata"] == {"dispute_reason": "damaged"}


@pytest.mark.asyncio
async def test_audit_trail_unknown_transaction(client: AsyncClient) -> None:
    resp = await client.get(f"/escrow/transactions/{uuid.uuid4()}/audit")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_checkout_returns_payment_link(client: AsyncClient, gateway: FakeGateway) -> None:
    txn_id = (await _create(client))["transaction_id"]
    resp = await client.post(
        f"/escrow/transactions/{txn_id}/checkout",
        json={
            "buyer_email": "Ada@Example.com",
            "buyer_name": "Ada",
            "item_title": "Mountain bicycle",
            "seller_name": "Tunde",
        },
    )
    assert resp.status_code == 200
    assert resp.json() == {
        "transaction_id": txn_id,
        "amount": "10000.00",
        "currency": "NGN",
        "payment_link": gateway.payment_link,
    }
    sent = gateway.initialized[0]
    assert sent.transaction_id == txn_id
    assert sent.buyer_email == "ada@example.com"


@pytest.mark.asyncio
async def test_checkout_only_for_pending(client: AsyncClient, gateway: FakeGateway) -> None:
    txn_id = (await _create(client))["transaction_id"]
    await _set_status(client, txn_id, "cancelled")
    resp = await client.post(
        f"/escrow/transactions/{txn_id}/checkout",
        json={"buyer_email": "a@b.co", "buyer_name": "A", "item_title": "X", "seller_name": "S"},
    )
    assert resp.status_code == 409
    assert gateway.initialized == []


@pytest.mark.asyncio
async def test_checkout_invalid_email(client: AsyncClient) -> None:
    txn_id = (await _create(client))["transaction_id"]
    resp = await client.post(
        f"/escrow/transactions/{txn_id}/checkout",
        json={"buyer_email": "nope", "buyer_name": "A", "item_title": "X", "seller_name": "S"},
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_checkout_gateway_failure_is_502(client: AsyncClient, gateway: FakeGateway) -> None:
    txn_id = (await _create(client))["transaction_id"]
    gateway.error = GatewayError("Failed to initialize payment")
    resp = await client.post(
        f"/escrow/transactions/{txn_id}/checkout",
        json={"buyer_email": "a@b.co", "buyer_name": "A", "item_title": "X", "seller_name": "S"},
    )
    assert resp.status_code == 502


@pytest.mark.asyncio
async def test_purchases_and_sales_listing(client: AsyncClient) -> None:
    for i in range(3):
        await _create(client, item_id=f"item-{i}")
    await _create(client, buyer_id="other-buyer", item_id="item-x")

    resp = await client.get(f"/escrow/users/{BUYER_ID}/purchases", params={"limit": 2})
    assert resp.status_code == 200
    assert len(resp.json()) == 2

    resp = await client.get(f"/escrow/users/{BUYER_ID}/purchases", params={"limit": 2, "offset": 2})
    assert len(resp.json()) == 1

    resp = await client.get(f"/escrow/sellers/{SELLER_ID}/sales")
    assert len(resp.json()) == 4


@pytest.mark.asyncio
async def test_listing_rejects_bad_pagination(client: AsyncClient) -> None:
    resp = await client.get(f"/escrow/users/{BUYER_ID}/purchases", params={"offset": -1})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_stats(client: AsyncClient) -> None:
    first = await _create(client, item_id="a", amount="1000.00")
    await _create(client, item_id="b", amount="250.50")
    await client.post(f"/escrow/transactions/{first['transaction_id']}/dispute", json={"reason": "late"})

    resp = await client.get("/escrow/stats")
    assert resp.status_code == 200
    body = resp.json()
    assert body["total_transactions"] == 2
    assert body["total_volume"] == "1250.50"
    assert body["total_commission"] == "25.01"
    assert body["pending_transactions"] == 1
    assert body["disputed_transactions"] == 1
    assert body["completed_transactions"] == 0
    assert body["by_status"]["disputed"] == 1


@pytest.mark.asyncio
async def test_item_availability(client: AsyncClient, db_session: AsyncSession) -> None:
    await add_item(db_session, item_id="lamp")
    resp = await client.get("/items/lamp/availability")
    assert resp.status_code == 200
    assert resp.json() == {"item_id": "lamp", "available": True}

    resp = await client.get("/items/missing/availability")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_status_update_payload_with_milestone(
    client: AsyncClient, db_session: AsyncSession, gateway: FakeGateway,
) -> None:
    txn_id = (await _create(client))["transaction_id"]
    await _pay(client, db_session, gateway, txn_id)
    resp = await _set_status(client, txn_id, "shipped", shipped_at="2026-05-01T09:00:00Z")
    assert resp.status_code == 200
    assert resp.json()["shipped_at"].startswith("2026-05-01T09:00:00")
    assert resp.json()["status"] == EscrowStatus.SHIPPED.value


@pytest.mark.asyncio
async def test_status_endpoint_cannot_mark_paid(
    client: AsyncClient, gateway: FakeGateway,
) -> None:
    txn_id = (await _create(client))["transaction_id"]

    resp = await _set_status(client, txn_id, "paid", payment_reference="FLW-forged")

    assert resp.status_code == 409
    assert "payment verification" in resp.json()["detail"]
    body = (await client.get(f"/escrow/transactions/{txn_id}")).json()
    assert body["status"] == "pending"
    assert body["paid_at"] is None
    assert body["payment_reference"] is None
    assert body["version"] == 1
    assert gateway.verify_calls == []
