"""Payment gateway client.

Covers only what the escrow flow needs from Flutterwave v3: verifying a
charge and initialising a hosted checkout.
See: https://developer.flutterwave.com/docs
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Protocol
from urllib.parse import quote

import httpx

from yrdly_escrow.config import settings
from yrdly_escrow.errors import GatewayError

logger = logging.getLogger(__name__)


@dataclass
class PaymentVerificationResult:
    """Outcome of verifying a charge with the gateway."""

    success: bool
    transaction_reference: str | None = None  # our transaction id (tx_ref)
    amount: Decimal | None = None
    currency: str | None = None
    status: str | None = None
    gateway_reference: str | None = None
    error: str | None = None


@dataclass
class PaymentInitiation:
    transaction_id: str
    amount: Decimal
    currency: str
    buyer_email: str
    buyer_name: str
    item_title: str
    seller_name: str


class PaymentGateway(Protocol):
    async def verify_payment(self, reference: str) -> PaymentVerificationResult: ...

    async def initialize_payment(self, data: PaymentInitiation) -> str: ...


class FlutterwaveClient:
    """Flutterwave v3 REST client with a bounded per-request timeout."""

    def __init__(
        self,
        secret_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.secret_key = settings.flutterwave_secret_key if secret_key is None else secret_key
        self.base_url = (base_url or settings.flutterwave_api_url).rstrip("/")
        self.timeout = settings.payment_gateway_timeout_seconds if timeout is None else timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        if not self.secret_key:
            raise GatewayError("Payment gateway is not configured on this server")
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/json",
            },
        )

    async def _request(self, method: str, path: str, action: str, **kwargs) -> httpx.Response:  # type: ignore[no-untyped-def]
        async with self._client() as client:
            try:
                return await client.request(method, path, **kwargs)
            except httpx.TimeoutException:
                logger.error("Flutterwave timed out during %s", action)
                raise GatewayError(f"Payment {action} timed out, please try again")
            except httpx.RequestError as e:
                logger.error("Flutterwave request failed during %s: %s", action, e)
                raise GatewayError("Failed to reach payment gateway")

    async def verify_payment(self, reference: str) -> PaymentVerificationResult:
        """Verify a charge by the gateway's transaction id.

        Declined or unknown charges come back as ``success=False``; only
        transport failures and gateway-side 5xx raise ``GatewayError``.
        """
        resp = await self._request(
            "GET", f"/transactions/{quote(reference, safe='')}/verify", "verification"
        )
        if resp.status_code >= 500:
            logger.error("Flutterwave verify returned %d: %s", resp.status_code, resp.text[:500])
            raise GatewayError(f"Payment gateway error (status {resp.status_code})")

        try:
            body = resp.json()
        except ValueError:
            body = {}
        data = body.get("data") or {}

        if body.get("status") != "success" or data.get("status") != "successful":
            return PaymentVerificationResult(
                success=False,
                status=data.get("status"),
                error=body.get("message") or "Payment verification failed",
            )

        try:
            amount = Decimal(str(data["amount"]))
        except (KeyError, InvalidOperation):
            logger.error("Flutterwave verify response missing amount for %s", reference)
            return PaymentVerificationResult(success=False, error="Payment verification failed")

        return PaymentVerificationResult(
            success=True,
            transaction_reference=data.get("tx_ref"),
            amount=amount,
            currency=data.get("currency"),
            status=data.get("status"),
            gateway_reference=data.get("flw_ref"),
        )

    async def initialize_payment(self, data: PaymentInitiation) -> str:
        """Create a hosted checkout and return its payment link."""
        payload = {
            "tx_ref": data.transaction_id,
            "amount": str(data.amount),
            "currency": data.currency,
            "redirect_url": f"{settings.payment_redirect_url}?tx_ref={data.transaction_id}",
            "payment_options": settings.payment_options,
            "customer": {"email": data.buyer_email, "name": data.buyer_name},
            "customizations": {
                "title": "Yrdly Marketplace",
                "description": f"Payment for {data.item_title} from {data.seller_name}",
                "logo": settings.checkout_logo_url,
            },
            "meta": {
                "transaction_id": data.transaction_id,
                "item_title": data.item_title,
                "seller_name": data.seller_name,
            },
        }
        resp = await self._request("POST", "/payments", "initialization", json=payload)

        try:
            body = resp.json()
        except ValueError:
            body = {}
        link = (body.get("data") or {}).get("link")
        if resp.status_code != 200 or body.get("status") != "success" or not link:
            logger.error(
                "Flutterwave payment init returned %d: %s", resp.status_code, resp.text[:500]
            )
            raise GatewayError(body.get("message") or "Failed to initialize payment")
        return link


def get_payment_gateway() -> PaymentGateway:
    return FlutterwaveClient()
