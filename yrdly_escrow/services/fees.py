"""Commission calculation and the public fee schedule.

The platform charges a single commission on every escrow sale:

- **Rate**: ``settings.commission_rate`` of the item price (2% by default).
- **Paid by**: the seller. The buyer pays exactly the listed price; the
  commission is withheld from the seller's payout.
- **Rounding**: half-up to the smallest currency unit (0.01), computed with
  ``Decimal`` so ``commission + seller_amount == amount`` always holds.

The commission is frozen onto each transaction when it is created.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from yrdly_escrow.config import settings

CENT = Decimal("0.01")


@dataclass
class FeeBreakdown:
    """Split of an item price between platform and seller."""
    amount: Decimal
    commission: Decimal
    seller_amount: Decimal
    total_amount: Decimal
    rate: Decimal

    def to_dict(self) -> dict:
        return {
            "amount": str(self.amount),
            "commission": str(self.commission),
            "seller_amount": str(self.seller_amount),
            "total_amount": str(self.total_amount),
            "rate": str(self.rate),
        }


def calculate_commission(amount: Decimal, rate: Decimal | None = None) -> FeeBreakdown:
    """Compute commission and seller proceeds for an item price.

    ``amount`` must already be validated as a positive two-decimal value.
    """
    if rate is None:
        rate = settings.commission_rate
    commission = (amount * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return FeeBreakdown(
        amount=amount,
        commission=commission,
        seller_amount=amount - commission,
        total_amount=amount,
        rate=rate,
    )


def get_fee_schedule() -> dict:
    """Return the current fee schedule for display to buyers and sellers."""
    example = calculate_commission(Decimal("10000.00"))
    return {
        "currency": settings.currency,
        "commission": {
            "rate_percent": str(settings.commission_rate * 100),
            "charged_to": "Seller (withheld from payout)",
            "charged_at": "Transaction creation (frozen for the life of the transaction)",
            "rounding": "Half-up to the nearest 0.01",
            "example": f"On a {settings.currency} {example.amount} sale the buyer pays "
                       f"{example.total_amount}, the platform keeps {example.commission} "
                       f"and the seller receives {example.seller_amount}",
        },
        "buyer_fees": "None. The buyer pays the listed item price.",
    }
