"""Deposit fee calculation.

Fee structure:

1. **Processing fee** — a percentage of the deposited amount, keyed by the
   payment method type (card 2.9%, debit 2.5%, bank transfer 1.0%, PayPal 3.4%;
   anything else is charged the card rate).

2. **Platform fee** — a flat percentage of the deposited amount (2.5% unless
   configured otherwise).

Both fees are rounded independently with ROUND_HALF_UP to the currency's
minor unit, and ``total_fees`` is the sum of the two rounded values. The
ledger records exactly these numbers, so totals always reconcile.

Who pays is decided by the escrow's ``fees_paid_by`` policy; see
``FeeCalculator.allocate``.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from paypledge.domain.enums import FeesPaidBy, PaymentMethodType
from paypledge.domain.exceptions import ValidationError
from paypledge.domain.models import PaymentFees

PROCESSING_FEE_RATES: dict[PaymentMethodType, Decimal] = {
    PaymentMethodType.CREDIT_CARD: Decimal("0.029"),
    PaymentMethodType.DEBIT_CARD: Decimal("0.025"),
    PaymentMethodType.BANK_TRANSFER: Decimal("0.010"),
    PaymentMethodType.PAYPAL: Decimal("0.034"),
}
DEFAULT_PROCESSING_FEE_RATE = Decimal("0.029")
DEFAULT_PLATFORM_FEE_RATE = Decimal("0.025")

# Minor-unit exponent per ISO 4217 code. Unknown currencies use 2.
CURRENCY_MINOR_UNITS: dict[str, int] = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "CAD": 2,
    "AUD": 2,
    "JPY": 0,
    "KRW": 0,
}


def minor_unit(currency: str) -> Decimal:
    """Return the smallest representable amount for ``currency`` (e.g. 0.01)."""
    exponent = CURRENCY_MINOR_UNITS.get(currency.upper(), 2)
    return Decimal(1).scaleb(-exponent)


def round_money(amount: Decimal, currency: str = "USD") -> Decimal:
    """Round half-up to the currency's minor unit."""
    return amount.quantize(minor_unit(currency), rounding=ROUND_HALF_UP)


class FeeCalculator:
    """Pure fee function: amount x method type -> fee breakdown."""

    def __init__(
        self,
        platform_fee_rate: Decimal = DEFAULT_PLATFORM_FEE_RATE,
        processing_fee_rates: dict[PaymentMethodType, Decimal] | None = None,
    ) -> None:
        self._platform_fee_rate = platform_fee_rate
        self._processing_fee_rates = processing_fee_rates or PROCESSING_FEE_RATES

    @property
    def platform_fee_rate(self) -> Decimal:
        return self._platform_fee_rate

    def processing_rate(self, method_type: PaymentMethodType) -> Decimal:
        return self._processing_fee_rates.get(method_type, DEFAULT_PROCESSING_FEE_RATE)

    def calculate(
        self,
        amount: Decimal,
        method_type: PaymentMethodType,
        currency: str = "USD",
    ) -> PaymentFees:
        """Compute processing and platform fees for a deposit of ``amount``.

        Raises:
            ValidationError: If ``amount`` is not positive.
        """
        if amount <= 0:
            raise ValidationError(f"Fee base amount must be positive, got {amount}", "amount")

        processing_fee = round_money(amount * self.processing_rate(method_type), currency)
        platform_fee = round_money(amount * self._platform_fee_rate, currency)
        total_fees = processing_fee + platform_fee

        return PaymentFees(
            processing_fee=processing_fee,
            platform_fee=platform_fee,
            total_fees=total_fees,
            breakdown={"processing": processing_fee, "platform": platform_fee},
        )

    def allocate(
        self,
        fees: PaymentFees,
        fees_paid_by: FeesPaidBy,
        currency: str = "USD",
    ) -> PaymentFees:
        """Split ``fees`` between buyer and seller according to policy.

        The buyer share is added on top of the gateway charge; the seller share
        is taken out of the escrow balance. For SPLIT the buyer carries the
        half rounded half-up and the seller carries the remainder.
        """
        total = fees.total_fees
        if fees_paid_by == FeesPaidBy.BUYER:
            buyer_share = total
        elif fees_paid_by == FeesPaidBy.SELLER:
            buyer_share = Decimal("0")
        else:
            buyer_share = round_money(total / 2, currency)
        return fees.model_copy(
            update={"buyer_share": buyer_share, "seller_share": total - buyer_share}
        )
