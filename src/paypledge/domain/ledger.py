"""Escrow ledger arithmetic.

The ledger is the append-only list of LedgerEntry records inside an
EscrowAccount document. These functions are the only code allowed to append
to it or change ``balance``, and they keep one invariant:

    balance == sum(deposits) - sum(releases) - sum(refunds) - sum(fees) >= 0

PARTIAL_RELEASE and PARTIAL_REFUND count as releases and refunds. DISPUTE
entries mark the amount under dispute and do not move money.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal

from paypledge.domain.enums import LedgerEntryType
from paypledge.domain.exceptions import (
    InsufficientFundsError,
    LedgerIntegrityError,
    ValidationError,
)
from paypledge.domain.models import ZERO, EscrowAccount, LedgerEntry

_CREDITS = frozenset({LedgerEntryType.DEPOSIT})
_DEBITS = frozenset(
    {
        LedgerEntryType.RELEASE,
        LedgerEntryType.PARTIAL_RELEASE,
        LedgerEntryType.REFUND,
        LedgerEntryType.PARTIAL_REFUND,
        LedgerEntryType.FEE,
    }
)


@dataclass(frozen=True)
class LedgerTotals:
    """Per-category sums over a ledger."""

    deposits: Decimal = ZERO
    releases: Decimal = ZERO
    refunds: Decimal = ZERO
    fees: Decimal = ZERO
    disputed: Decimal = ZERO

    @property
    def balance(self) -> Decimal:
        return self.deposits - self.releases - self.refunds - self.fees


def signed_amount(entry: LedgerEntry) -> Decimal:
    """Effect of one entry on the balance."""
    if entry.type in _CREDITS:
        return entry.amount
    if entry.type in _DEBITS:
        return -entry.amount
    return ZERO


def totals(entries: list[LedgerEntry]) -> LedgerTotals:
    deposits = releases = refunds = fees = disputed = ZERO
    for entry in entries:
        if entry.type == LedgerEntryType.DEPOSIT:
            deposits += entry.amount
        elif entry.type in (LedgerEntryType.RELEASE, LedgerEntryType.PARTIAL_RELEASE):
            releases += entry.amount
        elif entry.type in (LedgerEntryType.REFUND, LedgerEntryType.PARTIAL_REFUND):
            refunds += entry.amount
        elif entry.type == LedgerEntryType.FEE:
            fees += entry.amount
        else:
            disputed += entry.amount
    return LedgerTotals(deposits, releases, refunds, fees, disputed)


def compute_balance(entries: list[LedgerEntry]) -> Decimal:
    return sum((signed_amount(e) for e in entries), ZERO)


def find_entry(
    account: EscrowAccount, entry_type: LedgerEntryType, external_reference: str
) -> LedgerEntry | None:
    """Return the entry already recorded for ``external_reference``, if any."""
    for entry in account.ledger:
        if entry.type == entry_type and entry.external_reference == external_reference:
            return entry
    return None


def append_entry(
    account: EscrowAccount,
    entry_type: LedgerEntryType,
    amount: Decimal,
    description: str = "",
    external_reference: str | None = None,
    now: datetime | None = None,
) -> LedgerEntry:
    """Append one entry and update the balance in place.

    Appending is idempotent on (type, external_reference): a second call with
    the same pair returns the existing entry and leaves the account untouched.

    Raises:
        ValidationError: If ``amount`` is not positive.
        InsufficientFundsError: If the entry would take the balance below zero.
    """
    if amount <= 0:
        raise ValidationError(f"Ledger amount must be positive, got {amount}", "amount")

    if external_reference is not None:
        existing = find_entry(account, entry_type, external_reference)
        if existing is not None:
            return existing

    entry = LedgerEntry(
        type=entry_type,
        amount=amount,
        description=description,
        timestamp=now or datetime.now(UTC),
        external_reference=external_reference,
    )
    new_balance = account.balance + signed_amount(entry)
    if new_balance < 0:
        raise InsufficientFundsError(required=str(amount), available=str(account.balance))

    account.ledger.append(entry)
    account.balance = new_balance
    return entry


def assert_balanced(account: EscrowAccount) -> None:
    """Raise LedgerIntegrityError if ``balance`` disagrees with the ledger."""
    computed = compute_balance(account.ledger)
    if computed != account.balance or computed < 0:
        raise LedgerIntegrityError(account.id, str(account.balance), str(computed))


def can_release(account: EscrowAccount) -> bool:
    """True iff every release condition is met and the balance is positive. Pure."""
    return account.balance > 0 and all(c.is_met for c in account.release_conditions)


def unmet_conditions(account: EscrowAccount) -> list[str]:
    return [c.description for c in account.release_conditions if not c.is_met]
