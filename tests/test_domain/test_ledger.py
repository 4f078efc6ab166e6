"""Tests for the escrow ledger arithmetic."""

from __future__ import annotations

import random
from decimal import Decimal

import pydantic
import pytest

from paypledge.domain import ledger
from paypledge.domain.enums import LedgerEntryType
from paypledge.domain.exceptions import (
    InsufficientFundsError,
    LedgerIntegrityError,
    ValidationError,
)
from paypledge.domain.models import EscrowAccount, LedgerEntry, ReleaseCondition


def _account(**overrides: object) -> EscrowAccount:
    fields: dict[str, object] = {"transaction_id": "tx-1", "target_amount": Decimal("100.00")}
    fields.update(overrides)
    return EscrowAccount(**fields)


class TestAppendEntry:
    def test_deposit_and_fee_update_balance(self) -> None:
        account = _account()
        ledger.append_entry(account, LedgerEntryType.DEPOSIT, Decimal("105.40"), "", "pay-1")
        ledger.append_entry(account, LedgerEntryType.FEE, Decimal("5.40"), "", "pay-1")
        assert account.balance == Decimal("100.00")
        assert len(account.ledger) == 2

    def test_same_reference_is_deduplicated(self) -> None:
        account = _account()
        first = ledger.append_entry(account, LedgerEntryType.DEPOSIT, Decimal("50"), "", "pay-1")
        second = ledger.append_entry(account, LedgerEntryType.DEPOSIT, Decimal("50"), "", "pay-1")
        assert first is second
        assert account.balance == Decimal("50")
        assert len(account.ledger) == 1

    def test_same_reference_different_type_is_separate(self) -> None:
        account = _account()
        ledger.append_entry(account, LedgerEntryType.DEPOSIT, Decimal("50"), "", "pay-1")
        ledger.append_entry(account, LedgerEntryType.FEE, Decimal("2"), "", "pay-1")
        assert len(account.ledger) == 2

    def test_overdraw_is_rejected_without_side_effects(self) -> None:
        account = _account()
        ledger.append_entry(account, LedgerEntryType.DEPOSIT, Decimal("10"))
        with pytest.raises(InsufficientFundsError) as exc_info:
            ledger.append_entry(account, LedgerEntryType.RELEASE, Decimal("10.01"))
        assert exc_info.value.available == "10"
        assert account.balance == Decimal("10")
        assert len(account.ledger) == 1

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-1")])
    def test_non_positive_amount_rejected(self, amount: Decimal) -> None:
        with pytest.raises(ValidationError):
            ledger.append_entry(_account(), LedgerEntryType.DEPOSIT, amount)

    def test_dispute_marker_does_not_move_money(self) -> None:
        account = _account()
        ledger.append_entry(account, LedgerEntryType.DEPOSIT, Decimal("80"))
        ledger.append_entry(account, LedgerEntryType.DISPUTE, Decimal("80"))
        assert account.balance == Decimal("80")
        assert ledger.totals(account.ledger).disputed == Decimal("80")


class TestBalanceIdentity:
    def test_totals_match_balance(self) -> None:
        account = _account()
        ledger.append_entry(account, LedgerEntryType.DEPOSIT, Decimal("100"))
        ledger.append_entry(account, LedgerEntryType.FEE, Decimal("5.40"))
        ledger.append_entry(account, LedgerEntryType.PARTIAL_RELEASE, Decimal("30"))
        ledger.append_entry(account, LedgerEntryType.PARTIAL_REFUND, Decimal("4.60"))
        totals = ledger.totals(account.ledger)
        assert totals.releases == Decimal("30")
        assert totals.refunds == Decimal("4.60")
        assert totals.balance == account.balance == Decimal("60.00")
        ledger.assert_balanced(account)

    def test_random_sequences_never_break_the_identity(self) -> None:
        rng = random.Random(20240601)
        for _ in range(50):
            account = _account()
            for _ in range(30):
                entry_type = rng.choice(list(LedgerEntryType))
                amount = Decimal(rng.randint(1, 5000)) / 100
                try:
                    ledger.append_entry(account, entry_type, amount)
                except InsufficientFundsError:
                    pass
                assert account.balance >= 0
                assert account.balance == ledger.compute_balance(account.ledger)

    def test_tampered_balance_detected(self) -> None:
        account = _account()
        ledger.append_entry(account, LedgerEntryType.DEPOSIT, Decimal("10"))
        account.balance = Decimal("11")
        with pytest.raises(LedgerIntegrityError):
            ledger.assert_balanced(account)

    def test_entries_are_frozen(self) -> None:
        entry = LedgerEntry(type=LedgerEntryType.DEPOSIT, amount=Decimal("1"))
        with pytest.raises(pydantic.ValidationError):
            entry.amount = Decimal("2")  # type: ignore[misc]


class TestCanRelease:
    def test_requires_all_conditions_met(self) -> None:
        account = _account(
            balance=Decimal("0"),
            release_conditions=[
                ReleaseCondition(description="photo", is_met=True),
                ReleaseCondition(description="signature"),
            ],
        )
        ledger.append_entry(account, LedgerEntryType.DEPOSIT, Decimal("100"))
        assert not ledger.can_release(account)
        assert ledger.unmet_conditions(account) == ["signature"]

        account.release_conditions[1].is_met = True
        assert ledger.can_release(account)

    def test_requires_positive_balance(self) -> None:
        account = _account(release_conditions=[ReleaseCondition(description="x", is_met=True)])
        assert not ledger.can_release(account)

    def test_is_pure(self) -> None:
        account = _account(release_conditions=[ReleaseCondition(description="x", is_met=True)])
        ledger.append_entry(account, LedgerEntryType.DEPOSIT, Decimal("1"))
        before = account.model_dump()
        ledger.can_release(account)
        assert account.model_dump() == before
