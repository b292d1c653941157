from datetime import datetime

import pytest
from sqlalchemy import text

from core.database import unit_of_work
from core.errors import InsufficientBalanceError, NotFoundError, ValidationError
from models.orders import Order
from models.wallets import BalanceBucket, TransactionKind, TransactionType, Wallet, WalletOwnerType, WalletTransaction
from services import ledger


def _post(db, wallet_id, ttype, amount, bucket=BalanceBucket.AVAILABLE, kind=TransactionKind.ADJUSTMENT, **kw):
    with unit_of_work(db, "test"):
        return ledger.post_transaction(db, wallet_id, ttype, amount, "test posting", bucket=bucket, kind=kind, **kw)


def test_postings_carry_running_balance(db, factory):
    wallet_id = factory.wallet("rider-1")
    first = _post(db, wallet_id, TransactionType.CREDIT, 4000, kind=TransactionKind.EARNING, order_id="o-1")
    second = _post(db, wallet_id, TransactionType.CREDIT, 2500, kind=TransactionKind.EARNING, order_id="o-2")
    third = _post(db, wallet_id, TransactionType.DEBIT, 1500)

    assert [first.balance_after_cents, second.balance_after_cents, third.balance_after_cents] == [4000, 6500, 5000]
    wallet = db.get(Wallet, wallet_id)
    assert wallet.available_balance_cents == 5000
    assert wallet.lifetime_earnings_cents == 6500

    report = ledger.reconcile_wallet(db, wallet_id)
    assert report["consistent"] is True
    assert report["folded"] == {"available": 5000, "pending": 0}


def test_overdraw_is_refused_and_leaves_no_trace(db, factory):
    wallet_id = factory.wallet("rider-1", available_cents=3000)
    with pytest.raises(InsufficientBalanceError):
        _post(db, wallet_id, TransactionType.DEBIT, 3001)

    db.expire_all()
    assert db.get(Wallet, wallet_id).available_balance_cents == 3000
    assert db.query(WalletTransaction).filter(WalletTransaction.wallet_id == wallet_id).count() == 1

    # The exact balance can still go
    _post(db, wallet_id, TransactionType.DEBIT, 3000)
    assert db.get(Wallet, wallet_id).available_balance_cents == 0


def test_buckets_are_independent(db, factory):
    wallet_id = factory.wallet("vendor-1", WalletOwnerType.VENDOR, available_cents=1000, pending_cents=9000)
    with pytest.raises(InsufficientBalanceError):
        _post(db, wallet_id, TransactionType.DEBIT, 2000, bucket=BalanceBucket.AVAILABLE)
    _post(db, wallet_id, TransactionType.DEBIT, 2000, bucket=BalanceBucket.PENDING)

    wallet = db.get(Wallet, wallet_id)
    assert (wallet.available_balance_cents, wallet.pending_balance_cents) == (1000, 7000)


@pytest.mark.parametrize("amount", [0, -500, 12.5, True])
def test_amount_must_be_positive_integer(db, factory, amount):
    wallet_id = factory.wallet("rider-1", available_cents=1000)
    with pytest.raises(ValidationError):
        _post(db, wallet_id, TransactionType.CREDIT, amount)


def test_unknown_wallet(db):
    with pytest.raises(NotFoundError):
        _post(db, "missing", TransactionType.DEBIT, 100)
    with pytest.raises(NotFoundError):
        ledger.get_wallet(db, "missing")


def test_only_earnings_count_towards_lifetime(db, factory):
    wallet_id = factory.wallet("rider-1")
    _post(db, wallet_id, TransactionType.CREDIT, 700, kind=TransactionKind.ADJUSTMENT)
    _post(db, wallet_id, TransactionType.CREDIT, 300, kind=TransactionKind.CASHOUT_RELEASE)
    _post(db, wallet_id, TransactionType.CREDIT, 1200, kind=TransactionKind.EARNING)
    wallet = db.get(Wallet, wallet_id)
    assert wallet.available_balance_cents == 2200
    assert wallet.lifetime_earnings_cents == 1200


def test_ensure_wallet_is_one_per_owner(db):
    with unit_of_work(db, "test"):
        first = ledger.ensure_wallet(db, "vendor-1", WalletOwnerType.VENDOR)
        again = ledger.ensure_wallet(db, "vendor-1", WalletOwnerType.VENDOR)
    assert first.id == again.id
    assert db.query(Wallet).count() == 1


def test_release_pending_moves_between_buckets(db, factory):
    wallet_id = factory.wallet("vendor-1", WalletOwnerType.VENDOR, pending_cents=19900)
    with unit_of_work(db, "test"):
        moved = ledger.release_pending(db, wallet_id, 5000)
    assert moved == 5000
    with unit_of_work(db, "test"):
        assert ledger.release_pending(db, wallet_id) == 14900

    wallet = db.get(Wallet, wallet_id)
    assert (wallet.available_balance_cents, wallet.pending_balance_cents) == (19900, 0)
    assert wallet.lifetime_earnings_cents == 19900
    assert ledger.reconcile_wallet(db, wallet_id)["consistent"] is True

    with pytest.raises(ValidationError):
        with unit_of_work(db, "test"):
            ledger.release_pending(db, wallet_id)


def test_release_more_than_pending_is_refused(db, factory):
    wallet_id = factory.wallet("vendor-1", WalletOwnerType.VENDOR, pending_cents=1000)
    with pytest.raises(InsufficientBalanceError):
        with unit_of_work(db, "test"):
            ledger.release_pending(db, wallet_id, 1001)
    db.expire_all()
    wallet = db.get(Wallet, wallet_id)
    assert (wallet.available_balance_cents, wallet.pending_balance_cents) == (0, 1000)


def test_reconcile_detects_drift(db, factory, caplog):
    wallet_id = factory.wallet("rider-1", available_cents=5000)
    db.execute(text("UPDATE wallets SET available_balance_cents = 9999 WHERE id = :id"), {"id": wallet_id})
    db.commit()

    with caplog.at_level("ERROR", logger="quickbasket"):
        report = ledger.reconcile_wallet(db, wallet_id)
    assert report["consistent"] is False
    assert report["available_balance_cents"] == 9999
    assert report["folded"]["available"] == 5000
    assert "drifted" in caplog.text


def test_transactions_newest_first(db, factory):
    wallet_id = factory.wallet("rider-1", available_cents=1000)
    _post(db, wallet_id, TransactionType.DEBIT, 400)
    rows = ledger.list_transactions(db, wallet_id)
    assert [r.transaction_type for r in rows] == [TransactionType.DEBIT, TransactionType.CREDIT]
    assert rows[0].to_dict()["balance_after_cents"] == 600


@pytest.mark.parametrize("period, expected", [
    ("today", datetime(2026, 10, 21)),
    ("week", datetime(2026, 10, 18)),
    ("month", datetime(2026, 10, 1)),
])
def test_period_start(period, expected):
    # Wednesday afternoon
    now = datetime(2026, 10, 21, 15, 42, 7)
    assert ledger.period_start(period, now) == expected


def test_week_of_a_sunday_starts_that_day():
    assert ledger.period_start("week", datetime(2026, 10, 18, 9, 0)) == datetime(2026, 10, 18)


def test_unknown_period():
    with pytest.raises(ValidationError):
        ledger.period_start("year", datetime(2026, 10, 21))


def test_earnings_summary_counts_order_earnings_only(db, factory):
    wallet_id = factory.wallet("rider-1")
    _post(db, wallet_id, TransactionType.CREDIT, 2500, kind=TransactionKind.EARNING, order_id="o-1")
    _post(db, wallet_id, TransactionType.CREDIT, 3500, kind=TransactionKind.EARNING, order_id="o-2")
    _post(db, wallet_id, TransactionType.CREDIT, 900, kind=TransactionKind.ADJUSTMENT)
    _post(db, wallet_id, TransactionType.DEBIT, 1000)

    summary = ledger.earnings_summary(db, wallet_id, "today")
    assert summary["total_cents"] == 6000
    assert summary["orders"] == 2

    future = ledger.earnings_summary(db, wallet_id, "today", now=datetime(2099, 1, 1))
    assert future["total_cents"] == 0


def test_vendor_net_uses_each_items_commission(db, factory):
    order_id = factory.order({"v1": [(10000, 1), (20000, 1)]})
    order = db.get(Order, order_id)
    premium, staple = order.items
    premium.commission_rate = 0.05
    premium.commission_cents = 500
    db.commit()

    with unit_of_work(db, "test"):
        txn = ledger.credit_vendor_earnings(db, db.get(Order, order_id))
    # staple has no snapshot and pays the platform default of 0.5%
    assert txn.amount_cents == 30000 - 500 - 100
    assert txn.bucket == BalanceBucket.PENDING
    assert ledger.get_wallet_for_owner(db, "v1").pending_balance_cents == 29400
