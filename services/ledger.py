"""
Wallet ledger.

Balances on `wallets` are a materialized fold of `wallet_transactions`. The
only writer is post_transaction, which appends the log row and moves the
balance with one conditional UPDATE, so a debit can never take a bucket below
zero even with concurrent callers. Functions here join the caller's
transaction; wrap them in core.database.unit_of_work.
"""
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from core.config import logger, PLATFORM_COMMISSION_RATE
from core.database import compare_and_set
from core.errors import InsufficientBalanceError, NotFoundError, ValidationError
from models.orders import Order
from models.wallets import (
    BalanceBucket, TransactionKind, TransactionType, Wallet, WalletOwnerType, WalletTransaction,
)
from utils.pricing import platform_commission

EARNING_PERIODS = ("today", "week", "month")


def _balance_column(bucket: BalanceBucket):
    if bucket == BalanceBucket.PENDING:
        return Wallet.pending_balance_cents
    return Wallet.available_balance_cents


def get_wallet(db: Session, wallet_id: str) -> Wallet:
    wallet = db.get(Wallet, wallet_id)
    if not wallet:
        raise NotFoundError("Wallet not found")
    return wallet


def get_wallet_for_owner(db: Session, owner_uid: str) -> Optional[Wallet]:
    return db.query(Wallet).filter(Wallet.owner_uid == owner_uid).first()


def ensure_wallet(db: Session, owner_uid: str, owner_type: WalletOwnerType) -> Wallet:
    wallet = get_wallet_for_owner(db, owner_uid)
    if wallet:
        return wallet
    # A concurrent first posting hits uq_wallet_owner and the caller retries
    wallet = Wallet(id=str(uuid.uuid4()), owner_uid=owner_uid, owner_type=owner_type)
    db.add(wallet)
    db.flush()
    logger.info(f"[ledger] wallet opened owner={owner_uid} type={owner_type.value}")
    return wallet


def post_transaction(
    db: Session,
    wallet_id: str,
    transaction_type: TransactionType,
    amount_cents: int,
    description: str,
    bucket: BalanceBucket = BalanceBucket.AVAILABLE,
    kind: TransactionKind = TransactionKind.ADJUSTMENT,
    order_id: Optional[str] = None,
    cashout_id: Optional[str] = None,
) -> WalletTransaction:
    """Append one ledger row and move the bucket balance in the same transaction."""
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
        raise ValidationError("Amount must be a positive whole number of paise")

    col = _balance_column(bucket)
    if transaction_type == TransactionType.DEBIT:
        ok = compare_and_set(
            db, Wallet,
            [Wallet.id == wallet_id, col >= amount_cents],
            {col: col - amount_cents},
        )
    else:
        values = {col: col + amount_cents}
        if kind == TransactionKind.EARNING:
            values[Wallet.lifetime_earnings_cents] = Wallet.lifetime_earnings_cents + amount_cents
        ok = compare_and_set(db, Wallet, [Wallet.id == wallet_id], values)

    if not ok:
        wallet = db.get(Wallet, wallet_id)
        if not wallet:
            raise NotFoundError("Wallet not found")
        logger.info(f"[ledger] debit refused wallet={wallet_id} bucket={bucket.value} amount={amount_cents}")
        raise InsufficientBalanceError("Insufficient balance for this operation")

    wallet = db.get(Wallet, wallet_id)
    db.refresh(wallet)
    balance_after = wallet.pending_balance_cents if bucket == BalanceBucket.PENDING else wallet.available_balance_cents

    txn = WalletTransaction(
        wallet_id=wallet_id,
        transaction_type=transaction_type,
        bucket=bucket,
        kind=kind,
        amount_cents=amount_cents,
        balance_after_cents=balance_after,
        order_id=order_id,
        cashout_id=cashout_id,
        description=description,
    )
    db.add(txn)
    db.flush()
    return txn


def credit_courier_payout(db: Session, order: Order) -> WalletTransaction:
    """Courier earnings are spendable immediately."""
    wallet = ensure_wallet(db, order.delivery_boy_uid, WalletOwnerType.DELIVERY_BOY)
    return post_transaction(
        db, wallet.id, TransactionType.CREDIT, order.payout_cents,
        f"Delivery payout for order #{order.order_number}",
        bucket=BalanceBucket.AVAILABLE, kind=TransactionKind.EARNING, order_id=order.id,
    )


def item_commission(item) -> int:
    """Commission snapshotted on the line; lines without one pay the global rate."""
    if item.commission_cents is not None:
        return item.commission_cents
    rate = PLATFORM_COMMISSION_RATE if item.commission_rate is None else item.commission_rate
    return platform_commission(item.total_cents, rate)


def credit_vendor_earnings(db: Session, order: Order) -> Optional[WalletTransaction]:
    """Vendor earnings (net of per-item commission) wait in pending until an admin releases them."""
    commission = sum(item_commission(item) for item in order.items)
    net = order.subtotal_cents - commission
    if net <= 0:
        return None
    wallet = ensure_wallet(db, order.vendor_uid, WalletOwnerType.VENDOR)
    return post_transaction(
        db, wallet.id, TransactionType.CREDIT, net,
        f"Earnings for order #{order.order_number} (commission {commission / 100:.2f} deducted)",
        bucket=BalanceBucket.PENDING, kind=TransactionKind.EARNING, order_id=order.id,
    )


def release_pending(db: Session, wallet_id: str, amount_cents: Optional[int] = None) -> int:
    """Move pending earnings to available. Returns the amount moved."""
    wallet = get_wallet(db, wallet_id)
    amount = wallet.pending_balance_cents if amount_cents is None else amount_cents
    if amount <= 0:
        raise ValidationError("Nothing to release")
    post_transaction(db, wallet_id, TransactionType.DEBIT, amount, "Pending earnings released",
                     bucket=BalanceBucket.PENDING, kind=TransactionKind.PENDING_RELEASE)
    post_transaction(db, wallet_id, TransactionType.CREDIT, amount, "Pending earnings released",
                     bucket=BalanceBucket.AVAILABLE, kind=TransactionKind.PENDING_RELEASE)
    logger.info(f"[ledger] released pending wallet={wallet_id} amount={amount}")
    return amount


def fold_balances(db: Session, wallet_id: str) -> dict:
    """Recompute both buckets from the transaction log."""
    signed = case(
        (WalletTransaction.transaction_type == TransactionType.CREDIT, WalletTransaction.amount_cents),
        else_=-WalletTransaction.amount_cents,
    )
    rows = (
        db.query(WalletTransaction.bucket, func.coalesce(func.sum(signed), 0))
        .filter(WalletTransaction.wallet_id == wallet_id)
        .group_by(WalletTransaction.bucket)
        .all()
    )
    folded = {BalanceBucket.AVAILABLE.value: 0, BalanceBucket.PENDING.value: 0}
    for bucket, total in rows:
        key = bucket.value if hasattr(bucket, "value") else str(bucket)
        folded[key] = int(total or 0)
    return folded


def reconcile_wallet(db: Session, wallet_id: str) -> dict:
    wallet = get_wallet(db, wallet_id)
    db.refresh(wallet)
    folded = fold_balances(db, wallet_id)
    consistent = (
        folded["available"] == wallet.available_balance_cents
        and folded["pending"] == wallet.pending_balance_cents
    )
    if not consistent:
        logger.error(f"[ledger] wallet {wallet_id} drifted from its ledger: materialized="
                     f"{wallet.available_balance_cents}/{wallet.pending_balance_cents} folded={folded}")
    return {
        "wallet_id": wallet_id,
        "available_balance_cents": wallet.available_balance_cents,
        "pending_balance_cents": wallet.pending_balance_cents,
        "folded": folded,
        "consistent": consistent,
    }


def list_transactions(db: Session, wallet_id: str, limit: int = 50, offset: int = 0):
    return (
        db.query(WalletTransaction)
        .filter(WalletTransaction.wallet_id == wallet_id)
        .order_by(WalletTransaction.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def period_start(period: str, now: Optional[datetime] = None) -> datetime:
    now = now or datetime.utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "today":
        return midnight
    if period == "week":
        # Weeks start on Sunday
        return midnight - timedelta(days=(now.weekday() + 1) % 7)
    if period == "month":
        return midnight.replace(day=1)
    raise ValidationError(f"period must be one of {', '.join(EARNING_PERIODS)}")


def earnings_summary(db: Session, wallet_id: str, period: str, now: Optional[datetime] = None) -> dict:
    since = period_start(period, now)
    total, count = (
        db.query(func.coalesce(func.sum(WalletTransaction.amount_cents), 0), func.count(WalletTransaction.id))
        .filter(
            WalletTransaction.wallet_id == wallet_id,
            WalletTransaction.transaction_type == TransactionType.CREDIT,
            WalletTransaction.kind == TransactionKind.EARNING,
            WalletTransaction.order_id.isnot(None),
            WalletTransaction.created_at >= since,
        )
        .one()
    )
    return {"period": period, "since": since.isoformat(), "total_cents": int(total or 0), "orders": int(count or 0)}
