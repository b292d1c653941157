"""
Cashout settlement.

    pending -> approved -> transferred -> completed
    pending | approved -> rejected
    pending -> cancelled (by the requester)

The requested amount leaves the available balance as a hold the moment the
request is created. Reject and cancel put it back with a compensating credit;
complete only records the withdrawal.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from core.config import logger, CASHOUT_MIN_CENTS
from core.database import compare_and_set, unit_of_work
from core.errors import (
    BelowMinimumError, InvalidStateTransitionError, NotFoundError,
    UnverifiedBankAccountError, ValidationError,
)
from models.wallets import (
    BalanceBucket, CashoutRequest, CashoutStatus, TransactionKind, TransactionType, Wallet,
)
from services.ledger import get_wallet, post_transaction
from utils.verification import is_bank_account_verified


def get_cashout(db: Session, cashout_id: str) -> CashoutRequest:
    cashout = db.get(CashoutRequest, cashout_id)
    if not cashout:
        raise NotFoundError("Cashout request not found")
    return cashout


def _transition(db: Session, cashout: CashoutRequest, allowed_from: tuple, target: CashoutStatus, **values):
    """Move a cashout to `target` only if it is still in one of `allowed_from`."""
    if cashout.status not in allowed_from:
        logger.info(f"[cashouts] refused {cashout.status.value} -> {target.value} id={cashout.id}")
        raise InvalidStateTransitionError(
            f"Cannot move cashout from {cashout.status.value} to {target.value}"
        )
    values["status"] = target
    ok = compare_and_set(
        db, CashoutRequest,
        [CashoutRequest.id == cashout.id, CashoutRequest.status.in_(allowed_from)],
        values,
    )
    if not ok:
        db.refresh(cashout)
        raise InvalidStateTransitionError(
            f"Cashout was already moved to {cashout.status.value}"
        )
    db.refresh(cashout)
    return cashout


def _release_hold(db: Session, cashout: CashoutRequest, description: str):
    post_transaction(
        db, cashout.wallet_id, TransactionType.CREDIT, cashout.amount_cents, description,
        bucket=BalanceBucket.AVAILABLE, kind=TransactionKind.CASHOUT_RELEASE, cashout_id=cashout.id,
    )


def request_cashout(db: Session, wallet_id: str, requester_uid: str, amount_cents: int) -> CashoutRequest:
    if not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("Amount must be a positive whole number of paise")
    if amount_cents < CASHOUT_MIN_CENTS:
        raise BelowMinimumError(f"Minimum cashout amount is {CASHOUT_MIN_CENTS / 100:.2f}")

    with unit_of_work(db, "cashouts.request"):
        wallet = get_wallet(db, wallet_id)
        if wallet.owner_uid != requester_uid:
            raise NotFoundError("Wallet not found")
        if not is_bank_account_verified(db, wallet.owner_uid):
            raise UnverifiedBankAccountError("Add and verify a bank account before requesting a cashout")

        cashout = CashoutRequest(
            id=str(uuid.uuid4()),
            wallet_id=wallet_id,
            requested_by=requester_uid,
            amount_cents=amount_cents,
            status=CashoutStatus.PENDING,
        )
        db.add(cashout)
        db.flush()

        # An InsufficientBalanceError here rolls the request row back with it
        post_transaction(
            db, wallet_id, TransactionType.DEBIT, amount_cents,
            f"Cashout hold for request {cashout.id[:8]}",
            bucket=BalanceBucket.AVAILABLE, kind=TransactionKind.CASHOUT_HOLD, cashout_id=cashout.id,
        )
    logger.info(f"[cashouts] requested id={cashout.id} wallet={wallet_id} amount={amount_cents}")
    return cashout


def approve_cashout(db: Session, cashout_id: str, admin_id: str) -> CashoutRequest:
    with unit_of_work(db, "cashouts.approve"):
        cashout = get_cashout(db, cashout_id)
        _transition(db, cashout, (CashoutStatus.PENDING,), CashoutStatus.APPROVED,
                    approved_by=admin_id, approved_at=datetime.utcnow())
    logger.info(f"[cashouts] approved id={cashout_id} by={admin_id}")
    return cashout


def reject_cashout(db: Session, cashout_id: str, reason: str) -> CashoutRequest:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("A rejection reason is required")
    with unit_of_work(db, "cashouts.reject"):
        cashout = get_cashout(db, cashout_id)
        _transition(db, cashout, (CashoutStatus.PENDING, CashoutStatus.APPROVED), CashoutStatus.REJECTED,
                    rejection_reason=reason, rejected_at=datetime.utcnow())
        _release_hold(db, cashout, f"Cashout rejected: {reason}")
    logger.info(f"[cashouts] rejected id={cashout_id}")
    return cashout


def mark_transferred(db: Session, cashout_id: str, reference: str) -> CashoutRequest:
    reference = (reference or "").strip()
    if not reference:
        raise ValidationError("A transfer reference is required")
    with unit_of_work(db, "cashouts.transfer"):
        cashout = get_cashout(db, cashout_id)
        _transition(db, cashout, (CashoutStatus.APPROVED,), CashoutStatus.TRANSFERRED,
                    transaction_reference=reference, transferred_at=datetime.utcnow())
    logger.info(f"[cashouts] transferred id={cashout_id} ref={reference}")
    return cashout


def complete_cashout(db: Session, cashout_id: str) -> CashoutRequest:
    with unit_of_work(db, "cashouts.complete"):
        cashout = get_cashout(db, cashout_id)
        _transition(db, cashout, (CashoutStatus.TRANSFERRED,), CashoutStatus.COMPLETED,
                    completed_at=datetime.utcnow())
        # The money left available at request time; only the running total moves
        compare_and_set(
            db, Wallet, [Wallet.id == cashout.wallet_id],
            {Wallet.total_withdrawn_cents: Wallet.total_withdrawn_cents + cashout.amount_cents},
        )
    logger.info(f"[cashouts] completed id={cashout_id}")
    return cashout


def cancel_cashout(db: Session, cashout_id: str, requester_uid: str) -> CashoutRequest:
    with unit_of_work(db, "cashouts.cancel"):
        cashout = get_cashout(db, cashout_id)
        if cashout.requested_by != requester_uid:
            raise NotFoundError("Cashout request not found")
        _transition(db, cashout, (CashoutStatus.PENDING,), CashoutStatus.CANCELLED,
                    cancelled_at=datetime.utcnow())
        _release_hold(db, cashout, "Cashout cancelled")
    logger.info(f"[cashouts] cancelled id={cashout_id}")
    return cashout


def list_cashouts(db: Session, wallet_id: str, status: Optional[CashoutStatus] = None):
    q = db.query(CashoutRequest).filter(CashoutRequest.wallet_id == wallet_id)
    if status:
        q = q.filter(CashoutRequest.status == status)
    return q.order_by(CashoutRequest.requested_at.desc()).all()


def list_open_cashouts(db: Session):
    return (
        db.query(CashoutRequest)
        .filter(CashoutRequest.status.in_((CashoutStatus.PENDING, CashoutStatus.APPROVED, CashoutStatus.TRANSFERRED)))
        .order_by(CashoutRequest.requested_at.asc())
        .all()
    )
