"""
Wallet models
- wallets: materialized balances, one per vendor / delivery partner
- wallet_transactions: append-only ledger; balances equal the fold of this log
- cashout_requests: withdrawal requests and their settlement state
"""
import enum
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Integer, ForeignKey, Enum as SQLEnum, UniqueConstraint
from sqlalchemy.orm import relationship

from core.database import Base


class WalletOwnerType(str, enum.Enum):
    VENDOR = "vendor"
    DELIVERY_BOY = "delivery_boy"


class TransactionType(str, enum.Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class BalanceBucket(str, enum.Enum):
    AVAILABLE = "available"
    PENDING = "pending"


class TransactionKind(str, enum.Enum):
    EARNING = "earning"
    COMMISSION = "commission"
    PENDING_RELEASE = "pending_release"
    CASHOUT_HOLD = "cashout_hold"
    CASHOUT_RELEASE = "cashout_release"
    ADJUSTMENT = "adjustment"


class CashoutStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    TRANSFERRED = "transferred"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


def _enum(enum_cls, name: str):
    return SQLEnum(enum_cls, name=name, native_enum=False, length=32,
                   values_callable=lambda e: [m.value for m in e])


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (UniqueConstraint("owner_uid", name="uq_wallet_owner"),)

    id = Column(String(36), primary_key=True)
    owner_uid = Column(String(128), index=True, nullable=False)
    owner_type = Column(_enum(WalletOwnerType, "wallet_owner_type"), nullable=False)

    # Written only by services.ledger.post_transaction
    available_balance_cents = Column(Integer, nullable=False, default=0)
    pending_balance_cents = Column(Integer, nullable=False, default=0)
    lifetime_earnings_cents = Column(Integer, nullable=False, default=0)
    total_withdrawn_cents = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    transactions = relationship("WalletTransaction", back_populates="wallet", order_by="WalletTransaction.id")

    def to_dict(self):
        return {
            "id": self.id,
            "owner_uid": self.owner_uid,
            "owner_type": self.owner_type.value if self.owner_type else None,
            "available_balance_cents": self.available_balance_cents,
            "pending_balance_cents": self.pending_balance_cents,
            "lifetime_earnings_cents": self.lifetime_earnings_cents,
            "total_withdrawn_cents": self.total_withdrawn_cents,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_id = Column(String(36), ForeignKey("wallets.id"), index=True, nullable=False)

    transaction_type = Column(_enum(TransactionType, "transaction_type"), nullable=False)
    bucket = Column(_enum(BalanceBucket, "balance_bucket"), nullable=False, default=BalanceBucket.AVAILABLE)
    kind = Column(_enum(TransactionKind, "transaction_kind"), nullable=False, default=TransactionKind.ADJUSTMENT)
    amount_cents = Column(Integer, nullable=False)
    balance_after_cents = Column(Integer, nullable=False)  # bucket balance right after this posting

    order_id = Column(String(36), index=True, nullable=True)
    cashout_id = Column(String(36), index=True, nullable=True)
    description = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True, nullable=False)

    wallet = relationship("Wallet", back_populates="transactions")

    def to_dict(self):
        return {
            "id": self.id,
            "wallet_id": self.wallet_id,
            "transaction_type": self.transaction_type.value,
            "bucket": self.bucket.value,
            "kind": self.kind.value,
            "amount_cents": self.amount_cents,
            "balance_after_cents": self.balance_after_cents,
            "order_id": self.order_id,
            "cashout_id": self.cashout_id,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class CashoutRequest(Base):
    __tablename__ = "cashout_requests"

    id = Column(String(36), primary_key=True)
    wallet_id = Column(String(36), ForeignKey("wallets.id"), index=True, nullable=False)
    requested_by = Column(String(128), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    status = Column(_enum(CashoutStatus, "cashout_status"), index=True, nullable=False, default=CashoutStatus.PENDING)

    rejection_reason = Column(Text, nullable=True)
    approved_by = Column(String(255), nullable=True)
    transaction_reference = Column(String(128), nullable=True)

    requested_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    approved_at = Column(DateTime, nullable=True)
    transferred_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "wallet_id": self.wallet_id,
            "amount_cents": self.amount_cents,
            "status": self.status.value if self.status else None,
            "rejection_reason": self.rejection_reason,
            "transaction_reference": self.transaction_reference,
            "requested_at": self.requested_at.isoformat() if self.requested_at else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "transferred_at": self.transferred_at.isoformat() if self.transferred_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
