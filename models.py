from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config import PATTERN_KEY_COLUMN_LENGTH
from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class RebalanceDecision(str, Enum):
    apply = "APPLY"
    defer = "DEFER"
    wrong = "WRONG"


class LearningScope(str, Enum):
    none = "NONE"
    pattern = "PATTERN"
    category = "CATEGORY"


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


REBALANCE_DECISION_ENUM = SAEnum(
    RebalanceDecision,
    name="rebalancedecision",
    values_callable=_enum_values,
)

# Wildcard pattern key for category-wide learned rules.
CATEGORY_WIDE_PATTERN = "*"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account_ref"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    account: Mapped[Optional[str]] = mapped_column(String(100))
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    category: Mapped[Optional[str]] = mapped_column(String(100))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    memo: Mapped[Optional[str]] = mapped_column(Text)

    account_ref: Mapped[Optional["Account"]] = relationship(
        "Account", back_populates="transactions"
    )

    __table_args__ = (
        Index("ix_transactions_date", "date"),
        Index("ix_transactions_account_type_date", "account", "type", "date"),
        Index("ix_transactions_category_date", "category", "date"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account: Mapped[str] = mapped_column(String(100), nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "target_amount_cents >= 0", name="ck_budget_target_amount_positive"
        ),
        UniqueConstraint("account", "year", "month", name="uq_budget_account_month"),
        Index("ix_budget_month", "year", "month"),
    )


class RebalanceOverride(Base, TimestampMixin):
    __tablename__ = "rebalance_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    pattern_key: Mapped[str] = mapped_column(
        String(PATTERN_KEY_COLUMN_LENGTH), nullable=False
    )
    expected_account: Mapped[str] = mapped_column(String(100), nullable=False)
    confidence: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint(
            "category", "pattern_key", name="uq_rebalance_override_category_pattern"
        ),
        CheckConstraint("confidence > 0", name="ck_rebalance_override_confidence"),
    )


class RebalanceFeedback(Base):
    __tablename__ = "rebalance_feedback"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    transaction_id: Mapped[int] = mapped_column(Integer, nullable=False)
    original_account: Mapped[Optional[str]] = mapped_column(String(100))
    category: Mapped[Optional[str]] = mapped_column(String(100))
    memo: Mapped[Optional[str]] = mapped_column(Text)
    suggested_account: Mapped[Optional[str]] = mapped_column(String(100))
    decision: Mapped[RebalanceDecision] = mapped_column(
        REBALANCE_DECISION_ENUM, nullable=False
    )
    corrected_account: Mapped[Optional[str]] = mapped_column(String(100))
    is_settled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_rebalance_feedback_month_decision", "month", "decision"),
    )
