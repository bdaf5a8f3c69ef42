from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BookingStatus(str, Enum):
    pending = "PENDING"
    booked = "BOOKED"


class TransactionSource(str, Enum):
    recent = "RECENT"
    historic = "HISTORIC"
    all = "ALL"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(200))

    accounts: Mapped[list["Account"]] = relationship(
        "Account", back_populates="user", cascade="all, delete-orphan"
    )


class Account(Base, TimestampMixin):
    """A bank account as reported by the provider, upserted by ``key``."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    account_number: Mapped[Optional[str]] = mapped_column(String(64))
    iban: Mapped[Optional[str]] = mapped_column(String(64))
    name: Mapped[Optional[str]] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(String(200))
    type: Mapped[Optional[str]] = mapped_column(String(64))
    product_type: Mapped[Optional[str]] = mapped_column(String(64))
    product_id: Mapped[Optional[str]] = mapped_column(String(64))
    description_code: Mapped[Optional[str]] = mapped_column(String(64))
    disposal_role: Mapped[Optional[str]] = mapped_column(String(64))
    balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2))
    available_balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(15, 2))
    currency_code: Mapped[Optional[str]] = mapped_column(String(3))
    # provider payloads kept verbatim
    owner: Mapped[Optional[Any]] = mapped_column(JSON)
    account_properties: Mapped[Optional[Any]] = mapped_column(JSON)
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    user: Mapped["User"] = relationship("User", back_populates="accounts")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    __table_args__ = (Index("ix_accounts_user", "user_id"),)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)

    sparebank1_id: Mapped[Optional[str]] = mapped_column(String(128))
    non_unique_id: Mapped[Optional[str]] = mapped_column(String(128))
    description: Mapped[Optional[str]] = mapped_column(Text)
    cleaned_description: Mapped[Optional[str]] = mapped_column(Text)
    remote_account_number: Mapped[Optional[str]] = mapped_column(String(64))
    remote_account_name: Mapped[Optional[str]] = mapped_column(String(200))
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    # milliseconds since the Unix epoch, as delivered by the provider
    date: Mapped[int] = mapped_column(BigInteger, nullable=False)
    type_code: Mapped[Optional[str]] = mapped_column(String(32))
    currency_code: Mapped[Optional[str]] = mapped_column(String(3))
    can_show_details: Mapped[Optional[bool]] = mapped_column(Boolean)
    source: Mapped[Optional[str]] = mapped_column(String(16))
    is_confidential: Mapped[Optional[bool]] = mapped_column(Boolean)
    booking_status: Mapped[Optional[str]] = mapped_column(String(16))
    account_name: Mapped[Optional[str]] = mapped_column(String(200))
    account_key: Mapped[Optional[str]] = mapped_column(String(128))
    account_currency: Mapped[Optional[str]] = mapped_column(String(3))
    is_from_currency_account: Mapped[Optional[bool]] = mapped_column(Boolean)
    kid_or_message: Mapped[Optional[str]] = mapped_column(Text)
    account_number: Mapped[Optional[Any]] = mapped_column(JSON)
    classification_input: Mapped[Optional[Any]] = mapped_column(JSON)
    merchant: Mapped[Optional[Any]] = mapped_column(JSON)
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index(
            "ix_transactions_user_natural_key",
            "user_id",
            "amount",
            "date",
            "description",
        ),
        Index("ix_transactions_account", "account_id"),
    )


class BudgetCategory(Base, TimestampMixin):
    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    icon: Mapped[Optional[str]] = mapped_column(String(16))
    color: Mapped[Optional[str]] = mapped_column(String(7))
    is_income: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("budget_categories.id"), nullable=False
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    budgeted_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    alert_percentage: Mapped[int] = mapped_column(Integer, default=80, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped["BudgetCategory"] = relationship("BudgetCategory")

    __table_args__ = (
        UniqueConstraint(
            "user_id", "category_id", "month", "year", name="uq_budget_user_category_month"
        ),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
        Index("ix_budget_user_month", "user_id", "year", "month"),
    )


class MonthlyBudgetGoal(Base, TimestampMixin):
    __tablename__ = "monthly_budget_goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    total_budget: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("user_id", "month", "year", name="uq_goal_user_month"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_goal_month_range"),
    )
