from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
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

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserId(str, Enum):
    owner = "owner"
    partner = "partner"


USER_ID_ENUM = SAEnum(
    UserId,
    name="userid",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[UserId] = mapped_column(USER_ID_ENUM, primary_key=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_owner: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="payer"
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # lower-cased name, backs the case-insensitive uniqueness rule
    name_key: Mapped[str] = mapped_column(String(100), nullable=False)
    default_budget_cents: Mapped[Optional[int]] = mapped_column(Integer)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )
    budget_overrides: Mapped[list["BudgetOverride"]] = relationship(
        "BudgetOverride", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("name_key", name="uq_category_name_key"),
        CheckConstraint(
            "default_budget_cents IS NULL OR default_budget_cents >= 0",
            name="ck_category_default_budget_positive",
        ),
    )


class BudgetOverride(Base, TimestampMixin):
    __tablename__ = "budget_overrides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="budget_overrides"
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_override_amount_positive"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_override_month"),
        UniqueConstraint(
            "category_id",
            "year",
            "month",
            name="uq_budget_override_category_month",
        ),
        Index("ix_budget_override_month", "year", "month"),
    )

    @property
    def month_key(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    payer_id: Mapped[UserId] = mapped_column(
        USER_ID_ENUM, ForeignKey("users.id"), nullable=False
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )
    payer: Mapped["User"] = relationship("User", back_populates="transactions")

    __table_args__ = (
        Index("ix_transactions_occurred_at", "occurred_at"),
        Index("ix_transactions_category_occurred", "category_id", "occurred_at"),
        Index("ix_transactions_payer_occurred", "payer_id", "occurred_at"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
