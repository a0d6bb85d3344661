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

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class BudgetStatus(str, Enum):
    ok = "ok"
    warning = "warning"
    over = "over"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class CategoryGroup(Base, TimestampMixin):
    __tablename__ = "category_groups"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_category_group_user_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    categories: Mapped[list["Category"]] = relationship(
        "Category", back_populates="group"
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    group_id: Mapped[Optional[int]] = mapped_column(ForeignKey("category_groups.id"))
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    group: Mapped[Optional["CategoryGroup"]] = relationship(
        "CategoryGroup", back_populates="categories"
    )
    subcategories: Mapped[list["Subcategory"]] = relationship(
        "Subcategory", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class Subcategory(Base, TimestampMixin):
    __tablename__ = "subcategories"
    __table_args__ = (
        UniqueConstraint("category_id", "name", name="uq_subcategory_category_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    category: Mapped["Category"] = relationship(
        "Category", back_populates="subcategories"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    household_id: Mapped[Optional[int]] = mapped_column(Integer)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    # Sign is not meaningful for budgets; spend uses the magnitude.
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    subcategory_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("subcategories.id")
    )
    note: Mapped[Optional[str]] = mapped_column(Text)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    category: Mapped[Optional["Category"]] = relationship("Category")
    subcategory: Mapped[Optional["Subcategory"]] = relationship("Subcategory")

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_type_date", "user_id", "type", "date"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    household_id: Mapped[Optional[int]] = mapped_column(Integer)
    period: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    subcategory_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("subcategories.id")
    )
    group_id: Mapped[Optional[int]] = mapped_column(ForeignKey("category_groups.id"))
    scope_key: Mapped[str] = mapped_column(String(80), nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped[Optional["Category"]] = relationship("Category")
    subcategory: Mapped[Optional["Subcategory"]] = relationship("Subcategory")
    group: Mapped[Optional["CategoryGroup"]] = relationship("CategoryGroup")
    category_links: Mapped[list["BudgetCategory"]] = relationship(
        "BudgetCategory",
        back_populates="budget",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        CheckConstraint(
            "(group_id IS NULL AND category_id IS NOT NULL)"
            " OR (group_id IS NOT NULL AND category_id IS NULL"
            " AND subcategory_id IS NULL)",
            name="ck_budget_single_scope",
        ),
        UniqueConstraint(
            "user_id", "period", "scope_key", name="uq_budget_user_period_scope"
        ),
        Index("ix_budget_user_period", "user_id", "period"),
        Index("ix_budget_user_recurring_period", "user_id", "is_recurring", "period"),
        Index("ix_budget_household_period", "household_id", "period"),
    )

    @property
    def is_grouped(self) -> bool:
        return self.group_id is not None

    @property
    def linked_category_ids(self) -> list[int]:
        return [link.category_id for link in self.category_links]


class BudgetCategory(Base):
    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[int] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    budget: Mapped["Budget"] = relationship("Budget", back_populates="category_links")
    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        UniqueConstraint("budget_id", "category_id", name="uq_budget_category_pair"),
    )
