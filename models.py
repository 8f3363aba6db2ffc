import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class ExpenseCategory(str, Enum):
    rent = "Rent"
    food = "Food"
    travel = "Travel"
    groceries = "Groceries"
    shopping = "Shopping"
    others = "Others"


EXPENSE_CATEGORY_ENUM = SAEnum(
    ExpenseCategory,
    name="expensecategory",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


def new_id() -> str:
    return str(uuid.uuid4())


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(254), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="user", cascade="all, delete-orphan"
    )
    budgets: Mapped[list["Budget"]] = relationship(
        "Budget", back_populates="user", cascade="all, delete-orphan"
    )

    __mapper_args__ = {"version_id_col": version}


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="transactions")

    __table_args__ = (
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_type_date", "user_id", "type", "date"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )

    __mapper_args__ = {"version_id_col": version}


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    total_budget_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    spent_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining_budget_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    user: Mapped["User"] = relationship("User", back_populates="budgets")
    categories: Mapped[list["BudgetCategory"]] = relationship(
        "BudgetCategory",
        back_populates="budget",
        cascade="all, delete-orphan",
        order_by="BudgetCategory.position",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "month", "year", name="uq_budget_user_month_year"),
        CheckConstraint("month BETWEEN 1 AND 12", name="ck_budget_month_range"),
        CheckConstraint("total_budget_cents >= 0", name="ck_budget_total_positive"),
        CheckConstraint("spent_amount_cents >= 0", name="ck_budget_spent_positive"),
    )

    def refresh_remaining(self) -> None:
        self.remaining_budget_cents = (self.total_budget_cents or 0) - (
            self.spent_amount_cents or 0
        )


class BudgetCategory(Base):
    """Per-category allocation inside a budget. Stored as given, not enforced."""

    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    budget_id: Mapped[str] = mapped_column(
        ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    name: Mapped[ExpenseCategory] = mapped_column(EXPENSE_CATEGORY_ENUM, nullable=False)
    budget_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    budget: Mapped["Budget"] = relationship("Budget", back_populates="categories")

    __table_args__ = (
        CheckConstraint(
            "budget_amount_cents >= 0", name="ck_budget_category_amount_positive"
        ),
        CheckConstraint(
            "spent_amount_cents >= 0", name="ck_budget_category_spent_positive"
        ),
    )


@event.listens_for(Budget, "before_insert")
@event.listens_for(Budget, "before_update")
def _budget_remaining(_mapper, _connection, target: Budget) -> None:
    target.refresh_remaining()
