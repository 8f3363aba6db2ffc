from __future__ import annotations

import logging
import math
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterator, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from errors import Conflict, InsufficientBalance, InvalidInput, NotFound
from models import (
    Budget,
    BudgetCategory,
    ExpenseCategory,
    Transaction,
    TransactionType,
    User,
)
from money import positive_cents, to_cents
from periods import (
    MonthKey,
    current_month,
    month_period,
    normalize_timestamp,
    now_local,
    validate_month,
)
from reconciliation import (
    balance_after_adjustment,
    balance_after_create,
    balance_after_delete,
    balance_after_update,
)
from schemas import (
    BalanceAdjustmentIn,
    BudgetCategoryIn,
    BudgetIn,
    LoginIn,
    TransactionIn,
    TransactionUpdateIn,
    UserIn,
    UserUpdateIn,
)
from security import hash_password, verify_password


logger = logging.getLogger(__name__)

_EXPENSE_CATEGORIES = {member.value.lower(): member for member in ExpenseCategory}


def parse_id(value: object, label: str) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except ValueError as exc:
        raise InvalidInput(f"Invalid {label} ID") from exc


def validate_category(txn_type: TransactionType, category: Optional[str]) -> str:
    name = (category or "").strip()
    if not name:
        raise InvalidInput("Category is required")
    if txn_type == TransactionType.expense:
        member = _EXPENSE_CATEGORIES.get(name.lower())
        if member is None:
            allowed = ", ".join(m.value for m in ExpenseCategory)
            raise InvalidInput(f"Expense category must be one of: {allowed}")
        return member.value
    return name


@contextmanager
def write_guard(
    session: Session, integrity_message: str = "Conflicting write"
) -> Iterator[None]:
    """Commit everything done in the block, or nothing.

    A stale optimistic version (another request changed the same user first)
    and a unique-constraint violation both surface as ``Conflict``.
    """
    try:
        yield
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        logger.warning(f"write_conflict: reason=stale_version error={exc}")
        raise Conflict("Account was modified concurrently, please retry") from exc
    except IntegrityError as exc:
        session.rollback()
        logger.warning(f"write_conflict: reason=integrity message={integrity_message}")
        raise Conflict(integrity_message) from exc
    except Exception:
        session.rollback()
        raise


def load_user(session: Session, user_id: str, *, for_update: bool = False) -> User:
    stmt = select(User).where(User.id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    user = session.scalar(stmt)
    if not user:
        raise NotFound("User not found")
    return user


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass
class TransactionPage:
    items: list[Transaction]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit)


@dataclass
class TransactionResult:
    transaction: Transaction
    balance_cents: int


@dataclass
class TransactionStats:
    income_cents: int = 0
    expense_cents: int = 0
    balance_cents: int = 0
    income_count: int = 0
    expense_count: int = 0

    @property
    def total_count(self) -> int:
        return self.income_count + self.expense_count


@dataclass
class CategorySpend:
    category: str
    total_cents: int
    count: int


@dataclass
class BudgetStats:
    budget: Budget
    percentage_used: float
    breakdown: list[CategorySpend] = field(default_factory=list)


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: str) -> User:
        return load_user(self.session, parse_id(user_id, "user"))

    def _by_email(self, email: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(User.email == email.strip().lower())
        )

    def create(self, data: UserIn) -> User:
        email = data.email.strip().lower()
        if self._by_email(email):
            raise Conflict("User already exists")
        user = User(
            name=data.name.strip(),
            email=email,
            password_hash=hash_password(data.password),
            balance_cents=0,
        )
        with write_guard(self.session, "User already exists"):
            self.session.add(user)
        logger.info(f"user_created: id={user.id}")
        return user

    def authenticate(self, data: LoginIn) -> User:
        user = self._by_email(data.email)
        if not user or not verify_password(data.password, user.password_hash):
            raise InvalidInput("Invalid credentials")
        return user

    def update_profile(self, user_id: str, data: UserUpdateIn) -> User:
        user = self.get(user_id)
        if not verify_password(data.password, user.password_hash):
            raise InvalidInput("Invalid current password")
        if data.email:
            email = data.email.strip().lower()
            other = self._by_email(email)
            if other and other.id != user.id:
                raise Conflict("Email already in use")
        with write_guard(self.session, "Email already in use"):
            if data.name:
                user.name = data.name.strip()
            if data.email:
                user.email = data.email.strip().lower()
            if data.new_password:
                user.password_hash = hash_password(data.new_password)
        logger.info(f"user_updated: id={user.id}")
        return user

    def adjust_balance(self, user_id: str, data: BalanceAdjustmentIn) -> User:
        """Move the balance directly, without recording a transaction."""
        amount_cents = positive_cents(data.amount)
        uid = parse_id(user_id, "user")
        with write_guard(self.session):
            user = load_user(self.session, uid, for_update=True)
            user.balance_cents = balance_after_adjustment(
                user.balance_cents, data.type, amount_cents
            )
        logger.info(
            f"balance_adjusted: user={uid} type={data.type.value} "
            f"amount_cents={amount_cents} balance_cents={user.balance_cents}"
        )
        return user


class TransactionService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = parse_id(user_id, "user")

    def _user(self, *, for_update: bool = False) -> User:
        return load_user(self.session, self.user_id, for_update=for_update)

    def _reconcile_budgets(self, months: set[tuple[int, int]]) -> None:
        budgets = BudgetService(self.session, self.user_id)
        for year, month in sorted(months):
            budgets.reconcile(year, month)

    def get(self, transaction_id: str) -> Transaction:
        txn_id = parse_id(transaction_id, "transaction")
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.id == txn_id, Transaction.user_id == self.user_id
            )
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> TransactionResult:
        amount_cents = positive_cents(data.amount)
        category = validate_category(data.type, data.category)
        txn_date = normalize_timestamp(data.date) if data.date else now_local()

        with write_guard(self.session):
            user = self._user(for_update=True)
            try:
                new_balance = balance_after_create(
                    user.balance_cents, data.type, amount_cents
                )
            except InsufficientBalance:
                logger.info(
                    f"transaction_rejected: user={self.user_id} "
                    f"reason=insufficient_balance amount_cents={amount_cents}"
                )
                raise
            txn = Transaction(
                user_id=self.user_id,
                amount_cents=amount_cents,
                type=data.type,
                category=category,
                description=data.description or "",
                date=txn_date,
            )
            self.session.add(txn)
            user.balance_cents = new_balance
            self.session.flush()
            if data.type == TransactionType.expense:
                self._reconcile_budgets({(txn_date.year, txn_date.month)})

        logger.info(
            f"transaction_created: user={self.user_id} id={txn.id} "
            f"type={txn.type.value} amount_cents={amount_cents}"
        )
        return TransactionResult(txn, new_balance)

    def update(
        self, transaction_id: str, data: TransactionUpdateIn
    ) -> TransactionResult:
        txn = self.get(transaction_id)
        old_type = txn.type
        old_amount = txn.amount_cents
        old_date = txn.date

        new_type = data.type or old_type
        new_amount = (
            positive_cents(data.amount) if data.amount is not None else old_amount
        )
        new_category = validate_category(
            new_type, data.category if data.category is not None else txn.category
        )
        new_date = normalize_timestamp(data.date) if data.date else old_date

        with write_guard(self.session):
            user = self._user(for_update=True)
            try:
                new_balance = balance_after_update(
                    user.balance_cents, old_type, old_amount, new_type, new_amount
                )
            except InsufficientBalance:
                logger.info(
                    f"transaction_rejected: user={self.user_id} id={txn.id} "
                    f"reason=insufficient_balance amount_cents={new_amount}"
                )
                raise
            txn.type = new_type
            txn.amount_cents = new_amount
            txn.category = new_category
            if data.description is not None:
                txn.description = data.description
            txn.date = new_date
            user.balance_cents = new_balance
            self.session.flush()

            months: set[tuple[int, int]] = set()
            if old_type == TransactionType.expense:
                months.add((old_date.year, old_date.month))
            if new_type == TransactionType.expense:
                months.add((new_date.year, new_date.month))
            self._reconcile_budgets(months)

        logger.info(
            f"transaction_updated: user={self.user_id} id={txn.id} "
            f"type={new_type.value} amount_cents={new_amount}"
        )
        return TransactionResult(txn, new_balance)

    def delete(self, transaction_id: str) -> TransactionResult:
        txn = self.get(transaction_id)
        with write_guard(self.session):
            user = self._user(for_update=True)
            new_balance = balance_after_delete(
                user.balance_cents, txn.type, txn.amount_cents
            )
            self.session.delete(txn)
            user.balance_cents = new_balance
            self.session.flush()
            if txn.type == TransactionType.expense:
                self._reconcile_budgets({(txn.date.year, txn.date.month)})

        logger.info(
            f"transaction_deleted: user={self.user_id} id={txn.id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents}"
        )
        return TransactionResult(txn, new_balance)

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        page: int = 1,
        limit: int = 10,
    ) -> TransactionPage:
        filters = filters or TransactionFilters()
        if page < 1:
            raise InvalidInput("Page must be at least 1")
        if limit < 1:
            raise InvalidInput("Limit must be at least 1")
        limit = min(limit, 100)
        self._user()

        conditions = [Transaction.user_id == self.user_id]
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.start:
            conditions.append(Transaction.date >= filters.start)
        if filters.end:
            conditions.append(Transaction.date <= filters.end)

        total = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(*conditions)
            ).scalar_one()
            or 0
        )
        items = self.session.scalars(
            select(Transaction)
            .where(*conditions)
            .order_by(
                Transaction.date.desc(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return TransactionPage(items=list(items), total=total, page=page, limit=limit)


class StatsService:
    def __init__(self, session: Session, user_id: str) -> None:
        self.session = session
        self.user_id = parse_id(user_id, "user")

    def transaction_stats(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> TransactionStats:
        user = load_user(self.session, self.user_id)
        stmt = (
            select(
                Transaction.type,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
                func.count(Transaction.id).label("count"),
            )
            .where(Transaction.user_id == self.user_id)
            .group_by(Transaction.type)
        )
        if start:
            stmt = stmt.where(Transaction.date >= start)
        if end:
            stmt = stmt.where(Transaction.date <= end)

        stats = TransactionStats(balance_cents=user.balance_cents)
        for row in self.session.execute(stmt):
            if row.type == TransactionType.income:
                stats.income_cents = int(row.total)
                stats.income_count = int(row.count)
            elif row.type == TransactionType.expense:
                stats.expense_cents = int(row.total)
                stats.expense_count = int(row.count)
        return stats


class BudgetService:
    def __init__(
        self, session: Session, user_id: str, *, today: Optional[date] = None
    ) -> None:
        self.session = session
        self.user_id = parse_id(user_id, "user")
        self.today = today

    def _find(self, month: int, year: int) -> Optional[Budget]:
        return self.session.scalar(
            select(Budget)
            .options(selectinload(Budget.categories))
            .where(
                Budget.user_id == self.user_id,
                Budget.month == month,
                Budget.year == year,
            )
        )

    def _current(self) -> MonthKey:
        return current_month(self.today)

    @staticmethod
    def _category(position: int, data: BudgetCategoryIn) -> BudgetCategory:
        return BudgetCategory(
            position=position,
            name=data.name,
            budget_amount_cents=to_cents(data.budget_amount),
            spent_amount_cents=to_cents(data.spent_amount),
        )

    def spent_for_month(self, year: int, month: int) -> int:
        period = month_period(year, month)
        return int(
            self.session.execute(
                select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.date.between(period.start, period.end),
                )
            ).scalar_one()
            or 0
        )

    @staticmethod
    def _apply_spent(budget: Budget, spent_cents: int) -> None:
        budget.spent_amount_cents = spent_cents
        budget.refresh_remaining()

    def reconcile(self, year: int, month: int) -> Optional[Budget]:
        """Refresh spent/remaining of an existing budget from the ledger.

        Budgets are never created here. The caller owns the commit.
        """
        budget = self._find(month, year)
        if budget is None:
            return None
        self._apply_spent(budget, self.spent_for_month(year, month))
        self.session.flush()
        logger.debug(
            f"budget_reconciled: user={self.user_id} period={year}-{month:02d} "
            f"spent_cents={budget.spent_amount_cents}"
        )
        return budget

    def _zero_budget(self, month: int, year: int) -> Budget:
        return Budget(
            user_id=self.user_id,
            month=month,
            year=year,
            total_budget_cents=0,
            spent_amount_cents=0,
            remaining_budget_cents=0,
            categories=[],
        )

    def get_or_create_current(
        self, month: Optional[int] = None, year: Optional[int] = None
    ) -> Budget:
        """Read a period's budget, persisting an empty one only for the current month.

        Other periods without a record get an unsaved zero view.
        """
        current = self._current()
        month = current.month if month is None else month
        year = current.year if year is None else year
        validate_month(month, year)
        load_user(self.session, self.user_id)

        budget = self._find(month, year)
        if budget is None and (month, year) != (current.month, current.year):
            return self._zero_budget(month, year)

        if budget is None:
            budget = self._zero_budget(month, year)
            self.session.add(budget)
            self._apply_spent(budget, self.spent_for_month(year, month))
            try:
                self.session.commit()
            except IntegrityError:
                # another request created it first
                self.session.rollback()
                logger.info(
                    f"budget_create_lost_race: user={self.user_id} "
                    f"period={year}-{month:02d}"
                )
                budget = self._find(month, year)
                if budget is None:
                    raise Conflict("Budget for this month could not be created")
            else:
                logger.info(
                    f"budget_created: user={self.user_id} period={year}-{month:02d} "
                    "source=current_month_read"
                )
                return budget

        with write_guard(self.session):
            self._apply_spent(budget, self.spent_for_month(year, month))
        return budget

    def upsert(self, data: BudgetIn) -> Budget:
        current = self._current()
        month = current.month if data.month is None else data.month
        year = current.year if data.year is None else data.year
        validate_month(month, year)
        total_cents = to_cents(data.total_budget)
        if total_cents < 0:
            raise InvalidInput("Total budget must be a valid positive number")
        load_user(self.session, self.user_id)

        for attempt in (1, 2):
            budget = self._find(month, year)
            created = budget is None
            if created:
                budget = Budget(user_id=self.user_id, month=month, year=year)
                self.session.add(budget)
            budget.total_budget_cents = total_cents
            budget.categories = [
                self._category(i, c) for i, c in enumerate(data.categories)
            ]
            self._apply_spent(budget, self.spent_for_month(year, month))
            try:
                self.session.commit()
            except IntegrityError as exc:
                self.session.rollback()
                if not created or attempt == 2:
                    raise Conflict("Budget for this month already exists") from exc
                logger.info(
                    f"budget_upsert_retry: user={self.user_id} "
                    f"period={year}-{month:02d}"
                )
                continue
            logger.info(
                f"budget_saved: user={self.user_id} period={year}-{month:02d} "
                f"total_cents={total_cents} created={created}"
            )
            return budget
        raise Conflict("Budget for this month already exists")

    def delete(self, month: int, year: int) -> Budget:
        validate_month(month, year)
        budget = self._find(month, year)
        if budget is None:
            raise NotFound("Budget not found")
        with write_guard(self.session):
            self.session.delete(budget)
        logger.info(f"budget_deleted: user={self.user_id} period={year}-{month:02d}")
        return budget

    def history(self, limit: int = 12) -> list[Budget]:
        if limit < 1:
            raise InvalidInput("Limit must be at least 1")
        load_user(self.session, self.user_id)
        stmt = (
            select(Budget)
            .options(selectinload(Budget.categories))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.year.desc(), Budget.month.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def stats(self) -> BudgetStats:
        current = self._current()
        budget = self._find(current.month, current.year)
        if budget is None:
            raise NotFound("No budget found for current month")

        period = month_period(current.year, current.month)
        rows = self.session.execute(
            select(
                Transaction.category,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("spent"),
                func.count(Transaction.id).label("count"),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(period.start, period.end),
            )
            .group_by(Transaction.category)
            .order_by(func.sum(Transaction.amount_cents).desc(), Transaction.category)
        ).all()

        total = budget.total_budget_cents
        percentage = (budget.spent_amount_cents / total) * 100 if total > 0 else 0.0
        return BudgetStats(
            budget=budget,
            percentage_used=percentage,
            breakdown=[
                CategorySpend(row.category, int(row.spent), int(row.count))
                for row in rows
            ],
        )
