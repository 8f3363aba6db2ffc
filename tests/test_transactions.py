from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from database import Store
from errors import Conflict, InsufficientBalance, InvalidInput, NotFound
from models import Transaction, TransactionType, User
from schemas import (
    BalanceAdjustmentIn,
    BudgetIn,
    TransactionIn,
    TransactionUpdateIn,
    UserIn,
)
from services import BudgetService, TransactionService, UserService, write_guard

UNKNOWN_ID = "0b7c3f5e-3a59-4d0c-9d0e-7f7a2b1c8d11"


def make_session(url: str = "sqlite://"):
    store = Store(url)
    store.init(create_schema=True)
    return store.session()


def make_user(session, balance: str = "1000") -> User:
    users = UserService(session)
    user = users.create(
        UserIn(name="Ada", email="ada@example.com", password="secret-pw")
    )
    if Decimal(balance) > 0:
        users.adjust_balance(
            user.id,
            BalanceAdjustmentIn(amount=Decimal(balance), type=TransactionType.income),
        )
    return user


def income(amount: str, category: str = "Salary", **kwargs) -> TransactionIn:
    return TransactionIn(
        amount=Decimal(amount), type=TransactionType.income, category=category, **kwargs
    )


def expense(amount: str, category: str = "Food", **kwargs) -> TransactionIn:
    return TransactionIn(
        amount=Decimal(amount),
        type=TransactionType.expense,
        category=category,
        **kwargs,
    )


def balance_of(session, user_id: str) -> int:
    session.expire_all()
    return session.get(User, user_id).balance_cents


def count_transactions(session) -> int:
    return session.execute(select(func.count(Transaction.id))).scalar_one()


def test_income_then_delete_restores_balance() -> None:
    session = make_session()
    user = make_user(session)
    txns = TransactionService(session, user.id)

    result = txns.create(income("500"))
    assert result.balance_cents == 150_000
    assert balance_of(session, user.id) == 150_000

    deleted = txns.delete(result.transaction.id)
    assert deleted.balance_cents == 100_000
    assert balance_of(session, user.id) == 100_000
    assert count_transactions(session) == 0


def test_expense_exceeding_balance_is_rejected_without_writes() -> None:
    session = make_session()
    user = make_user(session)

    with pytest.raises(InsufficientBalance):
        TransactionService(session, user.id).create(expense("1500", "Rent"))

    assert balance_of(session, user.id) == 100_000
    assert count_transactions(session) == 0


def test_expense_down_to_exactly_zero_is_allowed() -> None:
    session = make_session()
    user = make_user(session)
    result = TransactionService(session, user.id).create(expense("1000", "Rent"))
    assert result.balance_cents == 0


def test_update_reverses_and_reapplies() -> None:
    session = make_session()
    user = make_user(session)
    txns = TransactionService(session, user.id)
    created = txns.create(expense("200"))
    assert created.balance_cents == 80_000

    updated = txns.update(
        created.transaction.id,
        TransactionUpdateIn(
            amount=Decimal("300"), type=TransactionType.income, category="Refund"
        ),
    )
    # 800 + 200 (undo expense) + 300 (new income)
    assert updated.balance_cents == 130_000
    assert updated.transaction.type == TransactionType.income
    assert updated.transaction.category == "Refund"
    assert balance_of(session, user.id) == 130_000


def test_update_keeps_fields_that_are_not_given() -> None:
    session = make_session()
    user = make_user(session)
    txns = TransactionService(session, user.id)
    created = txns.create(
        expense("50", description="Lunch", date=datetime(2025, 3, 4, 12, 0))
    )

    updated = txns.update(
        created.transaction.id, TransactionUpdateIn(amount=Decimal("75"))
    )
    txn = updated.transaction
    assert txn.amount_cents == 7_500
    assert txn.type == TransactionType.expense
    assert txn.category == "Food"
    assert txn.description == "Lunch"
    assert txn.date == datetime(2025, 3, 4, 12, 0)
    assert updated.balance_cents == 92_500


def test_update_that_would_go_negative_changes_nothing() -> None:
    session = make_session()
    user = make_user(session)
    txns = TransactionService(session, user.id)
    created = txns.create(expense("100"))

    with pytest.raises(InsufficientBalance):
        txns.update(
            created.transaction.id, TransactionUpdateIn(amount=Decimal("5000"))
        )

    session.expire_all()
    txn = txns.get(created.transaction.id)
    assert txn.amount_cents == 10_000
    assert balance_of(session, user.id) == 90_000


def test_delete_of_income_may_leave_negative_balance() -> None:
    session = make_session()
    user = make_user(session, balance="0")
    txns = TransactionService(session, user.id)
    pay = txns.create(income("500"))
    txns.create(expense("400", "Rent"))

    result = txns.delete(pay.transaction.id)
    assert result.balance_cents == -40_000


@pytest.mark.parametrize("amount", ["0", "-5", "0.001"])
def test_non_positive_amount_is_invalid(amount: str) -> None:
    session = make_session()
    user = make_user(session)
    with pytest.raises(InvalidInput):
        TransactionService(session, user.id).create(income(amount, "Gift"))
    assert count_transactions(session) == 0


def test_expense_category_must_be_known() -> None:
    session = make_session()
    user = make_user(session)
    txns = TransactionService(session, user.id)

    with pytest.raises(InvalidInput):
        txns.create(expense("10", "Gadgets"))

    created = txns.create(expense("10", "groceries"))
    assert created.transaction.category == "Groceries"

    side_gig = txns.create(income("10", "Side gig"))
    with pytest.raises(InvalidInput):
        txns.update(
            side_gig.transaction.id, TransactionUpdateIn(type=TransactionType.expense)
        )


def test_ids_are_validated() -> None:
    session = make_session()
    user = make_user(session)

    with pytest.raises(InvalidInput):
        TransactionService(session, "not-an-id")
    with pytest.raises(InvalidInput):
        TransactionService(session, user.id).get("12345")
    with pytest.raises(NotFound):
        TransactionService(session, user.id).get(UNKNOWN_ID)
    with pytest.raises(NotFound):
        TransactionService(session, UNKNOWN_ID).create(income("10", "Gift"))


def test_transactions_are_scoped_to_their_owner() -> None:
    session = make_session()
    owner = make_user(session)
    other = UserService(session).create(
        UserIn(name="Bob", email="bob@example.com", password="secret-pw")
    )
    created = TransactionService(session, owner.id).create(income("10", "Gift"))
    with pytest.raises(NotFound):
        TransactionService(session, other.id).get(created.transaction.id)


def test_expenses_refresh_the_budget_of_their_month() -> None:
    session = make_session()
    user = make_user(session)
    budgets = BudgetService(session, user.id, today=date(2025, 5, 10))
    budgets.upsert(BudgetIn(total_budget=Decimal("2000"), month=5, year=2025))

    txns = TransactionService(session, user.id)
    txns.create(expense("300", date=datetime(2025, 5, 3, 9, 0)))
    second = txns.create(
        expense("450", "Travel", date=datetime(2025, 5, 31, 23, 59, 59))
    )

    budget = budgets.get_or_create_current(5, 2025)
    assert budget.spent_amount_cents == 75_000
    assert budget.remaining_budget_cents == 125_000

    # moving the expense to June frees May's budget
    txns.update(
        second.transaction.id, TransactionUpdateIn(date=datetime(2025, 6, 1, 0, 0))
    )
    session.expire_all()
    budget = budgets.get_or_create_current(5, 2025)
    assert budget.spent_amount_cents == 30_000
    assert budget.remaining_budget_cents == 170_000

    txns.delete(second.transaction.id)
    session.expire_all()
    assert budgets.get_or_create_current(5, 2025).spent_amount_cents == 30_000


def test_expense_without_budget_does_not_create_one() -> None:
    session = make_session()
    user = make_user(session)
    TransactionService(session, user.id).create(
        expense("20", date=datetime(2024, 2, 2))
    )
    assert BudgetService(session, user.id).history() == []


def test_stale_balance_write_is_rejected(tmp_path) -> None:
    store = Store(f"sqlite:///{tmp_path / 'ledger.db'}")
    store.init(create_schema=True)
    first = store.session()
    second = store.session()

    user = make_user(first)
    stale = first.get(User, user.id)
    balance_before = stale.balance_cents

    UserService(second).adjust_balance(
        user.id, BalanceAdjustmentIn(amount=Decimal("5"), type=TransactionType.income)
    )

    with pytest.raises(Conflict):
        with write_guard(first):
            stale.balance_cents = balance_before + 100

    assert balance_of(first, user.id) == balance_before + 500
    first.close()
    second.close()
    store.dispose()


def test_update_of_a_stale_transaction_is_rejected(tmp_path) -> None:
    store = Store(f"sqlite:///{tmp_path / 'ledger.db'}")
    store.init(create_schema=True)
    first = store.session()
    second = store.session()

    user = make_user(first)
    created = TransactionService(first, user.id).create(expense("100"))
    txn_id = created.transaction.id
    assert created.balance_cents == 90_000

    moved = TransactionService(second, user.id).update(
        txn_id, TransactionUpdateIn(amount=Decimal("200"))
    )
    assert moved.balance_cents == 80_000

    # the first session sees a fresh user row but still holds the old expense
    first.expire(first.get(User, user.id))
    with pytest.raises(Conflict):
        TransactionService(first, user.id).update(
            txn_id, TransactionUpdateIn(amount=Decimal("300"))
        )

    first.expire_all()
    assert TransactionService(first, user.id).get(txn_id).amount_cents == 20_000
    assert balance_of(first, user.id) == 80_000
    first.close()
    second.close()
    store.dispose()


def test_delete_of_a_stale_transaction_is_rejected(tmp_path) -> None:
    store = Store(f"sqlite:///{tmp_path / 'ledger.db'}")
    store.init(create_schema=True)
    first = store.session()
    second = store.session()

    user = make_user(first)
    txn_id = TransactionService(first, user.id).create(expense("100")).transaction.id
    TransactionService(second, user.id).update(
        txn_id, TransactionUpdateIn(amount=Decimal("250"))
    )

    first.expire(first.get(User, user.id))
    with pytest.raises(Conflict):
        TransactionService(first, user.id).delete(txn_id)

    assert balance_of(first, user.id) == 75_000
    assert count_transactions(first) == 1
    first.close()
    second.close()
    store.dispose()
