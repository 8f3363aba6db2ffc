from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from database import Store
from errors import InvalidInput, NotFound
from models import TransactionType
from periods import month_period, parse_timestamp, resolve_range
from schemas import BalanceAdjustmentIn, TransactionIn, UserIn
from services import StatsService, TransactionFilters, TransactionService, UserService


def make_ledger():
    store = Store("sqlite://")
    store.init(create_schema=True)
    session = store.session()
    users = UserService(session)
    user = users.create(UserIn(name="Ada", email="ada@example.com", password="pw"))
    users.adjust_balance(
        user.id,
        BalanceAdjustmentIn(amount=Decimal("10000"), type=TransactionType.income),
    )
    return session, TransactionService(session, user.id)


def add(txns, amount, txn_type, when, category=None):
    if category is None:
        category = "Food" if txn_type == TransactionType.expense else "Salary"
    return txns.create(
        TransactionIn(
            amount=Decimal(amount), type=txn_type, category=category, date=when
        )
    ).transaction


def test_pages_are_newest_first() -> None:
    _, txns = make_ledger()
    start = datetime(2025, 1, 1, 12, 0)
    for i in range(25):
        add(txns, str(i + 1), TransactionType.income, start + timedelta(days=i))

    page = txns.list(page=2, limit=10)
    assert page.total == 25
    assert page.total_pages == 3
    # newest is record 25, so page 2 holds records 15 down to 6
    assert [t.amount_cents for t in page.items] == [
        n * 100 for n in range(15, 5, -1)
    ]

    last = txns.list(page=3, limit=10)
    assert len(last.items) == 5
    assert txns.list(page=4, limit=10).items == []


def test_limit_is_capped_and_page_checked() -> None:
    _, txns = make_ledger()
    assert txns.list(limit=500).limit == 100
    with pytest.raises(InvalidInput):
        txns.list(page=0)
    with pytest.raises(InvalidInput):
        txns.list(limit=0)


def test_empty_ledger_has_no_pages() -> None:
    _, txns = make_ledger()
    page = txns.list()
    assert page.total == 0
    assert page.total_pages == 0
    assert page.items == []


def test_type_filter() -> None:
    _, txns = make_ledger()
    add(txns, "10", TransactionType.income, datetime(2025, 2, 1))
    add(txns, "20", TransactionType.expense, datetime(2025, 2, 2))
    add(txns, "30", TransactionType.expense, datetime(2025, 2, 3))

    page = txns.list(TransactionFilters(type=TransactionType.expense))
    assert page.total == 2
    assert {t.type for t in page.items} == {TransactionType.expense}


def test_month_and_year_win_over_explicit_range() -> None:
    start, end = resolve_range("2020-01-01", "2020-01-31", month=3, year=2025)
    assert start == datetime(2025, 3, 1)
    assert end == datetime(2025, 3, 31, 23, 59, 59, 999999)

    # a lone month is ignored
    start, end = resolve_range("2020-01-01", None, month=3)
    assert start == datetime(2020, 1, 1)
    assert end is None


def test_date_only_end_covers_the_whole_day() -> None:
    _, txns = make_ledger()
    add(txns, "10", TransactionType.income, datetime(2025, 2, 10, 0, 0))
    add(txns, "20", TransactionType.income, datetime(2025, 2, 10, 23, 30))
    add(txns, "30", TransactionType.income, datetime(2025, 2, 11, 0, 0))

    start, end = resolve_range("2025-02-10", "2025-02-10")
    page = txns.list(TransactionFilters(start=start, end=end))
    assert sorted(t.amount_cents for t in page.items) == [1_000, 2_000]


def test_bad_ranges_are_rejected() -> None:
    with pytest.raises(InvalidInput):
        resolve_range("2025-02-11", "2025-02-10")
    with pytest.raises(InvalidInput):
        parse_timestamp("yesterday")


def test_utc_timestamps_are_stored_as_local_wall_time() -> None:
    assert parse_timestamp("2025-02-10T08:15:00Z") == datetime(2025, 2, 10, 8, 15)


def test_december_period_rolls_into_next_year() -> None:
    period = month_period(2024, 12)
    assert period.start == datetime(2024, 12, 1)
    assert period.end == datetime(2024, 12, 31, 23, 59, 59, 999999)


def test_list_for_unknown_user_is_not_found() -> None:
    session, _ = make_ledger()
    with pytest.raises(NotFound):
        TransactionService(session, "0b7c3f5e-3a59-4d0c-9d0e-7f7a2b1c8d11").list()


def test_transaction_stats() -> None:
    session, txns = make_ledger()
    add(txns, "500", TransactionType.income, datetime(2025, 1, 5))
    add(txns, "120.25", TransactionType.expense, datetime(2025, 1, 6))
    add(txns, "30", TransactionType.expense, datetime(2025, 2, 1))

    stats = StatsService(session, txns.user_id).transaction_stats()
    assert stats.income_cents == 50_000
    assert stats.expense_cents == 15_025
    assert stats.income_count == 1
    assert stats.expense_count == 2
    assert stats.total_count == 3
    assert stats.balance_cents == 1_000_000 + 50_000 - 15_025

    start, end = resolve_range("2025-01-01", "2025-01-31")
    january = StatsService(session, txns.user_id).transaction_stats(start, end)
    assert january.expense_cents == 12_025
    assert january.total_count == 2


def test_stats_with_no_transactions_are_zero() -> None:
    session, txns = make_ledger()
    stats = StatsService(session, txns.user_id).transaction_stats()
    assert stats.income_cents == 0
    assert stats.expense_cents == 0
    assert stats.total_count == 0
    assert stats.balance_cents == 1_000_000
