from datetime import datetime

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import NotFoundError
from models import BudgetOverride, UserId
from periods import Month
from schemas import BudgetOverrideIn, CategoryIn, DefaultBudgetIn, TransactionIn
from services import (
    BudgetService,
    CategoryService,
    TransactionService,
    UserService,
    resolve_budget,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = SessionLocal()
    UserService(session).ensure_seeded("Dor", "Hila")
    return session


def spend(session, category_id: int, amount_cents: int, when: datetime, payer=UserId.owner):
    return TransactionService(session).create(
        TransactionIn(
            amount_cents=amount_cents, category_id=category_id, occurred_at=when
        ),
        payer=payer,
    )


def line_for(month_budget, category_id: int):
    return next(b for b in month_budget.budgets if b.category_id == category_id)


def test_resolve_budget_prefers_override_then_default_then_zero() -> None:
    assert resolve_budget(1_500, 1_000) == 1_500
    assert resolve_budget(None, 1_000) == 1_000
    assert resolve_budget(None, None) == 0
    assert resolve_budget(0, 1_000) == 0


def test_default_budget_with_overspend_reports_negative_left() -> None:
    session = make_session()
    categories = CategoryService(session)
    groceries = categories.create(CategoryIn(name="Groceries"))
    categories.set_default_budget(
        DefaultBudgetIn(category_id=groceries.id, amount_cents=100_000)
    )
    spend(session, groceries.id, 70_000, datetime(2024, 5, 3, 10, 0))
    spend(session, groceries.id, 50_000, datetime(2024, 5, 20, 18, 30), UserId.partner)

    may = BudgetService(session).budgets_for_month(Month(2024, 5))
    line = line_for(may, groceries.id)
    assert may.month == "2024-05"
    assert line.effective_budget_cents == 100_000
    assert line.spent_cents == 120_000
    assert line.left_cents == -20_000
    assert line.is_overspent is True
    assert line.has_override is False
    assert line.override_budget_cents is None


def test_override_applies_only_to_its_month() -> None:
    session = make_session()
    categories = CategoryService(session)
    groceries = categories.create(CategoryIn(name="Groceries"))
    categories.set_default_budget(
        DefaultBudgetIn(category_id=groceries.id, amount_cents=100_000)
    )
    spend(session, groceries.id, 120_000, datetime(2024, 5, 10, 12, 0))

    budgets = BudgetService(session)
    budgets.upsert_override(
        BudgetOverrideIn(
            category_id=groceries.id, year=2024, month=5, amount_cents=150_000
        )
    )

    may = line_for(budgets.budgets_for_month(Month(2024, 5)), groceries.id)
    assert may.effective_budget_cents == 150_000
    assert may.default_budget_cents == 100_000
    assert may.override_budget_cents == 150_000
    assert may.left_cents == 30_000
    assert may.has_override is True

    june = line_for(budgets.budgets_for_month(Month(2024, 6)), groceries.id)
    assert june.effective_budget_cents == 100_000
    assert june.has_override is False
    assert june.spent_cents == 0


def test_category_without_budget_resolves_to_zero() -> None:
    session = make_session()
    misc = CategoryService(session).create(CategoryIn(name="Misc"))
    spend(session, misc.id, 4_250, datetime(2024, 3, 2, 9, 0))

    line = line_for(BudgetService(session).budgets_for_month(Month(2024, 3)), misc.id)
    assert line.effective_budget_cents == 0
    assert line.default_budget_cents is None
    assert line.left_cents == -4_250


def test_upserting_override_twice_updates_in_place() -> None:
    session = make_session()
    rent = CategoryService(session).create(CategoryIn(name="Rent"))
    budgets = BudgetService(session)

    first = budgets.upsert_override(
        BudgetOverrideIn(category_id=rent.id, year=2024, month=3, amount_cents=10_000)
    )
    second = budgets.upsert_override(
        BudgetOverrideIn(category_id=rent.id, year=2024, month=3, amount_cents=12_000)
    )

    assert first.id == second.id
    assert second.amount_cents == 12_000
    count = session.scalar(
        select(func.count(BudgetOverride.id)).where(
            BudgetOverride.category_id == rent.id
        )
    )
    assert count == 1
    assert budgets.find_override(rent.id, Month(2024, 3)).amount_cents == 12_000
    assert budgets.find_override(rent.id, Month(2024, 4)) is None


def test_override_for_march_does_not_leak_into_april() -> None:
    session = make_session()
    fun = CategoryService(session).create(CategoryIn(name="Fun"))
    budgets = BudgetService(session)
    budgets.upsert_override(
        BudgetOverrideIn(category_id=fun.id, year=2024, month=3, amount_cents=5_000)
    )

    april = line_for(budgets.budgets_for_month(Month(2024, 4)), fun.id)
    assert april.effective_budget_cents == 0
    assert april.has_override is False


def test_clearing_override_falls_back_to_default() -> None:
    session = make_session()
    categories = CategoryService(session)
    fuel = categories.create(CategoryIn(name="Fuel"))
    categories.set_default_budget(DefaultBudgetIn(category_id=fuel.id, amount_cents=30_000))
    budgets = BudgetService(session)
    budgets.upsert_override(
        BudgetOverrideIn(category_id=fuel.id, year=2024, month=7, amount_cents=45_000)
    )

    assert budgets.clear_override(fuel.id, Month(2024, 7)) is True
    assert budgets.clear_override(fuel.id, Month(2024, 7)) is False
    line = line_for(budgets.budgets_for_month(Month(2024, 7)), fuel.id)
    assert line.effective_budget_cents == 30_000


def test_month_boundaries_are_inclusive_of_last_instant() -> None:
    session = make_session()
    food = CategoryService(session).create(CategoryIn(name="Food"))
    spend(session, food.id, 1_000, datetime(2024, 2, 29, 23, 59, 59))
    spend(session, food.id, 2_000, datetime(2024, 3, 1, 0, 0, 0))
    spend(session, food.id, 4_000, datetime(2024, 1, 31, 23, 59, 59))

    budgets = BudgetService(session)
    february = line_for(budgets.budgets_for_month(Month(2024, 2)), food.id)
    march = line_for(budgets.budgets_for_month(Month(2024, 3)), food.id)
    assert february.spent_cents == 1_000
    assert march.spent_cents == 2_000


def test_month_totals_and_ordering() -> None:
    session = make_session()
    categories = CategoryService(session)
    bills = categories.create(CategoryIn(name="bills"))
    auto = categories.create(CategoryIn(name="Auto"))
    categories.set_default_budget(DefaultBudgetIn(category_id=bills.id, amount_cents=50_000))
    categories.set_default_budget(DefaultBudgetIn(category_id=auto.id, amount_cents=20_000))
    spend(session, auto.id, 25_000, datetime(2024, 8, 1, 8, 0))

    august = BudgetService(session).budgets_for_month(Month(2024, 8))
    assert [b.category_name for b in august.budgets] == ["Auto", "bills"]
    assert august.effective_budget_cents == 70_000
    assert august.spent_cents == 25_000
    assert august.left_cents == 45_000


def test_default_budget_can_be_cleared() -> None:
    session = make_session()
    categories = CategoryService(session)
    gifts = categories.create(CategoryIn(name="Gifts"))
    categories.set_default_budget(DefaultBudgetIn(category_id=gifts.id, amount_cents=9_000))
    cleared = categories.set_default_budget(
        DefaultBudgetIn(category_id=gifts.id, amount_cents=None)
    )
    assert cleared.default_budget_cents is None


def test_budget_mutations_reject_negative_amounts_and_unknown_categories() -> None:
    session = make_session()
    with pytest.raises(PydanticValidationError):
        DefaultBudgetIn(category_id=1, amount_cents=-1)
    with pytest.raises(PydanticValidationError):
        BudgetOverrideIn(category_id=1, year=2024, month=5, amount_cents=-500)

    with pytest.raises(NotFoundError):
        CategoryService(session).set_default_budget(
            DefaultBudgetIn(category_id=999, amount_cents=100)
        )
    with pytest.raises(NotFoundError):
        BudgetService(session).upsert_override(
            BudgetOverrideIn(category_id=999, year=2024, month=5, amount_cents=100)
        )
