from datetime import date

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from cache import MemoryCache
from database import Base
from errors import StorageError
from models import Budget, BudgetCategory, Category, CategoryGroup, TransactionType
from recurrence import (
    RecurringBudgetPropagator,
    latest_by_scope,
    propagate_for_all_users,
)
from scopes import CategoryScope


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _category(session: Session, name: str, group=None) -> Category:
    category = Category(
        user_id=1, name=name, type=TransactionType.expense, group=group
    )
    session.add(category)
    session.flush()
    return category


def _budget(
    session: Session,
    period: date,
    amount_cents: int,
    *,
    user_id: int = 1,
    is_recurring: bool = True,
    category_id=None,
    group_id=None,
) -> Budget:
    key = f"group:{group_id}" if group_id else f"cat:{category_id}"
    budget = Budget(
        user_id=user_id,
        period=period,
        amount_cents=amount_cents,
        category_id=category_id,
        group_id=group_id,
        scope_key=key,
        is_recurring=is_recurring,
    )
    session.add(budget)
    session.flush()
    return budget


def _periods(session: Session, user_id: int = 1) -> list[date]:
    return session.scalars(
        select(Budget.period).where(Budget.user_id == user_id).order_by(Budget.period)
    ).all()


def test_propagation_fills_only_the_requested_month():
    with Session(_engine()) as session:
        food = _category(session, "Food")
        _budget(session, date(2025, 1, 1), 10_000, category_id=food.id)
        session.commit()

        created = RecurringBudgetPropagator(session, 1).ensure_exists_for(
            date(2025, 3, 17)
        )

        assert [b.period for b in created] == [date(2025, 3, 1)]
        assert created[0].amount_cents == 10_000
        assert created[0].is_recurring is True
        assert _periods(session) == [date(2025, 1, 1), date(2025, 3, 1)]

        RecurringBudgetPropagator(session, 1).ensure_exists_for(date(2025, 2, 1))
        assert _periods(session) == [
            date(2025, 1, 1),
            date(2025, 2, 1),
            date(2025, 3, 1),
        ]


def test_propagation_is_idempotent():
    with Session(_engine()) as session:
        food = _category(session, "Food")
        _budget(session, date(2025, 1, 1), 10_000, category_id=food.id)
        session.commit()

        propagator = RecurringBudgetPropagator(session, 1)
        first = propagator.ensure_exists_for(date(2025, 2, 1))
        second = propagator.ensure_exists_for(date(2025, 2, 1))

        assert len(first) == 1
        assert second == []
        count = session.scalar(
            select(func.count(Budget.id)).where(Budget.period == date(2025, 2, 1))
        )
        assert count == 1


def test_propagation_copies_most_recent_template_per_scope():
    with Session(_engine()) as session:
        food = _category(session, "Food")
        rent = _category(session, "Rent")
        _budget(session, date(2025, 1, 1), 10_000, category_id=food.id)
        _budget(session, date(2025, 2, 1), 12_500, category_id=food.id)
        _budget(session, date(2024, 11, 1), 90_000, category_id=rent.id)
        session.commit()

        created = RecurringBudgetPropagator(session, 1).ensure_exists_for(
            date(2025, 4, 1)
        )

        by_category = {b.category_id: b.amount_cents for b in created}
        assert by_category == {food.id: 12_500, rent.id: 90_000}


def test_propagation_never_backfills_and_skips_non_recurring():
    with Session(_engine()) as session:
        food = _category(session, "Food")
        fun = _category(session, "Fun")
        _budget(session, date(2025, 5, 1), 10_000, category_id=food.id)
        _budget(
            session, date(2025, 1, 1), 5_000, category_id=fun.id, is_recurring=False
        )
        session.commit()

        propagator = RecurringBudgetPropagator(session, 1)
        assert propagator.ensure_exists_for(date(2025, 4, 1)) == []
        assert propagator.ensure_exists_for(date(2025, 2, 1)) == []


def test_propagation_keeps_existing_budget_in_target_month():
    with Session(_engine()) as session:
        food = _category(session, "Food")
        _budget(session, date(2025, 1, 1), 10_000, category_id=food.id)
        _budget(
            session, date(2025, 2, 1), 4_000, category_id=food.id, is_recurring=False
        )
        session.commit()

        assert (
            RecurringBudgetPropagator(session, 1).ensure_exists_for(date(2025, 2, 1))
            == []
        )
        amounts = session.scalars(
            select(Budget.amount_cents).where(Budget.period == date(2025, 2, 1))
        ).all()
        assert amounts == [4_000]


def test_propagation_is_scoped_to_owner():
    with Session(_engine()) as session:
        food = _category(session, "Food")
        _budget(session, date(2025, 1, 1), 10_000, category_id=food.id, user_id=2)
        session.commit()

        assert (
            RecurringBudgetPropagator(session, 1).ensure_exists_for(date(2025, 2, 1))
            == []
        )
        assert _periods(session, user_id=2) == [date(2025, 1, 1)]


def test_propagation_copies_group_links():
    with Session(_engine()) as session:
        group = CategoryGroup(user_id=1, name="Living")
        session.add(group)
        session.flush()
        food = _category(session, "Food", group=group)
        rent = _category(session, "Rent", group=group)
        source = _budget(session, date(2025, 1, 1), 50_000, group_id=group.id)
        session.add_all(
            [
                BudgetCategory(budget_id=source.id, category_id=food.id),
                BudgetCategory(budget_id=source.id, category_id=rent.id),
            ]
        )
        session.commit()

        created = RecurringBudgetPropagator(session, 1).ensure_exists_for(
            date(2025, 2, 1)
        )

        assert len(created) == 1
        copy = session.get(Budget, created[0].id)
        assert copy.group_id == group.id
        assert copy.category_id is None
        assert copy.id != source.id
        assert sorted(copy.linked_category_ids) == sorted([food.id, rent.id])


def test_failed_link_copy_rolls_back_materialized_budgets(monkeypatch):
    with Session(_engine()) as session:
        group = CategoryGroup(user_id=1, name="Living")
        session.add(group)
        session.flush()
        _category(session, "Food", group=group)
        _budget(session, date(2025, 1, 1), 50_000, group_id=group.id)
        session.commit()

        def broken_copy(self, pairs):
            raise SQLAlchemyError("link insert failed")

        monkeypatch.setattr(RecurringBudgetPropagator, "_copy_links", broken_copy)

        with pytest.raises(StorageError) as excinfo:
            RecurringBudgetPropagator(session, 1).ensure_exists_for(date(2025, 2, 1))

        assert excinfo.value.operation == "propagate"
        assert _periods(session) == [date(2025, 1, 1)]


def test_concurrent_insert_is_treated_as_already_created(monkeypatch):
    with Session(_engine()) as session:
        food = _category(session, "Food")
        _budget(session, date(2025, 1, 1), 10_000, category_id=food.id)
        # Row written by a concurrent request after our existence check.
        _budget(session, date(2025, 2, 1), 10_000, category_id=food.id)
        session.commit()

        original = RecurringBudgetPropagator._scopes_at
        calls = {"n": 0}

        def stale_first_read(self, period):
            calls["n"] += 1
            if calls["n"] == 1:
                return set()
            return original(self, period)

        monkeypatch.setattr(RecurringBudgetPropagator, "_scopes_at", stale_first_read)

        created = RecurringBudgetPropagator(session, 1).ensure_exists_for(
            date(2025, 2, 1)
        )

        assert created == []
        assert calls["n"] == 2
        assert _periods(session) == [date(2025, 1, 1), date(2025, 2, 1)]


def test_latest_by_scope_keeps_highest_period():
    older = Budget(period=date(2025, 1, 1), category_id=1, amount_cents=1)
    newer = Budget(period=date(2025, 3, 1), category_id=1, amount_cents=2)
    latest = latest_by_scope([older, newer])
    assert latest == {CategoryScope(1): newer}


def test_propagate_for_all_users_counts_created_rows():
    with Session(_engine()) as session:
        food = _category(session, "Food")
        _budget(session, date(2025, 1, 1), 10_000, category_id=food.id)
        _budget(session, date(2025, 1, 1), 7_000, category_id=food.id, user_id=2)
        _budget(
            session,
            date(2025, 1, 1),
            3_000,
            category_id=food.id,
            user_id=3,
            is_recurring=False,
        )
        session.commit()

        assert propagate_for_all_users(session, date(2025, 2, 10)) == 2
        assert propagate_for_all_users(session, date(2025, 2, 10)) == 0
        assert _periods(session, user_id=2) == [date(2025, 1, 1), date(2025, 2, 1)]
        assert _periods(session, user_id=3) == [date(2025, 1, 1)]


def test_propagation_clears_cached_listings_of_owner_and_household():
    with Session(_engine()) as session:
        food = _category(session, "Food")
        source = _budget(session, date(2025, 1, 1), 10_000, category_id=food.id)
        source.household_id = 7
        session.commit()
        cache = MemoryCache()
        cache.set("owner", ["stale"], 60, tags=["budgets:user:1"])
        cache.set("member", ["stale"], 60, tags=["budgets:household:7"])

        propagator = RecurringBudgetPropagator(session, 1, cache=cache)
        assert propagator.ensure_exists_for(date(2025, 2, 1))
        assert cache.get("owner") is None
        assert cache.get("member") is None

        cache.set("owner", ["fresh"], 60, tags=["budgets:user:1"])
        assert propagator.ensure_exists_for(date(2025, 2, 1)) == []
        assert cache.get("owner") == ["fresh"]


def test_household_filter_copies_only_shared_templates():
    with Session(_engine()) as session:
        food = _category(session, "Food")
        rent = _category(session, "Rent")
        shared = _budget(session, date(2025, 1, 1), 10_000, category_id=food.id)
        shared.household_id = 7
        _budget(session, date(2025, 1, 1), 90_000, category_id=rent.id)
        session.commit()

        created = RecurringBudgetPropagator(
            session, 1, household_id=7
        ).ensure_exists_for(date(2025, 2, 1))

        assert [b.category_id for b in created] == [food.id]
        assert created[0].household_id == 7
