from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload

from cache import (
    Cache,
    CacheError,
    NullCache,
    budget_cache_key,
    budget_cache_tags,
)
from config import get_settings
from errors import ConflictError, NotFoundError, StorageError, ValidationError
from models import (
    Budget,
    BudgetCategory,
    BudgetStatus,
    Category,
    CategoryGroup,
    Subcategory,
    Transaction,
    TransactionType,
)
from periods import month_anchor, month_period
from recurrence import (
    RecurringBudgetPropagator,
    household_owner_ids,
    local_today,
)
from schemas import BudgetIn, BudgetOut, NamedRef
from scopes import GroupScope, ScopeKey, SubcategoryScope, make_scope


logger = logging.getLogger(__name__)

WARNING_THRESHOLD_PCT = 90


def get_current_user_id() -> int:
    return 1


@dataclass(frozen=True)
class StatusResult:
    percentage: float
    status: BudgetStatus


def budget_status(amount_cents: int, actual_spend_cents: int) -> StatusResult:
    percentage = (
        (actual_spend_cents / amount_cents) * 100 if amount_cents > 0 else 0.0
    )
    # "over" wins even though it also satisfies the warning threshold.
    if actual_spend_cents >= amount_cents:
        status = BudgetStatus.over
    elif percentage >= WARNING_THRESHOLD_PCT:
        status = BudgetStatus.warning
    else:
        status = BudgetStatus.ok
    return StatusResult(percentage=percentage, status=status)


@dataclass
class SpendTotals:
    by_category: dict[int, int] = field(default_factory=dict)
    by_category_subcategory: dict[tuple[int, int], int] = field(
        default_factory=dict
    )

    def for_budget(self, budget: Budget) -> int:
        if budget.group_id is not None:
            return sum(
                self.by_category.get(category_id, 0)
                for category_id in budget.linked_category_ids
            )
        if budget.category_id is None:
            return 0
        if budget.subcategory_id is not None:
            return self.by_category_subcategory.get(
                (budget.category_id, budget.subcategory_id), 0
            )
        return self.by_category.get(budget.category_id, 0)


def fold_spend(
    rows: Iterable[tuple[Optional[int], Optional[int], int]],
) -> SpendTotals:
    """Sum expense magnitudes per category and per category+subcategory.

    A row with both ids counts towards both maps. Rows without a category
    are not attributable to any budget and are skipped.
    """
    totals = SpendTotals()
    for category_id, subcategory_id, amount_cents in rows:
        if category_id is None:
            continue
        amount = abs(amount_cents or 0)
        totals.by_category[category_id] = (
            totals.by_category.get(category_id, 0) + amount
        )
        if subcategory_id is not None:
            pair = (category_id, subcategory_id)
            totals.by_category_subcategory[pair] = (
                totals.by_category_subcategory.get(pair, 0) + amount
            )
    return totals


class SpendAggregator:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        household_id: Optional[int] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()
        self.household_id = household_id

    def aggregate(self, start: date, end: date) -> SpendTotals:
        owner = Transaction.user_id == self.user_id
        if self.household_id is not None:
            owner = or_(owner, Transaction.household_id == self.household_id)
        stmt = select(
            Transaction.category_id,
            Transaction.subcategory_id,
            Transaction.amount_cents,
        ).where(
            owner,
            Transaction.deleted_at.is_(None),
            Transaction.type == TransactionType.expense,
            Transaction.category_id.is_not(None),
            Transaction.date.between(start, end),
        )
        try:
            rows = self.session.execute(stmt).all()
        except SQLAlchemyError as exc:
            logger.exception(
                f"spend_aggregation_failed: user_id={self.user_id} "
                f"start={start.isoformat()} end={end.isoformat()}"
            )
            raise StorageError(
                "Failed to load expense transactions",
                operation="aggregate",
                scope=f"{start.isoformat()}..{end.isoformat()}",
            ) from exc
        return fold_spend(
            (row.category_id, row.subcategory_id, row.amount_cents) for row in rows
        )


class _BudgetAccess:
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        household_id: Optional[int] = None,
        cache: Optional[Cache] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id if user_id is not None else get_current_user_id()
        self.household_id = household_id
        self.cache = cache if cache is not None else NullCache()

    def _visible(self):
        clause = Budget.user_id == self.user_id
        if self.household_id is not None:
            clause = or_(clause, Budget.household_id == self.household_id)
        return clause

    def _can_access(self, budget: Budget) -> bool:
        if budget.user_id == self.user_id:
            return True
        if self.household_id is None:
            return False
        return budget.household_id == self.household_id


class BudgetQueryService(_BudgetAccess):
    def __init__(
        self,
        session: Session,
        user_id: Optional[int] = None,
        household_id: Optional[int] = None,
        cache: Optional[Cache] = None,
        cache_ttl_secs: Optional[float] = None,
    ) -> None:
        super().__init__(session, user_id, household_id, cache)
        if cache_ttl_secs is None:
            cache_ttl_secs = get_settings().cache_ttl_secs
        self.cache_ttl_secs = cache_ttl_secs

    def list_for_month(self, target: date) -> list[BudgetOut]:
        period = month_period(target)
        key = budget_cache_key(self.user_id, self.household_id, period.slug)
        cached = self._cache_get(key)
        if cached is not None:
            return list(cached)

        self._propagate(period.start)
        budgets = self._load(
            Budget.period == period.start, operation="list", scope=period.slug
        )
        totals = SpendAggregator(
            self.session, self.user_id, self.household_id
        ).aggregate(period.start, period.end)
        result = [self._enrich(budget, totals) for budget in budgets]

        self._cache_set(key, result)
        return result

    def _propagate(self, target: date) -> None:
        RecurringBudgetPropagator(
            self.session, self.user_id, cache=self.cache
        ).ensure_exists_for(target)
        if self.household_id is None:
            return
        for owner_id in household_owner_ids(self.session, self.household_id):
            if owner_id == self.user_id:
                continue
            RecurringBudgetPropagator(
                self.session, owner_id, self.household_id, cache=self.cache
            ).ensure_exists_for(target)

    def get(self, budget_id: int) -> BudgetOut:
        budgets = self._load(
            Budget.id == budget_id, operation="get", scope=str(budget_id)
        )
        if not budgets:
            raise NotFoundError("Budget not found")
        budget = budgets[0]
        period = month_period(budget.period)
        totals = SpendAggregator(
            self.session, self.user_id, self.household_id
        ).aggregate(period.start, period.end)
        return self._enrich(budget, totals)

    def _load(self, condition, *, operation: str, scope: str) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(
                joinedload(Budget.category),
                joinedload(Budget.subcategory),
                joinedload(Budget.group),
                selectinload(Budget.category_links).joinedload(
                    BudgetCategory.category
                ),
            )
            .where(self._visible(), condition)
            .order_by(Budget.amount_cents.desc(), Budget.id)
        )
        try:
            return self.session.scalars(stmt).unique().all()
        except SQLAlchemyError as exc:
            logger.exception(
                f"budget_load_failed: user_id={self.user_id} {operation}={scope}"
            )
            raise StorageError(
                "Failed to load budgets", operation=operation, scope=scope
            ) from exc

    @staticmethod
    def _display_name(budget: Budget) -> str:
        if budget.group_id is not None:
            return budget.group.name if budget.group else "Unknown"
        return budget.category.name if budget.category else "Unknown"

    def _enrich(self, budget: Budget, totals: SpendTotals) -> BudgetOut:
        actual = totals.for_budget(budget)
        result = budget_status(budget.amount_cents, actual)
        linked = [
            NamedRef.model_validate(link.category)
            for link in budget.category_links
            if link.category is not None
        ]
        return BudgetOut(
            id=budget.id,
            user_id=budget.user_id,
            household_id=budget.household_id,
            period=budget.period,
            amount_cents=budget.amount_cents,
            category_id=budget.category_id,
            subcategory_id=budget.subcategory_id,
            group_id=budget.group_id,
            scope_key=budget.scope_key,
            is_recurring=budget.is_recurring,
            note=budget.note,
            created_at=budget.created_at,
            updated_at=budget.updated_at,
            category=(
                NamedRef.model_validate(budget.category) if budget.category else None
            ),
            subcategory=(
                NamedRef.model_validate(budget.subcategory)
                if budget.subcategory
                else None
            ),
            group=NamedRef.model_validate(budget.group) if budget.group else None,
            linked_categories=linked,
            display_name=self._display_name(budget),
            actual_spend_cents=actual,
            percentage=result.percentage,
            status=result.status,
        )

    def _cache_get(self, key: str) -> Optional[list[BudgetOut]]:
        try:
            return self.cache.get(key)
        except CacheError:
            logger.warning(
                f"budget_cache_unavailable: op=get key={key}", exc_info=True
            )
            return None

    def _cache_set(self, key: str, value: list[BudgetOut]) -> None:
        try:
            self.cache.set(
                key,
                value,
                self.cache_ttl_secs,
                tags=budget_cache_tags(self.user_id, self.household_id),
            )
        except CacheError:
            logger.warning(
                f"budget_cache_unavailable: op=set key={key}", exc_info=True
            )


class BudgetMutationService(_BudgetAccess):
    def create(self, data: BudgetIn) -> Budget:
        scope, category_ids = self._validate(data)
        period = month_anchor(data.period or local_today())

        if self._exists(period, scope):
            raise ConflictError(self._conflict_message(scope))

        budget = Budget(
            user_id=self.user_id,
            household_id=self.household_id,
            period=period,
            amount_cents=data.amount_cents,
            category_id=getattr(scope, "category_id", None),
            subcategory_id=getattr(scope, "subcategory_id", None),
            group_id=getattr(scope, "group_id", None),
            scope_key=str(scope),
            is_recurring=data.is_recurring,
            note=data.note,
        )
        self.session.add(budget)
        try:
            self.session.flush()
        except IntegrityError as exc:
            self.session.rollback()
            raise ConflictError(self._conflict_message(scope)) from exc
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(
                f"budget_create_failed: user_id={self.user_id} scope={scope}"
            )
            raise StorageError(
                "Failed to create budget", operation="create", scope=str(scope)
            ) from exc

        if category_ids:
            try:
                self._insert_links(budget, category_ids)
            except SQLAlchemyError as exc:
                # The budget row is still uncommitted and goes with the rollback.
                self.session.rollback()
                logger.exception(
                    f"budget_links_failed: user_id={self.user_id} scope={scope}"
                )
                raise StorageError(
                    "Failed to create budget categories",
                    operation="create_links",
                    scope=str(scope),
                ) from exc

        self._commit("create", str(scope))
        self.session.refresh(budget)
        logger.info(
            f"budget_created: id={budget.id} user_id={self.user_id} "
            f"period={period.isoformat()} scope={scope}"
        )
        self._invalidate_for(self.user_id, self.household_id)
        return budget

    def update_amount(self, budget_id: int, amount_cents: int) -> Budget:
        if amount_cents < 0:
            raise ValidationError("Budget amount cannot be negative")
        budget = self._owned(budget_id)
        budget.amount_cents = amount_cents
        self._commit("update", budget.scope_key)
        self.session.refresh(budget)
        self._invalidate_for(budget.user_id, budget.household_id)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self._owned(budget_id)
        owner_id, household_id, scope = (
            budget.user_id,
            budget.household_id,
            budget.scope_key,
        )
        self.session.delete(budget)
        self._commit("delete", scope)
        logger.info(f"budget_deleted: id={budget_id} user_id={self.user_id}")
        self._invalidate_for(owner_id, household_id)

    def _validate(self, data: BudgetIn) -> tuple[ScopeKey, list[int]]:
        if data.amount_cents < 0:
            raise ValidationError("Budget amount cannot be negative")

        category_ids = list(dict.fromkeys(data.category_ids))
        category_id = data.category_id

        if data.group_id is None:
            if len(category_ids) > 1:
                raise ValidationError(
                    "group_id is required when creating a grouped budget"
                )
            if category_ids:
                if category_id is not None and category_id != category_ids[0]:
                    raise ValidationError("Conflicting category references")
                category_id = category_ids[0]
            if category_id is None:
                raise ValidationError("A budget needs either a category or a group")
            category = self._expense_category(category_id)
            if data.subcategory_id is not None:
                subcategory = self.session.get(Subcategory, data.subcategory_id)
                if not subcategory or subcategory.category_id != category.id:
                    raise ValidationError("Subcategory not found")
            return make_scope(category_id, data.subcategory_id), []

        if category_id is not None or data.subcategory_id is not None:
            raise ValidationError("A grouped budget cannot also target a category")
        group = self.session.get(CategoryGroup, data.group_id)
        if not group or group.user_id != self.user_id:
            raise ValidationError("Group not found")
        if not category_ids:
            category_ids = sorted(
                c.id
                for c in group.categories
                if c.archived_at is None and c.type == TransactionType.expense
            )
        if not category_ids:
            raise ValidationError("A grouped budget needs at least one category")
        for linked_id in category_ids:
            self._expense_category(linked_id)
        return GroupScope(group.id), category_ids

    def _expense_category(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise ValidationError("Category not found")
        if category.type != TransactionType.expense:
            raise ValidationError("Budgets can only be set for expense categories")
        return category

    def _exists(self, period: date, scope: ScopeKey) -> bool:
        stmt = (
            select(Budget.id)
            .where(
                Budget.user_id == self.user_id,
                Budget.period == period,
                Budget.scope_key == str(scope),
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    @staticmethod
    def _conflict_message(scope: ScopeKey) -> str:
        if isinstance(scope, GroupScope):
            return "Budget already exists for this group in this period"
        if isinstance(scope, SubcategoryScope):
            return (
                "Budget already exists for this category and subcategory "
                "in this period"
            )
        return "Budget already exists for this category in this period"

    def _insert_links(self, budget: Budget, category_ids: list[int]) -> None:
        for category_id in category_ids:
            self.session.add(
                BudgetCategory(budget_id=budget.id, category_id=category_id)
            )
        self.session.flush()

    def _owned(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget:
            raise NotFoundError("Budget not found")
        if not self._can_access(budget):
            logger.warning(
                f"budget_access_denied: id={budget_id} user_id={self.user_id}"
            )
            raise NotFoundError("Budget not found")
        return budget

    def _commit(self, operation: str, scope: str) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.exception(
                f"budget_{operation}_failed: user_id={self.user_id} scope={scope}"
            )
            raise StorageError(
                f"Failed to {operation} budget", operation=operation, scope=scope
            ) from exc

    def _invalidate_for(self, owner_id: int, household_id: Optional[int]) -> None:
        tags = set(budget_cache_tags(self.user_id, self.household_id))
        tags.update(budget_cache_tags(owner_id, household_id))
        try:
            self.cache.invalidate_tags(sorted(tags))
        except CacheError as exc:
            logger.exception(
                f"budget_cache_invalidate_failed: user_id={self.user_id} "
                f"owner_id={owner_id}"
            )
            raise StorageError(
                "Budget saved but cached listings could not be cleared",
                operation="invalidate",
                scope=f"user:{owner_id}",
            ) from exc
