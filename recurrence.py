import logging
from datetime import date, datetime
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from cache import Cache, CacheError, budget_cache_tags
from config import get_settings
from errors import StorageError
from models import Budget, BudgetCategory
from periods import month_anchor
from scopes import ScopeKey, parse_scope, scope_of


logger = logging.getLogger(__name__)


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def latest_by_scope(budgets: Iterable[Budget]) -> dict[ScopeKey, Budget]:
    """Most recent budget per scope; ties on period keep the first seen."""
    latest: dict[ScopeKey, Budget] = {}
    for budget in budgets:
        key = scope_of(budget)
        current = latest.get(key)
        if current is None or budget.period > current.period:
            latest[key] = budget
    return latest


class RecurringBudgetPropagator:
    """Copies the last recurring budget of every scope into a requested month.

    Only the requested month is filled; months in between stay empty until
    they are requested themselves. Scopes that already have a budget in the
    target month are left alone, so repeated calls are no-ops.

    With ``household_id`` set only templates shared with that household are
    copied, which is what another household member's listing needs.
    """

    max_attempts = 2

    def __init__(
        self,
        session: Session,
        user_id: int,
        household_id: Optional[int] = None,
        cache: Optional[Cache] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.household_id = household_id
        self.cache = cache

    def ensure_exists_for(self, target: date) -> list[Budget]:
        period = month_anchor(target)
        for attempt in range(1, self.max_attempts + 1):
            try:
                created = self._materialize(period)
            except IntegrityError as exc:
                # A concurrent request inserted the same scope first.
                self.session.rollback()
                logger.info(
                    f"budget_propagation_conflict: user_id={self.user_id} "
                    f"period={period.isoformat()} attempt={attempt}"
                )
                if attempt == self.max_attempts:
                    raise StorageError(
                        "Failed to materialize recurring budgets",
                        operation="propagate",
                        scope=period.isoformat(),
                    ) from exc
                continue
            except SQLAlchemyError as exc:
                self.session.rollback()
                logger.exception(
                    f"budget_propagation_failed: user_id={self.user_id} "
                    f"period={period.isoformat()}"
                )
                raise StorageError(
                    "Failed to materialize recurring budgets",
                    operation="propagate",
                    scope=period.isoformat(),
                ) from exc
            if created:
                logger.info(
                    f"budget_propagation: user_id={self.user_id} "
                    f"period={period.isoformat()} created={len(created)}"
                )
                self._invalidate(created)
            return created
        return []

    def _recurring_before(self, period: date) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(selectinload(Budget.category_links))
            .where(
                Budget.user_id == self.user_id,
                Budget.is_recurring.is_(True),
                Budget.period < period,
            )
            .order_by(Budget.period.desc(), Budget.id.desc())
        )
        return self.session.scalars(stmt).all()

    def _scopes_at(self, period: date) -> set[ScopeKey]:
        stmt = select(Budget.scope_key).where(
            Budget.user_id == self.user_id, Budget.period == period
        )
        return {parse_scope(key) for key in self.session.scalars(stmt)}

    def _materialize(self, period: date) -> list[Budget]:
        templates = latest_by_scope(self._recurring_before(period))
        if self.household_id is not None:
            templates = {
                key: source
                for key, source in templates.items()
                if source.household_id == self.household_id
            }
        if not templates:
            return []
        existing = self._scopes_at(period)

        pairs: list[tuple[Budget, Budget]] = []
        for key, source in templates.items():
            if key in existing:
                continue
            copy = Budget(
                user_id=self.user_id,
                household_id=source.household_id,
                period=period,
                amount_cents=source.amount_cents,
                category_id=source.category_id,
                subcategory_id=source.subcategory_id,
                group_id=source.group_id,
                scope_key=str(key),
                is_recurring=True,
                note=source.note,
            )
            pairs.append((copy, source))
        if not pairs:
            return []

        self.session.add_all([copy for copy, _ in pairs])
        self.session.flush()
        self._copy_links(pairs)
        self.session.commit()
        return [copy for copy, _ in pairs]

    def _copy_links(self, pairs: list[tuple[Budget, Budget]]) -> None:
        for copy, source in pairs:
            if not source.is_grouped:
                continue
            for category_id in source.linked_category_ids:
                copy.category_links.append(BudgetCategory(category_id=category_id))
        self.session.flush()

    def _invalidate(self, created: list[Budget]) -> None:
        if self.cache is None:
            return
        tags: set[str] = set()
        for budget in created:
            tags.update(budget_cache_tags(budget.user_id, budget.household_id))
        try:
            self.cache.invalidate_tags(sorted(tags))
        except CacheError:
            # Rows are committed; stale listings expire with their TTL.
            logger.warning(
                f"budget_cache_unavailable: op=invalidate user_id={self.user_id}",
                exc_info=True,
            )


def household_owner_ids(session: Session, household_id: int) -> list[int]:
    stmt = (
        select(Budget.user_id)
        .where(Budget.household_id == household_id, Budget.is_recurring.is_(True))
        .distinct()
        .order_by(Budget.user_id)
    )
    return session.scalars(stmt).all()


def propagate_for_all_users(
    session: Session, target: Optional[date] = None, cache: Optional[Cache] = None
) -> int:
    target = target or local_today()
    user_ids = session.scalars(
        select(Budget.user_id).where(Budget.is_recurring.is_(True)).distinct()
    ).all()
    count = 0
    for user_id in user_ids:
        created = RecurringBudgetPropagator(
            session, user_id, cache=cache
        ).ensure_exists_for(target)
        count += len(created)
    return count
