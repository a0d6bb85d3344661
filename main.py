import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import Response
from sqlalchemy.orm import Session

from cache import Cache, MemoryCache
from config import get_settings
from database import get_db
from errors import (
    BudgetError,
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from periods import resolve_month
from recurrence import local_today
from scheduler import SchedulerManager
from schemas import BudgetAmountIn, BudgetIn, BudgetOut
from services import (
    BudgetMutationService,
    BudgetQueryService,
    get_current_user_id,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Budgets")
app.state.budget_cache = MemoryCache()

scheduler_manager = SchedulerManager(cache=app.state.budget_cache)


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@dataclass(frozen=True)
class Caller:
    user_id: int
    household_id: Optional[int]


def get_caller(
    x_user_id: Optional[int] = Header(default=None),
    x_household_id: Optional[int] = Header(default=None),
) -> Caller:
    return Caller(
        user_id=x_user_id if x_user_id is not None else get_current_user_id(),
        household_id=x_household_id,
    )


def get_cache(request: Request) -> Cache:
    return request.app.state.budget_cache


def _http_error(exc: BudgetError) -> HTTPException:
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, StorageError):
        logger.error(f"budget_storage_error: {exc}")
        return HTTPException(status_code=500, detail="Budget storage failure")
    return HTTPException(status_code=400, detail=str(exc))


def _queries(db: Session, caller: Caller, cache: Cache) -> BudgetQueryService:
    return BudgetQueryService(
        db, caller.user_id, caller.household_id, cache, get_settings().cache_ttl_secs
    )


@app.get("/budgets", response_model=list[BudgetOut])
def list_budgets(
    month: Optional[str] = Query(default=None, description="YYYY-MM"),
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    cache: Cache = Depends(get_cache),
):
    try:
        period = resolve_month(month, today=local_today())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        return _queries(db, caller, cache).list_for_month(period.start)
    except BudgetError as exc:
        raise _http_error(exc) from exc


@app.get("/budgets/{budget_id}", response_model=BudgetOut)
def get_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    cache: Cache = Depends(get_cache),
):
    try:
        return _queries(db, caller, cache).get(budget_id)
    except BudgetError as exc:
        raise _http_error(exc) from exc


@app.post("/budgets", response_model=BudgetOut, status_code=201)
def create_budget(
    data: BudgetIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    cache: Cache = Depends(get_cache),
):
    service = BudgetMutationService(db, caller.user_id, caller.household_id, cache)
    try:
        budget = service.create(data)
        return _queries(db, caller, cache).get(budget.id)
    except BudgetError as exc:
        raise _http_error(exc) from exc


@app.patch("/budgets/{budget_id}", response_model=BudgetOut)
def update_budget(
    budget_id: int,
    data: BudgetAmountIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    cache: Cache = Depends(get_cache),
):
    service = BudgetMutationService(db, caller.user_id, caller.household_id, cache)
    try:
        service.update_amount(budget_id, data.amount_cents)
        return _queries(db, caller, cache).get(budget_id)
    except BudgetError as exc:
        raise _http_error(exc) from exc


@app.delete("/budgets/{budget_id}", status_code=204)
def delete_budget(
    budget_id: int,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    cache: Cache = Depends(get_cache),
):
    service = BudgetMutationService(db, caller.user_id, caller.household_id, cache)
    try:
        service.delete(budget_id)
    except BudgetError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


def main():
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
