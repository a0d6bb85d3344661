from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import BudgetStatus


class BudgetIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    period: Optional[date] = None
    amount_cents: int
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    group_id: Optional[int] = None
    category_ids: list[int] = Field(default_factory=list)
    is_recurring: bool = True
    note: Optional[str] = Field(default=None, max_length=200)


class BudgetAmountIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: int


class NamedRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    household_id: Optional[int] = None
    period: date
    amount_cents: int
    category_id: Optional[int] = None
    subcategory_id: Optional[int] = None
    group_id: Optional[int] = None
    scope_key: str
    is_recurring: bool
    note: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    category: Optional[NamedRef] = None
    subcategory: Optional[NamedRef] = None
    group: Optional[NamedRef] = None
    linked_categories: list[NamedRef] = Field(default_factory=list)

    display_name: str
    actual_spend_cents: int
    percentage: float
    status: BudgetStatus
