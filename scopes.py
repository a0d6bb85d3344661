"""Identity of what a budget is for.

A budget covers exactly one of: a category, a category narrowed to one
subcategory, or a named group of categories. The string form is what the
``budgets.scope_key`` column stores and what the uniqueness constraint uses.
"""

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class CategoryScope:
    category_id: int

    def __str__(self) -> str:
        return f"cat:{self.category_id}"


@dataclass(frozen=True)
class SubcategoryScope:
    category_id: int
    subcategory_id: int

    def __str__(self) -> str:
        return f"cat:{self.category_id}:sub:{self.subcategory_id}"


@dataclass(frozen=True)
class GroupScope:
    group_id: int

    def __str__(self) -> str:
        return f"group:{self.group_id}"


ScopeKey = Union[CategoryScope, SubcategoryScope, GroupScope]


def make_scope(
    category_id: Optional[int] = None,
    subcategory_id: Optional[int] = None,
    group_id: Optional[int] = None,
) -> ScopeKey:
    if group_id is not None:
        if category_id is not None or subcategory_id is not None:
            raise ValueError("A grouped budget cannot also target a category")
        return GroupScope(group_id)
    if category_id is None:
        raise ValueError("A budget needs either a category or a group")
    if subcategory_id is not None:
        return SubcategoryScope(category_id, subcategory_id)
    return CategoryScope(category_id)


def scope_of(budget) -> ScopeKey:
    return make_scope(budget.category_id, budget.subcategory_id, budget.group_id)


def parse_scope(value: str) -> ScopeKey:
    parts = value.split(":")
    try:
        if len(parts) == 2 and parts[0] == "group":
            return GroupScope(int(parts[1]))
        if len(parts) == 2 and parts[0] == "cat":
            return CategoryScope(int(parts[1]))
        if len(parts) == 4 and parts[0] == "cat" and parts[2] == "sub":
            return SubcategoryScope(int(parts[1]), int(parts[3]))
    except ValueError:
        pass
    raise ValueError(f"Invalid scope key: {value!r}")
