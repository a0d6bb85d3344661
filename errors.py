from typing import Optional


class BudgetError(ValueError):
    pass


class ValidationError(BudgetError):
    """Malformed budget input; raised before anything is written."""


class ConflictError(BudgetError):
    """A budget already exists for the same owner, period and scope."""


class NotFoundError(BudgetError):
    pass


class StorageError(BudgetError):
    def __init__(
        self, message: str, *, operation: str, scope: Optional[str] = None
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.scope = scope

    def __str__(self) -> str:
        base = super().__str__()
        if self.scope:
            return f"{base} (operation={self.operation} scope={self.scope})"
        return f"{base} (operation={self.operation})"
