from __future__ import annotations


class NotFoundError(LookupError):
    """Raised when a record does not exist or is not owned by the caller."""


class CategoryInUseError(RuntimeError):
    """Raised when deleting a category that expenses still reference."""


class AIUnavailableError(RuntimeError):
    """Raised when AI features are requested without a configured API key."""


class ExpenseParseError(RuntimeError):
    """Raised when free text could not be turned into an expense."""
