"""Default fallback: a catch-all category for the row's transaction type."""

from __future__ import annotations

from smartimport.categorize.context import Candidate, SuggestionContext
from smartimport.categorize.similarity import fold
from smartimport.config import Tuning
from smartimport.database.models import Category, RawTransaction

DEFAULT_STEMS: dict[str, tuple[str, ...]] = {
    "income": ("receita", "salario", "income"),
    "transfer": ("transfer",),
    "expense": ("geral", "outros", "general", "other"),
}


def default_category(
    txn_type: str, categories: list[Category]
) -> Category | None:
    """First category named after the type's stems, else the first one
    declaring that type.

    Transfers without a transfer category fall back to the expense default.
    """
    for kind in (txn_type, "expense") if txn_type == "transfer" else (txn_type,):
        stems = DEFAULT_STEMS.get(kind, ())
        for category in categories:
            if any(stem in fold(category.name) for stem in stems):
                return category
        for category in categories:
            if category.type == kind:
                return category
    return None


def default_source(
    raw: RawTransaction, context: SuggestionContext, tuning: Tuning
) -> Candidate | None:
    txn_type = raw.transaction_type
    category = default_category(txn_type, context.categories)
    if category is None:
        return None
    return Candidate(
        source="default",
        category_id=category.id,
        account_id=context.first_account_id,
        confidence=tuning.default_confidence,
        explanation=f"Default category for {txn_type}",
    )
