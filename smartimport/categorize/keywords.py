"""Locale keyword table: a fixed keyword -> category-name mapping.

The table maps a category name stem to the keywords that point at it. A
category qualifies when its (folded) name contains the stem or the keyword
itself. keywords.yaml overrides the built-in Portuguese table. Keywords match
whole words (an optional plural "s" allowed), so "metro" does not hit
"taximetro".
"""

from __future__ import annotations

import logging
import re

from smartimport.categorize.context import Candidate, SuggestionContext
from smartimport.categorize.similarity import fold
from smartimport.config import Tuning
from smartimport.database.models import Category, RawTransaction

logger = logging.getLogger(__name__)

DEFAULT_KEYWORDS: dict[str, list[str]] = {
    "alimentacao": [
        "supermercado", "continente", "pingo doce", "lidl", "auchan",
        "restaurante", "cafe", "padaria",
    ],
    "transporte": [
        "combustivel", "gasolina", "gasoleo", "metro", "autocarro", "taxi",
        "uber", "bolt",
    ],
    "saude": ["farmacia", "hospital", "clinica", "medico", "dentista"],
    "entretenimento": ["cinema", "teatro", "spotify", "netflix", "gaming"],
    "utilidades": [
        "agua", "luz", "gas", "internet", "telefone", "edp", "nos", "meo",
    ],
    "salario": ["salario", "ordenado", "vencimento", "remuneracao"],
}


def find_category(
    stem: str, keyword: str, categories: list[Category]
) -> Category | None:
    for category in categories:
        name = fold(category.name)
        if stem in name or keyword in name:
            return category
    return None


def keyword_hit(keyword: str, text: str) -> bool:
    return re.search(rf"\b{re.escape(keyword)}s?\b", text) is not None


def keyword_source(
    raw: RawTransaction, context: SuggestionContext, tuning: Tuning
) -> Candidate | None:
    table = context.keywords or DEFAULT_KEYWORDS
    texts = [fold(raw.description)]
    if raw.category_hint:
        texts.append(fold(raw.category_hint))

    for stem, keywords in table.items():
        stem = fold(stem)
        for keyword in map(fold, keywords):
            if not keyword or not any(keyword_hit(keyword, text) for text in texts):
                continue
            category = find_category(stem, keyword, context.categories)
            if category is None:
                continue
            logger.debug("Keyword %r -> %s", keyword, category.id)
            return Candidate(
                source="keyword",
                category_id=category.id,
                account_id=context.first_account_id,
                confidence=tuning.keyword_confidence,
                explanation=f"Keyword '{keyword}' suggests {category.name}",
            )
    return None
