"""Row normalizer: loosely-typed parsed rows -> RawTransaction.

Column names vary by bank, language and export tool, so every canonical
field is discovered through an ordered alias list. Exact (accent-folded)
column names are tried before substring matches, so a "Valor" column wins
over "Data Valor" for the amount.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Mapping

from smartimport.categorize.similarity import fold
from smartimport.config import Tuning
from smartimport.database.models import TRANSACTION_TYPES, RawTransaction

from .base import ParsedRow
from .text_parser import numeric_date

logger = logging.getLogger(__name__)


class RowRejected(ValueError):
    """One row could not be normalized. Recorded as a diagnostic."""


DEFAULT_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "date": ("data", "date", "fecha", "datum", "transaction_date", "dt"),
    "description": (
        "descricao", "description", "desc", "memo", "details",
        "historico", "movimento", "concepto", "beschreibung",
    ),
    "amount": (
        "valor", "amount", "value", "montante", "quantia", "importe",
        "betrag", "debito", "credito", "debit", "credit",
    ),
    "type": ("tipo", "type", "categoria_tipo", "transaction_type"),
    "category": ("categoria", "category", "cat"),
    "account": ("conta", "account", "banco", "bank"),
    "tags": ("tags", "etiquetas", "labels"),
}

INCOME_WORDS = ("receita", "income", "credit", "credito", "entrada", "deposit")
TRANSFER_WORDS = ("transferencia", "transfer")
EXPENSE_WORDS = ("despesa", "expense", "debit", "debito", "saida", "payment")

_ISO_DATE = re.compile(r"^(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})(?:[T ].*)?$")
_DMY_SPLIT = re.compile(r"[/.\-]")
_NOT_NUMERIC = re.compile(r"[^\d.,]")
_TAG_SPLIT = re.compile(r"[,;|]")


# ── Dates ────────────────────────────────────────────────


def _iso_date(text: str) -> date | None:
    m = _ISO_DATE.match(text)
    if m is None:
        return None
    year, month, day = (int(g) for g in m.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _dmy_date(text: str) -> date | None:
    parts = [p.strip() for p in _DMY_SPLIT.split(text)]
    if len(parts) != 3 or not all(p.isdecimal() and len(p) <= 4 for p in parts):
        return None
    try:
        day, month, year = (int(p) for p in parts)
        if len(parts[2]) <= 2:
            year += 2000
        return date(year, month, day)
    except (ValueError, OverflowError):
        return None


def parse_date(text, today: date | None = None) -> tuple[date, bool]:
    """Parse a statement date; unparseable input falls back to today.

    Returns (date, fell_back). Never raises, whatever the input.
    """
    cleaned = numeric_date(str(text).strip()) if text is not None else ""
    if cleaned:
        parsed = _iso_date(cleaned) or _dmy_date(cleaned.split(" ")[0])
        if parsed is not None:
            return parsed, False
    return today or date.today(), True


# ── Amounts ──────────────────────────────────────────────


def parse_amount(text, decimal_comma: bool = True) -> Decimal | None:
    """Parse an amount string into a non-negative Decimal.

    The last separator is the decimal separator when both "." and "," occur.
    A lone separator followed by three digits is a thousands separator only
    where the locale convention says so. Returns None for non-numeric text.
    """
    if text is None:
        return None
    digits = _NOT_NUMERIC.sub("", str(text))
    if not any(c.isdigit() for c in digits):
        return None

    if "." in digits and "," in digits:
        decimal_sep = "." if digits.rfind(".") > digits.rfind(",") else ","
        thousands_sep = "," if decimal_sep == "." else "."
        digits = digits.replace(thousands_sep, "").replace(decimal_sep, ".")
    else:
        sep = "," if "," in digits else "." if "." in digits else None
        if sep is not None:
            head, _, tail = digits.rpartition(sep)
            grouped = digits.count(sep) > 1 or (
                len(tail) == 3 and (sep == ",") != decimal_comma
            )
            if grouped:
                digits = digits.replace(sep, "")
            else:
                digits = f"{head.replace(sep, '')}.{tail}"

    try:
        return abs(Decimal(digits))
    except InvalidOperation:
        return None


def _sign_type(text: str) -> str | None:
    stripped = text.strip().lstrip("€$£R ")
    if stripped.startswith("-") or stripped.endswith("-"):
        return "expense"
    if stripped.startswith("(") and stripped.endswith(")"):
        return "expense"
    if stripped.startswith("+"):
        return "income"
    return None


def _keyword_type(text: str) -> str | None:
    folded = fold(text)
    if any(word in folded for word in TRANSFER_WORDS):
        return "transfer"
    if any(word in folded for word in INCOME_WORDS):
        return "income"
    if any(word in folded for word in EXPENSE_WORDS):
        return "expense"
    return None


def infer_type(
    type_value: str | None,
    amount_text: str,
    amount_column: str | None = None,
) -> str | None:
    """Resolve the transaction type, strongest signal first.

    An explicit type value beats the sign of the amount, which beats the
    name of a credit/debit amount column, which beats keywords inside the
    type value. None means no signal (treated as expense downstream).
    """
    if type_value:
        explicit = fold(type_value)
        if explicit in TRANSACTION_TYPES:
            return explicit
    sign = _sign_type(amount_text)
    if sign:
        return sign
    if amount_column:
        column = fold(amount_column)
        if "credit" in column:
            return "income"
        if "debit" in column:
            return "expense"
    if type_value:
        return _keyword_type(type_value)
    return None


def split_tags(text: str | None) -> tuple[str, ...]:
    if not text:
        return ()
    tags: list[str] = []
    for part in _TAG_SPLIT.split(text):
        tag = part.strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tuple(tags)


# ── Normalizer ───────────────────────────────────────────


class RowNormalizer:
    """Map parsed rows onto RawTransaction.

    Args:
        aliases: Per-field alias lists, defaults to DEFAULT_FIELD_ALIASES.
        tuning: Supplies the date policy and the decimal convention.
        today: Fixed fallback date, mostly for tests.
    """

    def __init__(
        self,
        aliases: Mapping[str, tuple[str, ...]] | None = None,
        tuning: Tuning | None = None,
        today: date | None = None,
    ):
        self.aliases = dict(DEFAULT_FIELD_ALIASES)
        if aliases:
            self.aliases.update(aliases)
        self.tuning = tuning or Tuning()
        self.today = today

    @property
    def strict_dates(self) -> bool:
        return self.tuning.date_policy == "reject"

    def find_field(
        self, fields: Mapping[str, str], field_name: str
    ) -> tuple[str | None, str | None]:
        """Return (column, value) of the first alias with a non-empty value."""
        columns = [(fold(col), col) for col in fields]
        aliases = self.aliases.get(field_name, ())
        for exact in (True, False):
            for alias in aliases:
                for folded, col in columns:
                    matches = folded == alias if exact else alias in folded
                    value = (fields[col] or "").strip() if matches else ""
                    if value:
                        return col, value
        return None, None

    def normalize_row(
        self, fields: Mapping[str, str] | ParsedRow, line_number: int | None = None
    ) -> RawTransaction:
        """Normalize one row.

        Raises:
            RowRejected: If the description or amount cannot be resolved,
                the date cannot be parsed under the "reject" date policy, or
                the row's values break a converter in any other way.
        """
        if isinstance(fields, ParsedRow):
            line_number = fields.line_number
            fields = fields.fields

        try:
            return self._to_raw(fields, line_number)
        except RowRejected:
            raise
        except (ValueError, TypeError, ArithmeticError, AttributeError) as e:
            logger.warning("Line %s: malformed row: %s", line_number, e)
            raise RowRejected(f"Malformed row: {e}") from e

    def _to_raw(
        self, fields: Mapping[str, str], line_number: int | None
    ) -> RawTransaction:
        _, description = self.find_field(fields, "description")
        if not description:
            raise RowRejected("Missing description")
        description = " ".join(description.split())

        amount_column, amount_text = self.find_field(fields, "amount")
        if not amount_text:
            raise RowRejected("Missing amount")
        amount = parse_amount(amount_text, self.tuning.decimal_comma)
        if amount is None:
            raise RowRejected(f"Amount is not numeric: {amount_text!r}")

        _, date_text = self.find_field(fields, "date")
        txn_date, fell_back = parse_date(date_text, self.today)
        if fell_back:
            if self.strict_dates:
                raise RowRejected(f"Unparseable date: {date_text!r}")
            logger.warning(
                "Line %s: unparseable date %r, using %s",
                line_number, date_text, txn_date.isoformat(),
            )

        _, type_value = self.find_field(fields, "type")
        _, category_hint = self.find_field(fields, "category")
        _, account_hint = self.find_field(fields, "account")
        _, tags = self.find_field(fields, "tags")

        return RawTransaction(
            date=txn_date,
            description=description,
            amount=amount,
            type_hint=infer_type(type_value, amount_text, amount_column),
            category_hint=category_hint,
            account_hint=account_hint,
            tags=split_tags(tags),
            source_row=dict(fields),
            line_number=line_number,
            date_fallback=fell_back,
        )

    def normalize(
        self, fields: Mapping[str, str] | ParsedRow, line_number: int | None = None
    ) -> RawTransaction | None:
        """Like normalize_row, but a rejected row yields None."""
        try:
            return self.normalize_row(fields, line_number)
        except RowRejected as e:
            logger.debug("Line %s rejected: %s", line_number, e)
            return None
