"""Free-text and PDF statement parsers.

Each line is tried against a cascade of date + description + amount
patterns, most specific first. Lines that look like a transaction but match
no pattern fall back to splitting on runs of 2+ spaces or tabs and reading
[first, middle..., last] as [date, description, amount].

Output rows are lower-confidence than CSV or spreadsheet rows: the caller
should treat this path as best effort. Lines without any date-like token
(page headers, totals, blank lines) are ignored silently.
"""

from __future__ import annotations

import io
import logging
import re

import pdfplumber

from .base import BaseParser, ParseError, ParseResult, ParsedRow, decode_blob

logger = logging.getLogger(__name__)

_MONTHS = {
    "jan": 1, "fev": 2, "feb": 2, "mar": 3, "abr": 4, "apr": 4,
    "mai": 5, "may": 5, "jun": 6, "jul": 7, "ago": 8, "aug": 8,
    "set": 9, "sep": 9, "out": 10, "oct": 10, "nov": 11,
    "dez": 12, "dec": 12,
}

_DATE = (
    r"(?:\d{4}[-/.]\d{1,2}[-/.]\d{1,2}"
    r"|\d{1,2}[-/.]\d{1,2}[-/.]\d{2,4}"
    r"|\d{1,2}\s+(?:" + "|".join(_MONTHS) + r")[a-z]*\.?\s+\d{2,4})"
)
_AMOUNT = r"[-+]?\s*(?:[€$£]\s*)?\d+(?:[.,]\d{3})*(?:[.,]\d{1,2})?"
_MONEY = r"[-+]?\s*(?:[€$£]\s*)?\d+(?:[.,]\d{3})*[.,]\d{2}"
_CURRENCY = r"(?:\s*(?:€|EUR|USD|GBP|BRL|R\$|\$|£))?"

# Most specific first: value date + balance columns before the plain form.
PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    ("two_dates_balance", re.compile(
        rf"^(?P<date>{_DATE})\s+{_DATE}\s+(?P<description>.+?)\s+"
        rf"(?P<amount>{_MONEY}){_CURRENCY}\s+(?P<balance>{_MONEY}){_CURRENCY}$",
        re.IGNORECASE,
    )),
    ("two_dates", re.compile(
        rf"^(?P<date>{_DATE})\s+{_DATE}\s+(?P<description>.+?)\s+"
        rf"(?P<amount>{_AMOUNT}){_CURRENCY}$",
        re.IGNORECASE,
    )),
    ("balance", re.compile(
        rf"^(?P<date>{_DATE})\s+(?P<description>.+?)\s+"
        rf"(?P<amount>{_MONEY}){_CURRENCY}\s+(?P<balance>{_MONEY}){_CURRENCY}$",
        re.IGNORECASE,
    )),
    ("simple", re.compile(
        rf"^(?P<date>{_DATE})\s+(?P<description>.+?)\s+"
        rf"(?P<amount>{_AMOUNT}){_CURRENCY}$",
        re.IGNORECASE,
    )),
)

_DATE_TOKEN = re.compile(_DATE, re.IGNORECASE)
_MONTH_NAME_DATE = re.compile(
    r"^(?P<day>\d{1,2})\s+(?P<month>[a-z]{3})[a-z]*\.?\s+(?P<year>\d{2,4})$",
    re.IGNORECASE,
)
_WIDE_GAP = re.compile(r"\s{2,}|\t")
_HAS_NUMBER = re.compile(r"\d")


def numeric_date(text: str) -> str:
    """Rewrite '15 Jan 2024' / '15 janeiro 2024' as '15/01/2024'."""
    m = _MONTH_NAME_DATE.match(text.strip())
    if m is None:
        return text
    month = _MONTHS.get(m.group("month").lower())
    if month is None:
        return text
    return f"{m.group('day')}/{month:02d}/{m.group('year')}"


class FreeTextParser(BaseParser):
    format_name = "text"

    def detect(self, blob: bytes | str) -> bool:
        text = decode_blob(blob)
        return any(_DATE_TOKEN.search(line) for line in text.splitlines())

    def parse(self, blob: bytes | str) -> ParseResult:
        text = decode_blob(blob)
        if not text.strip():
            raise ParseError("No text to parse")
        return self.parse_lines(text.splitlines())

    def parse_lines(self, lines: list[str]) -> ParseResult:
        result = ParseResult(format=self.format_name)
        for line_number, raw_line in enumerate(lines, start=1):
            line = raw_line.strip()
            if not line or not _DATE_TOKEN.search(line):
                continue
            fields = self._match_patterns(line) or self._split_columns(line)
            if fields is None:
                result.add_diagnostic(
                    line_number, f"No date/amount pattern recognised in {line!r}"
                )
                continue
            fields["line"] = line
            result.rows.append(ParsedRow(line_number=line_number, fields=fields))

        logger.info(
            "Free-text parse: %d rows, %d diagnostics",
            len(result.rows), len(result.diagnostics),
        )
        return result

    @staticmethod
    def _match_patterns(line: str) -> dict[str, str] | None:
        # Tabs act as plain whitespace for the regex cascade
        flat = " ".join(line.split())
        for name, pattern in PATTERNS:
            m = pattern.match(flat)
            if m is None:
                continue
            description = m.group("description").strip()
            if len(description) < 2:
                continue
            fields = {
                "date": numeric_date(m.group("date")),
                "description": description,
                "amount": m.group("amount").replace(" ", ""),
            }
            if "balance" in m.groupdict() and m.group("balance"):
                fields["balance"] = m.group("balance").replace(" ", "")
            logger.debug("Line matched pattern %s", name)
            return fields
        return None

    @staticmethod
    def _split_columns(line: str) -> dict[str, str] | None:
        parts = [p.strip() for p in _WIDE_GAP.split(line) if p.strip()]
        if len(parts) < 3 or not _HAS_NUMBER.search(parts[-1]):
            return None
        return {
            "date": numeric_date(parts[0]),
            "description": " ".join(parts[1:-1]),
            "amount": parts[-1],
        }


class PdfTextParser(FreeTextParser):
    """Extract the text layer of a PDF statement and parse it as free text."""

    format_name = "pdf"

    def detect(self, blob: bytes | str) -> bool:
        return isinstance(blob, bytes) and blob.startswith(b"%PDF")

    def parse(self, blob: bytes | str) -> ParseResult:
        if isinstance(blob, str):
            raise ParseError("PDF content must be bytes")
        lines: list[str] = []
        try:
            with pdfplumber.open(io.BytesIO(blob)) as pdf:
                for page in pdf.pages:
                    text = page.extract_text() or ""
                    lines.extend(text.splitlines())
        except Exception as e:  # pdfminer raises a variety of syntax errors
            raise ParseError(f"Unreadable PDF: {e}") from e

        if not any(line.strip() for line in lines):
            raise ParseError("PDF has no extractable text")
        result = self.parse_lines(lines)
        result.format = self.format_name
        return result
