"""Delimited text parser (CSV, TSV, semicolon and pipe separated exports).

The delimiter is chosen from the header line: whichever candidate splits it
into the most columns wins. The header row defines the field names and every
later row must have the same number of columns.

Unquoted amounts written with a decimal comma in a comma-separated file
(`15/01/2024,Continente,-45,67`) split into one extra column. Such rows are
repaired by re-joining an `integer | 1-2 digit` pair before the column
count is checked.
"""

from __future__ import annotations

import csv
import io
import logging
import re

from .base import BaseParser, ParseError, ParseResult, ParsedRow, decode_blob

logger = logging.getLogger(__name__)

CANDIDATE_DELIMITERS: tuple[str, ...] = (",", ";", "\t", "|")

_INTEGER_PART = re.compile(r"^[-+]?\s*[€$£]?\s*\d{1,3}(?:\.\d{3})*$|^[-+]?\s*[€$£]?\s*\d+$")
_DECIMAL_PART = re.compile(r"^\d{1,2}\s*[€$£]?$")


def detect_delimiter(header_line: str) -> str:
    """Pick the candidate delimiter that yields the most header columns."""
    best = CANDIDATE_DELIMITERS[0]
    best_count = 0
    for delimiter in CANDIDATE_DELIMITERS:
        count = len(header_line.split(delimiter))
        if count > best_count:
            best = delimiter
            best_count = count
    return best


def repair_decimal_commas(values: list[str], expected: int) -> list[str]:
    """Re-join amounts that an unquoted decimal comma split in two.

    Works from the right, since amounts are usually the last columns, and
    only while the row still has more columns than the header.
    """
    values = list(values)
    i = len(values) - 2
    while len(values) > expected and i >= 0:
        left, right = values[i].strip(), values[i + 1].strip()
        if _INTEGER_PART.match(left) and _DECIMAL_PART.match(right):
            values[i:i + 2] = [f"{left},{right}"]
        i -= 1
    return values


class DelimitedTextParser(BaseParser):
    """Parse header-first delimited text.

    Args:
        delimiter: Force a delimiter instead of detecting it from the header.
    """

    format_name = "csv"

    def __init__(self, delimiter: str | None = None):
        self.delimiter = delimiter

    def detect(self, blob: bytes | str) -> bool:
        """A header line with at least two columns for some delimiter."""
        text = decode_blob(blob)
        header = next((line for line in text.splitlines() if line.strip()), "")
        return any(len(header.split(d)) >= 2 for d in CANDIDATE_DELIMITERS)

    def parse(self, blob: bytes | str) -> ParseResult:
        text = decode_blob(blob)
        lines = text.splitlines()
        header_index = next(
            (i for i, line in enumerate(lines) if line.strip()), None
        )
        if header_index is None:
            raise ParseError("File is empty: no header row found")

        delimiter = self.delimiter or detect_delimiter(lines[header_index])
        reader = csv.reader(
            io.StringIO("\n".join(lines[header_index:])),
            delimiter=delimiter,
            skipinitialspace=True,
        )
        result = ParseResult(format=self.format_name)

        try:
            header = [h.strip() for h in next(reader)]
        except (csv.Error, StopIteration) as e:
            raise ParseError(f"Unreadable header row: {e}") from e
        if len(header) < 2 or not any(header):
            raise ParseError("Header row has fewer than two columns")

        offset = header_index  # reader.line_num counts from the header line
        while True:
            try:
                values = next(reader)
            except StopIteration:
                break
            except csv.Error as e:
                result.add_diagnostic(reader.line_num + offset, f"Malformed row: {e}")
                continue
            line_number = reader.line_num + offset
            if not values or not any(v.strip() for v in values):
                continue  # blank line

            if len(values) > len(header):
                values = repair_decimal_commas(values, len(header))
            if len(values) != len(header):
                result.add_diagnostic(
                    line_number,
                    f"Expected {len(header)} columns, found {len(values)}",
                )
                continue

            fields = {
                name: value.strip()
                for name, value in zip(header, values)
                if name
            }
            result.rows.append(ParsedRow(line_number=line_number, fields=fields))

        logger.info(
            "Delimited parse (%r): %d rows, %d diagnostics",
            delimiter, len(result.rows), len(result.diagnostics),
        )
        return result
