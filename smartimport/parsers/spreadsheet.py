"""Spreadsheet parser (.xlsx / .xlsm) backed by openpyxl.

Only the first sheet is read. Row 1 holds the headers, empty cells become
empty strings and completely empty rows are skipped without a diagnostic.
"""

from __future__ import annotations

import io
import logging
import zipfile
from datetime import date, datetime, time

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .base import BaseParser, ParseError, ParseResult, ParsedRow

logger = logging.getLogger(__name__)

_XLSX_MAGIC = b"PK\x03\x04"
_XLS_MAGIC = b"\xd0\xcf\x11\xe0"


def cell_to_text(value) -> str:
    """Render a cell value the way the normalizer expects to read it."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, time):
        return value.isoformat()
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value).strip()


class SpreadsheetParser(BaseParser):
    format_name = "spreadsheet"

    def detect(self, blob: bytes | str) -> bool:
        return isinstance(blob, bytes) and blob.startswith(_XLSX_MAGIC)

    def parse(self, blob: bytes | str) -> ParseResult:
        if isinstance(blob, str):
            raise ParseError("Spreadsheet content must be bytes")
        if blob.startswith(_XLS_MAGIC):
            raise ParseError("Legacy .xls workbooks are not supported; save as .xlsx")

        try:
            workbook = load_workbook(io.BytesIO(blob), read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
            raise ParseError(f"Unreadable spreadsheet: {e}") from e

        try:
            if not workbook.worksheets:
                raise ParseError("Workbook contains no sheets")
            sheet = workbook.worksheets[0]
            return self._parse_sheet(sheet)
        finally:
            workbook.close()

    def _parse_sheet(self, sheet) -> ParseResult:
        result = ParseResult(format=self.format_name)
        rows = sheet.iter_rows(values_only=True)

        header_cells = next(rows, None)
        if header_cells is None:
            raise ParseError(f"Sheet '{sheet.title}' is empty")
        header = [cell_to_text(c) for c in header_cells]
        if not any(header):
            raise ParseError(f"Sheet '{sheet.title}' has an empty header row")

        for line_number, cells in enumerate(rows, start=2):
            values = [cell_to_text(c) for c in cells]
            if not any(values):
                continue
            values += [""] * (len(header) - len(values))
            fields = {
                name: value
                for name, value in zip(header, values)
                if name
            }
            result.rows.append(ParsedRow(line_number=line_number, fields=fields))

        logger.info(
            "Spreadsheet parse (sheet '%s'): %d rows", sheet.title, len(result.rows)
        )
        return result
