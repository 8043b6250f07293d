"""Parser auto-detection.

Chooses a parser from, in order: the declared format, the file extension,
then the content itself. Pasted text without a file name is delimited text
when its first line reads like a header (a date column and an amount
column), otherwise free text.
"""

from __future__ import annotations

import logging
from pathlib import PurePath

from .base import BaseParser, ParseError, ParseResult, decode_blob
from .csv_parser import DelimitedTextParser, detect_delimiter
from .normalizer import DEFAULT_FIELD_ALIASES
from .spreadsheet import SpreadsheetParser
from .text_parser import FreeTextParser, PdfTextParser

logger = logging.getLogger(__name__)

FORMATS = ("csv", "spreadsheet", "text", "pdf")

EXTENSION_FORMATS = {
    ".csv": "csv",
    ".tsv": "csv",
    ".xlsx": "spreadsheet",
    ".xlsm": "spreadsheet",
    ".pdf": "pdf",
    ".txt": None,  # delimited or free text, decided by content
}

FORMAT_ALIASES = {
    "tsv": "csv",
    "xlsx": "spreadsheet",
    "excel": "spreadsheet",
    "paste": "text",
    "txt": "text",
}


def parser_for(fmt: str) -> BaseParser:
    fmt = FORMAT_ALIASES.get(fmt, fmt)
    if fmt == "csv":
        return DelimitedTextParser()
    if fmt == "spreadsheet":
        return SpreadsheetParser()
    if fmt == "pdf":
        return PdfTextParser()
    if fmt == "text":
        return FreeTextParser()
    raise ParseError(f"Unsupported format: {fmt}")


def looks_like_header(line: str) -> bool:
    """True when a line names both a date column and an amount column."""
    columns = [c.strip().lower() for c in line.split(detect_delimiter(line))]
    if len(columns) < 2:
        return False

    def names(field: str) -> bool:
        return any(
            alias in column
            for alias in DEFAULT_FIELD_ALIASES[field]
            for column in columns
        )

    return names("date") and names("amount")


def detect_format(blob: bytes | str, file_name: str | None = None) -> str:
    """Return one of FORMATS for the blob.

    Raises:
        ParseError: If the blob is empty or no parser can handle it.
    """
    if not blob:
        raise ParseError("Nothing to import: the content is empty")

    if file_name:
        suffix = PurePath(file_name).suffix.lower()
        if suffix == ".xls":
            raise ParseError("Legacy .xls workbooks are not supported; save as .xlsx")
        fmt = EXTENSION_FORMATS.get(suffix)
        if fmt is not None:
            return fmt

    if PdfTextParser().detect(blob):
        return "pdf"
    if SpreadsheetParser().detect(blob):
        return "spreadsheet"

    text = decode_blob(blob)
    first = next((line for line in text.splitlines() if line.strip()), "")
    if looks_like_header(first):
        return "csv"
    if FreeTextParser().detect(text):
        return "text"
    if DelimitedTextParser().detect(text):
        return "csv"
    raise ParseError("Could not determine the format of the content")


def parse_blob(
    blob: bytes | str,
    file_name: str | None = None,
    fmt: str | None = None,
) -> ParseResult:
    """Detect the format (unless declared) and parse the blob."""
    fmt = fmt or detect_format(blob, file_name)
    parser = parser_for(fmt)
    logger.info(
        "Parsing %s as %s", file_name or "pasted content", parser.format_name
    )
    return parser.parse(blob)
