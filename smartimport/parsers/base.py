"""Base parser: shared interface, data structures, and utility functions."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class ParseError(ValueError):
    """The whole blob is unreadable or its format cannot be determined.

    Aborts the import: there is nothing to review.
    """


@dataclass(frozen=True)
class ParsedRow:
    """One loosely-typed row as read from the file, keyed by column name."""
    line_number: int  # 1-based line (or sheet row) in the source
    fields: dict[str, str]


@dataclass(frozen=True)
class Diagnostic:
    line_number: int | None
    message: str

    def __str__(self) -> str:
        if self.line_number is None:
            return self.message
        return f"Line {self.line_number}: {self.message}"


@dataclass
class ParseResult:
    format: str
    rows: list[ParsedRow] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def add_diagnostic(self, line_number: int | None, message: str) -> None:
        logger.debug("Line %s skipped: %s", line_number, message)
        self.diagnostics.append(Diagnostic(line_number, message))


class BaseParser(ABC):
    """Abstract base for all format parsers.

    parse() never raises for a single bad row: the row is skipped and
    recorded in the result's diagnostics with its line number. ParseError is
    reserved for blobs that cannot be read at all.
    """

    format_name: str = "unknown"

    @abstractmethod
    def parse(self, blob: bytes | str) -> ParseResult:
        """Parse a raw blob and return its rows plus per-row diagnostics."""

    @abstractmethod
    def detect(self, blob: bytes | str) -> bool:
        """Return True if this parser can handle the given blob."""


def decode_blob(blob: bytes | str) -> str:
    """Decode file bytes as UTF-8 (BOM aware), falling back to Latin-1."""
    if isinstance(blob, str):
        return blob.lstrip("\ufeff")
    try:
        return blob.decode("utf-8-sig")
    except UnicodeDecodeError:
        logger.debug("Blob is not valid UTF-8, decoding as Latin-1")
        return blob.decode("latin-1")
