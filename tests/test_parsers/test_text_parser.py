"""Tests for the free-text and PDF statement parsers."""

from unittest.mock import MagicMock, patch

import pytest

from smartimport.parsers.base import ParseError
from smartimport.parsers.text_parser import FreeTextParser, PdfTextParser, numeric_date


class TestNumericDate:
    def test_english_month(self):
        assert numeric_date("15 Jan 2024") == "15/01/2024"

    def test_portuguese_month_full_name(self):
        assert numeric_date("3 fevereiro 2024") == "3/02/2024"

    def test_non_month_text_unchanged(self):
        assert numeric_date("15/01/2024") == "15/01/2024"


class TestPatterns:
    def test_tab_separated_paste(self):
        result = FreeTextParser().parse("2024-01-15\tSalario\t2500.00")
        assert result.rows[0].fields["date"] == "2024-01-15"
        assert result.rows[0].fields["description"] == "Salario"
        assert result.rows[0].fields["amount"] == "2500.00"

    def test_value_date_and_balance_columns(self):
        result = FreeTextParser().parse(
            "15/01/2024 15/01/2024 COMPRA CONTINENTE -45,67 1.234,56"
        )
        fields = result.rows[0].fields
        assert fields["date"] == "15/01/2024"
        assert fields["description"] == "COMPRA CONTINENTE"
        assert fields["amount"] == "-45,67"
        assert fields["balance"] == "1.234,56"

    def test_month_name_date_and_currency(self):
        result = FreeTextParser().parse("15 Jan 2024 Netflix 7,99 €")
        fields = result.rows[0].fields
        assert fields["date"] == "15/01/2024"
        assert fields["description"] == "Netflix"
        assert fields["amount"] == "7,99"

    def test_keeps_original_line(self):
        result = FreeTextParser().parse("2024-01-15 Uber 12.50")
        assert result.rows[0].fields["line"] == "2024-01-15 Uber 12.50"


class TestFallbackAndNoise:
    def test_column_split_fallback(self):
        result = FreeTextParser().parse("2024-01-15\tLoja Luanda\t45,67 Kz")
        fields = result.rows[0].fields
        assert fields == {
            "date": "2024-01-15",
            "description": "Loja Luanda",
            "amount": "45,67 Kz",
            "line": "2024-01-15\tLoja Luanda\t45,67 Kz",
        }

    def test_lines_without_dates_ignored(self):
        text = "Extrato de conta\nSaldo anterior 1.000,00\n2024-01-15 Uber 12.50\n"
        result = FreeTextParser().parse(text)
        assert len(result.rows) == 1
        assert result.diagnostics == []

    def test_dated_line_without_amount_is_diagnostic(self):
        result = FreeTextParser().parse("2024-01-15 Uber 12.50\n2024-01-16 Saldo")
        assert len(result.rows) == 1
        assert result.diagnostics[0].line_number == 2

    def test_line_numbers_are_one_based(self):
        result = FreeTextParser().parse("header\n\n2024-01-15 Uber 12.50")
        assert result.rows[0].line_number == 3

    def test_blank_text_raises(self):
        with pytest.raises(ParseError):
            FreeTextParser().parse("   \n ")


class TestPdfTextParser:
    @staticmethod
    def _fake_pdf(*page_texts):
        pdf = MagicMock()
        pdf.pages = [MagicMock(**{"extract_text.return_value": t}) for t in page_texts]
        pdf.__enter__.return_value = pdf
        return pdf

    def test_detect(self):
        assert PdfTextParser().detect(b"%PDF-1.7\n") is True
        assert PdfTextParser().detect("%PDF") is False

    def test_parses_all_pages(self):
        fake = self._fake_pdf(
            "Banco Exemplo\n15/01/2024 Continente 45,67",
            "16/01/2024 Farmacia Central 9,99\nTotal 55,66",
        )
        with patch("smartimport.parsers.text_parser.pdfplumber.open", return_value=fake):
            result = PdfTextParser().parse(b"%PDF-1.7 fake")
        assert result.format == "pdf"
        assert [r.fields["description"] for r in result.rows] == [
            "Continente", "Farmacia Central",
        ]

    def test_pdf_without_text_raises(self):
        fake = self._fake_pdf(None, "")
        with patch("smartimport.parsers.text_parser.pdfplumber.open", return_value=fake):
            with pytest.raises(ParseError, match="no extractable text"):
                PdfTextParser().parse(b"%PDF-1.7 scanned")

    def test_unreadable_pdf_raises(self):
        with patch(
            "smartimport.parsers.text_parser.pdfplumber.open",
            side_effect=ValueError("broken xref"),
        ):
            with pytest.raises(ParseError, match="Unreadable PDF"):
                PdfTextParser().parse(b"%PDF-garbage")

    def test_text_input_raises(self):
        with pytest.raises(ParseError):
            PdfTextParser().parse("%PDF as text")
