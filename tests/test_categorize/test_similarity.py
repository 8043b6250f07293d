"""Tests for the description similarity strategies."""

import pytest

from smartimport.categorize.similarity import (
    BestOfSimilarity,
    LevenshteinSimilarity,
    PhoneticSimilarity,
    TokenSetSimilarity,
    default_similarity,
    fold,
    soundex,
)


class TestFold:
    def test_strips_accents_and_case(self):
        assert fold("  Farmácia   CENTRAL ") == "farmacia central"

    def test_none_is_empty(self):
        assert fold(None) == ""


class TestSoundex:
    @pytest.mark.parametrize("name,key", [
        ("Robert", "R163"),
        ("Rupert", "R163"),
        ("Tymczak", "T522"),
        ("Pfister", "P236"),
        ("Lee", "L000"),
    ])
    def test_classic_keys(self, name, key):
        assert soundex(name) == key

    def test_key_is_not_truncated(self):
        assert soundex("Ashcraft") == "A2613"

    def test_no_letters(self):
        assert soundex("1234") == ""

    def test_accents_folded(self):
        assert soundex("Salário") == soundex("Salario")


class TestLevenshtein:
    def test_identical(self):
        assert LevenshteinSimilarity().score("Salario", "SALARIO") == 1.0

    def test_both_empty(self):
        assert LevenshteinSimilarity().score("", "") == 1.0

    def test_one_empty(self):
        assert LevenshteinSimilarity().score("abc", "") == 0.0

    def test_edit_distance_ratio(self):
        assert LevenshteinSimilarity().score("kitten", "sitting") == pytest.approx(1 - 3 / 7)

    def test_symmetric(self):
        s = LevenshteinSimilarity()
        assert s.score("Uber trip", "Uber trp") == s.score("Uber trp", "Uber trip")


class TestPhonetic:
    def test_same_key(self):
        assert PhoneticSimilarity().score("Robert", "Rupert") == 1.0

    def test_different_key(self):
        assert PhoneticSimilarity().score("Robert", "Alice") == 0.0

    def test_no_letters_never_match(self):
        assert PhoneticSimilarity().score("123", "123") == 0.0


class TestTokenSet:
    def test_word_order_ignored(self):
        s = TokenSetSimilarity()
        assert s.score("continente supermercado", "Supermercado Continente") == 1.0

    def test_empty(self):
        assert TokenSetSimilarity().score("", "") == 1.0
        assert TokenSetSimilarity().score("abc", "") == 0.0


class TestBestOf:
    def test_takes_maximum(self):
        s = BestOfSimilarity(LevenshteinSimilarity(), PhoneticSimilarity())
        assert s.score("Robert", "Rupert") == 1.0

    def test_requires_a_strategy(self):
        with pytest.raises(ValueError):
            BestOfSimilarity()

    def test_default_is_levenshtein_or_phonetic(self):
        s = default_similarity()
        assert s.score("Robert", "Rupert") == 1.0
        assert s.score("kitten", "sitting") == pytest.approx(1 - 3 / 7)
