"""Tests for display-name canonicalization."""

import pytest

from errors import InvalidArgument
from names import is_valid_name, sanitize_name


class TestSanitizeName:

    def test_valid_name_is_unchanged(self):
        assert sanitize_name("Alice_B-2") == "Alice_B-2"

    def test_whitespace_becomes_delimiter(self):
        assert sanitize_name("Mary Jane  Watson") == "Mary_Jane_Watson"

    def test_accents_are_decomposed(self):
        assert sanitize_name("Jürgen Müller") == "Jurgen_Muller"

    def test_disallowed_characters_are_dropped(self):
        assert sanitize_name("dj.k!tty 🎧") == "djktty"

    def test_edge_delimiters_are_stripped(self):
        assert sanitize_name("  Bob  ") == "Bob"
        assert sanitize_name("🔥 Bob 🔥") == "Bob"

    def test_truncated_to_max_length(self):
        result = sanitize_name("a b" * 80)
        assert len(result) <= 100
        assert is_valid_name(result)

    def test_may_return_empty(self):
        assert sanitize_name("🎉🎉") == ""
        assert sanitize_name("") == ""

    def test_none_raises(self):
        with pytest.raises(InvalidArgument):
            sanitize_name(None)

    @pytest.mark.parametrize("name", ["Zoë Ärger", "  x  y  ", "名前 Tom", "a" * 150, "__x__"])
    def test_idempotent(self, name):
        once = sanitize_name(name)
        assert sanitize_name(once) == once


class TestIsValidName:

    def test_rules(self):
        assert is_valid_name("Alice")
        assert not is_valid_name("")
        assert not is_valid_name("Alice Smith")
        assert not is_valid_name("x" * 101)
