"""
Unit Tests — keyword expression building
"""

from __future__ import annotations

import sqlite3

import pytest

from portal.search.query import (
    escape_term,
    fallback_expression,
    is_query_error,
    structured_expression,
    substring_fragments,
)


@pytest.mark.unit
class TestExpressions:

    def test_structured_expression_scopes_to_content(self):
        assert structured_expression("budget OR plan") == "content : (budget OR plan)"

    def test_escape_term_doubles_quotes(self):
        assert escape_term('say "hi"') == '"say ""hi"""'

    def test_fallback_builds_anded_substring_fragments(self):
        assert fallback_expression("budget-review (draft") == '"budget" AND "review" AND "draft"'

    def test_fallback_drops_fragments_shorter_than_a_trigram(self):
        assert fallback_expression('budget ) "" * ab 7') == '"budget"'

    def test_fallback_never_emits_column_filters(self):
        assert fallback_expression("zzz) OR (filename : invoice") == (
            '"zzz" AND "filename" AND "invoice"'
        )

    def test_substring_fragments_keep_unicode_letters(self):
        assert substring_fragments("café_2024 naïve") == ["café", "2024", "naïve"]

    @pytest.mark.parametrize("raw", ["", "   ", "(( ))", '" * - :', "ab cd"])
    def test_fallback_with_nothing_searchable_is_none(self, raw):
        assert fallback_expression(raw) is None


@pytest.mark.unit
class TestQueryErrorDetection:

    def test_fts_syntax_error_is_query_error(self):
        assert is_query_error(sqlite3.OperationalError('fts5: syntax error near ")"'))

    def test_unknown_column_is_query_error(self):
        assert is_query_error(sqlite3.OperationalError("no such column: title"))

    def test_io_error_is_not_query_error(self):
        assert not is_query_error(sqlite3.OperationalError("disk I/O error"))

    def test_non_operational_error_is_not_query_error(self):
        assert not is_query_error(sqlite3.IntegrityError("syntax error"))
