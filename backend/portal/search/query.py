"""
Keyword query construction for the FTS5 index.

Two tiers, tried in order by IndexEngine.search():

  1. structured  the raw keywords are handed to FTS5 as query syntax
                 (phrases, AND/OR/NOT, NEAR, prefix*) against the word
                 index, scoped to the content column.
  2. fallback    used when FTS5 rejects tier 1. The raw text is split into
                 its runs of letters and digits, every run is escaped as an
                 FTS5 string and matched as a substring (*run*) against the
                 trigram index; runs are ANDed. Runs shorter than one
                 trigram cannot be matched as substrings and are dropped.

If tier 2 yields no expression (or FTS5 rejects it too) the search result
is empty. Neither tier ever surfaces a parse error to the caller.
"""

from __future__ import annotations

import re
import sqlite3

CONTENT_COLUMN = "content"
TRIGRAM = 3

# Substrings of sqlite3.OperationalError messages raised while FTS5 parses
# a MATCH expression (as opposed to I/O or locking failures).
_QUERY_ERROR_MARKERS = (
    "fts5:",
    "syntax error",
    "unterminated string",
    "no such column",
    "unknown special query",
    "unrecognized",
)

_FRAGMENT = re.compile(r"[^\W_]+")


def structured_expression(keywords: str) -> str:
    """Tier 1: user syntax scoped to the content column."""
    return f"{CONTENT_COLUMN} : ({keywords})"


def escape_term(term: str) -> str:
    """Quote a raw piece so FTS5 treats every character literally."""
    return '"' + term.replace('"', '""') + '"'


def substring_fragments(keywords: str) -> list[str]:
    """Letter/digit runs of the raw text long enough for a trigram match."""
    return [f for f in _FRAGMENT.findall(keywords) if len(f) >= TRIGRAM]


def fallback_expression(keywords: str) -> str | None:
    """
    Tier 2: escaped substring match over every fragment of the raw text.

    "budget-review (draft"  →  "budget" AND "review" AND "draft"

    Against a trigram-tokenized table each quoted string matches wherever it
    occurs inside the text, so "budget" finds "superbudgeting".
    """
    fragments = substring_fragments(keywords)
    if not fragments:
        return None
    return " AND ".join(escape_term(f) for f in fragments)


def is_query_error(exc: sqlite3.Error) -> bool:
    """True when FTS5 refused the MATCH expression itself."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return any(marker in message for marker in _QUERY_ERROR_MARKERS)
