"""
Full-text query protocol.

User input never reaches FTS5 as query syntax.  The query is trimmed, split on
whitespace, and every token is checked against a strict alphabet (letters,
digits, hyphen).  A token outside that alphabet rejects the whole query with a
ValidationError instead of being partially escaped.  Surviving tokens become
quoted prefix terms joined by implicit AND:

    "release notes"  ->  "release"* "notes"*
"""

from __future__ import annotations

import logging
from typing import List

from scratchpad.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_TERMS = 16


def normalize_query(text: str) -> str:
    """Trim surrounding whitespace and collapse internal runs to one space.

    Examples:
        >>> normalize_query("  zephyr   wind ")
        'zephyr wind'
        >>> normalize_query("   ")
        ''
    """
    return " ".join(text.split())


# ── Token validation ────────────────────────────────────────────────────

def _is_allowed_char(ch: str) -> bool:
    return ch.isalnum() or ch == "-"


def tokenize_query(text: str, *, max_terms: int = DEFAULT_MAX_TERMS) -> List[str]:
    """Split a query into validated search tokens.

    Tokens made only of hyphens are dropped since the index tokenizer
    produces no terms for them.

    Raises:
        ValidationError: A token contains a disallowed character, or the
            query has more than ``max_terms`` tokens.

    Examples:
        >>> tokenize_query("Zephyr  follow-up")
        ['Zephyr', 'follow-up']
        >>> tokenize_query("--")
        []
    """
    tokens: List[str] = []
    for token in normalize_query(text).split(" "):
        if not token:
            continue
        bad = sorted({ch for ch in token if not _is_allowed_char(ch)})
        if bad:
            raise ValidationError(
                f"Unsupported character(s) {''.join(bad)!r} in search term {token!r}; "
                "only letters, digits and hyphens are allowed"
            )
        if token.strip("-") == "":
            continue
        tokens.append(token)
    if len(tokens) > max_terms:
        raise ValidationError(
            f"Search query has {len(tokens)} terms (max {max_terms})"
        )
    return tokens


# ── MATCH expression ────────────────────────────────────────────────────

def build_match_expression(tokens: List[str]) -> str:
    """Quote each token as an FTS5 string and mark it as a prefix term.

    Tokens are already restricted to letters, digits and hyphens, so they
    cannot contain a double quote; quoting turns the hyphen into a phrase
    separator instead of the NOT operator.

    Examples:
        >>> build_match_expression(["zephyr", "follow-up"])
        '"zephyr"* "follow-up"*'
    """
    return " ".join(f'"{token}"*' for token in tokens)


def compile_query(text: str, *, max_terms: int = DEFAULT_MAX_TERMS) -> str:
    """Normalize, validate and compile a user query.  Returns "" for an empty query."""
    tokens = tokenize_query(text, max_terms=max_terms)
    if not tokens:
        return ""
    expr = build_match_expression(tokens)
    logger.debug(f"Compiled query {text!r} -> {expr}")
    return expr
