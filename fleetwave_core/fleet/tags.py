"""Boolean tag selectors.

Grammar (keywords are case-insensitive, ``&``/``|``/``!`` are accepted as
aliases)::

    expr   := term ("OR" term)*
    term   := factor ("AND" factor)*
    factor := "NOT" factor | "(" expr ")" | TAG | "*"
"""

from __future__ import annotations

import re
from typing import Callable

from fleetwave_core.errors import TagExpressionError

TagPredicate = Callable[[frozenset[str]], bool]

_TOKEN_RE = re.compile(r"\s*(\(|\)|&&?|\|\|?|!|[^\s()&|!]+)")
_KEYWORDS = {
    "and": "AND",
    "&": "AND",
    "&&": "AND",
    "or": "OR",
    "|": "OR",
    "||": "OR",
    "not": "NOT",
    "!": "NOT",
}


def _tokenize(expression: str) -> list[str]:
    tokens: list[str] = []
    pos = 0
    text = expression.strip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise TagExpressionError(f"Unexpected input at {pos}: {text[pos:]!r}")
        raw = match.group(1)
        tokens.append(_KEYWORDS.get(raw.lower(), raw))
        pos = match.end()
    return tokens


class _Parser:
    def __init__(self, tokens: list[str]) -> None:
        self._tokens = tokens
        self._pos = 0

    def parse(self) -> TagPredicate:
        if not self._tokens:
            raise TagExpressionError("Empty tag expression")
        predicate = self._expr()
        if self._pos != len(self._tokens):
            raise TagExpressionError(
                f"Unexpected token {self._tokens[self._pos]!r}"
            )
        return predicate

    def _peek(self) -> str | None:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _take(self) -> str:
        token = self._peek()
        if token is None:
            raise TagExpressionError("Unexpected end of tag expression")
        self._pos += 1
        return token

    def _expr(self) -> TagPredicate:
        parts = [self._term()]
        while self._peek() == "OR":
            self._take()
            parts.append(self._term())
        if len(parts) == 1:
            return parts[0]
        return lambda tags: any(part(tags) for part in parts)

    def _term(self) -> TagPredicate:
        parts = [self._factor()]
        while self._peek() == "AND":
            self._take()
            parts.append(self._factor())
        if len(parts) == 1:
            return parts[0]
        return lambda tags: all(part(tags) for part in parts)

    def _factor(self) -> TagPredicate:
        token = self._take()
        if token == "NOT":
            inner = self._factor()
            return lambda tags: not inner(tags)
        if token == "(":
            inner = self._expr()
            if self._take() != ")":
                raise TagExpressionError("Missing closing parenthesis")
            return inner
        if token in {")", "AND", "OR"}:
            raise TagExpressionError(f"Unexpected token {token!r}")
        if token == "*":
            return lambda tags: True
        tag = token.lower()
        return lambda tags: tag in tags


def compile_selector(expression: str) -> TagPredicate:
    return _Parser(_tokenize(expression)).parse()


def matches(expression: str, tags: frozenset[str]) -> bool:
    return compile_selector(expression)(tags)
