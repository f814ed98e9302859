# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Recursive-descent parser for tag expressions.

Grammar::

    expr     := or_expr
    or_expr  := and_expr ("OR" and_expr)*
    and_expr := not_expr ("AND" not_expr)*
    not_expr := "NOT" not_expr | primary
    primary  := tag | "(" expr ")"
    tag      := [A-Za-z0-9_*-]+

Operators are case-insensitive, tags are case-sensitive.
"""

import re
from typing import List, Optional

from fleetsched.core.exceptions import ParseError
from fleetsched.core.tags.expression import And, Not, Or, TagExpression, TagMatch

TAG_PATTERN = re.compile(r"[A-Za-z0-9_*\-]+")

_AND = "AND"
_OR = "OR"
_NOT = "NOT"
_LPAREN = "("
_RPAREN = ")"


def tokenize(expression: str) -> List[str]:
    """Split an expression into tokens.

    Whitespace separates tokens; parentheses are always standalone tokens.

    :param expression: Raw expression text.
    :returns: List of tokens.
    """
    tokens: List[str] = []
    current: List[str] = []
    for char in expression:
        if char.isspace() or char in (_LPAREN, _RPAREN):
            if current:
                tokens.append("".join(current))
                current = []
            if not char.isspace():
                tokens.append(char)
        else:
            current.append(char)
    if current:
        tokens.append("".join(current))
    return tokens


class _Parser:
    """Single-use parser over a token list."""

    def __init__(self, expression: str) -> None:
        self._expression = expression
        self._tokens = tokenize(expression)
        self._pos = 0

    def _peek(self) -> Optional[str]:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _peek_keyword(self, keyword: str) -> bool:
        token = self._peek()
        return token is not None and token.upper() == keyword

    def _advance(self) -> str:
        token = self._peek()
        if token is None:
            raise ParseError(
                f"Unexpected end of expression: '{self._expression}'",
                expression=self._expression,
            )
        self._pos += 1
        return token

    def _expect(self, expected: str) -> None:
        token = self._peek()
        if token is None:
            raise ParseError(
                f"Expected '{expected}' but reached end of expression",
                expression=self._expression,
            )
        if token.upper() != expected:
            raise ParseError(
                f"Expected '{expected}' but got '{token}'",
                expression=self._expression,
                token=token,
            )
        self._pos += 1

    def parse(self) -> TagExpression:
        result = self._or_expr()
        trailing = self._peek()
        if trailing is not None:
            raise ParseError(
                f"Unexpected token: '{trailing}'",
                expression=self._expression,
                token=trailing,
            )
        return result

    def _or_expr(self) -> TagExpression:
        left = self._and_expr()
        while self._peek_keyword(_OR):
            self._advance()
            left = Or(left, self._and_expr())
        return left

    def _and_expr(self) -> TagExpression:
        left = self._not_expr()
        while self._peek_keyword(_AND):
            self._advance()
            left = And(left, self._not_expr())
        return left

    def _not_expr(self) -> TagExpression:
        if self._peek_keyword(_NOT):
            self._advance()
            return Not(self._not_expr())
        return self._primary()

    def _primary(self) -> TagExpression:
        token = self._advance()
        if token == _LPAREN:
            inner = self._or_expr()
            self._expect(_RPAREN)
            return inner
        if token.upper() in (_AND, _OR) or token == _RPAREN:
            raise ParseError(
                f"Unexpected token: '{token}'",
                expression=self._expression,
                token=token,
            )
        if not TAG_PATTERN.fullmatch(token):
            raise ParseError(
                f"Invalid token: '{token}'",
                expression=self._expression,
                token=token,
            )
        return TagMatch(token)


def parse(expression: Optional[str]) -> TagExpression:
    """Parse and optimize a tag expression.

    :param expression: Expression text, e.g. ``"(env-prod OR env-staging) AND NOT always-on"``.
    :returns: Optimized expression tree.
    :raises ParseError: If the expression is empty or malformed.
    """
    if expression is None or not expression.strip():
        raise ParseError("Expression cannot be empty", expression=expression)
    return _Parser(expression).parse().optimize()
