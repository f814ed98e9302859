# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Tag expression syntax tree.

Nodes are immutable and compare structurally, so two parses of the same
text are equal and ``optimize`` idempotence can be asserted with ``==``.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from typing import AbstractSet, FrozenSet

WILDCARD = "*"


@lru_cache(maxsize=256)
def _wildcard_regex(pattern: str) -> "re.Pattern[str]":
    """Compile a ``*`` wildcard pattern into an anchored regex.

    :param pattern: Tag pattern containing one or more ``*``.
    :returns: Compiled regular expression.
    """
    body = ".*".join(re.escape(part) for part in pattern.split(WILDCARD))
    return re.compile(f"^{body}$")


class TagExpression(ABC):
    """A boolean formula over a VM's tag set."""

    @abstractmethod
    def evaluate(self, tags: AbstractSet[str]) -> bool:
        """Evaluate this expression against a set of tags.

        :param tags: Tags carried by a VM.
        :returns: True if the expression matches.
        """

    @abstractmethod
    def referenced_tags(self) -> FrozenSet[str]:
        """Concrete tag names mentioned in the expression (wildcards excluded)."""

    @abstractmethod
    def has_wildcards(self) -> bool:
        """Check whether any tag pattern contains a wildcard."""

    @abstractmethod
    def optimize(self) -> "TagExpression":
        """Return a semantically equivalent, simpler-or-equal tree."""


@dataclass(frozen=True)
class TagMatch(TagExpression):
    """Match a single tag, optionally with ``*`` wildcards."""

    pattern: str

    def evaluate(self, tags: AbstractSet[str]) -> bool:
        if WILDCARD not in self.pattern:
            return self.pattern in tags
        regex = _wildcard_regex(self.pattern)
        return any(regex.match(tag) for tag in tags)

    def referenced_tags(self) -> FrozenSet[str]:
        if self.has_wildcards():
            return frozenset()
        return frozenset({self.pattern})

    def has_wildcards(self) -> bool:
        return WILDCARD in self.pattern

    def optimize(self) -> TagExpression:
        return self

    def __str__(self) -> str:
        return self.pattern


@dataclass(frozen=True)
class And(TagExpression):
    """Both sides must match."""

    left: TagExpression
    right: TagExpression

    def evaluate(self, tags: AbstractSet[str]) -> bool:
        return self.left.evaluate(tags) and self.right.evaluate(tags)

    def referenced_tags(self) -> FrozenSet[str]:
        return self.left.referenced_tags() | self.right.referenced_tags()

    def has_wildcards(self) -> bool:
        return self.left.has_wildcards() or self.right.has_wildcards()

    def optimize(self) -> TagExpression:
        left = self.left.optimize()
        right = self.right.optimize()
        if left == FALSE or right == FALSE:
            return FALSE
        if left == TRUE:
            return right
        if right == TRUE:
            return left
        return And(left, right)

    def __str__(self) -> str:
        return f"({self.left} AND {self.right})"


@dataclass(frozen=True)
class Or(TagExpression):
    """Either side must match."""

    left: TagExpression
    right: TagExpression

    def evaluate(self, tags: AbstractSet[str]) -> bool:
        return self.left.evaluate(tags) or self.right.evaluate(tags)

    def referenced_tags(self) -> FrozenSet[str]:
        return self.left.referenced_tags() | self.right.referenced_tags()

    def has_wildcards(self) -> bool:
        return self.left.has_wildcards() or self.right.has_wildcards()

    def optimize(self) -> TagExpression:
        left = self.left.optimize()
        right = self.right.optimize()
        if left == TRUE or right == TRUE:
            return TRUE
        if left == FALSE:
            return right
        if right == FALSE:
            return left
        return Or(left, right)

    def __str__(self) -> str:
        return f"({self.left} OR {self.right})"


@dataclass(frozen=True)
class Not(TagExpression):
    """The inner expression must not match."""

    inner: TagExpression

    def evaluate(self, tags: AbstractSet[str]) -> bool:
        return not self.inner.evaluate(tags)

    def referenced_tags(self) -> FrozenSet[str]:
        return self.inner.referenced_tags()

    def has_wildcards(self) -> bool:
        return self.inner.has_wildcards()

    def optimize(self) -> TagExpression:
        inner = self.inner.optimize()
        if isinstance(inner, Not):
            return inner.inner
        if inner == TRUE:
            return FALSE
        if inner == FALSE:
            return TRUE
        return Not(inner)

    def __str__(self) -> str:
        return f"(NOT {self.inner})"


@dataclass(frozen=True)
class Constant(TagExpression):
    """Always-true or always-false node produced by the optimizer."""

    value: bool

    def evaluate(self, tags: AbstractSet[str]) -> bool:
        return self.value

    def referenced_tags(self) -> FrozenSet[str]:
        return frozenset()

    def has_wildcards(self) -> bool:
        return False

    def optimize(self) -> TagExpression:
        return self

    def __str__(self) -> str:
        return "TRUE" if self.value else "FALSE"


TRUE = Constant(True)
FALSE = Constant(False)
