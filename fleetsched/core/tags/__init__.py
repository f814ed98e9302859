# Copyright (c) Microsoft Corporation.
# Licensed under the MIT License.

"""Boolean tag expression language used to select VMs."""

from fleetsched.core.exceptions import ParseError
from fleetsched.core.tags.expression import (
    FALSE,
    TRUE,
    And,
    Constant,
    Not,
    Or,
    TagExpression,
    TagMatch,
)
from fleetsched.core.tags.parser import parse, tokenize

__all__ = [
    "TagExpression",
    "TagMatch",
    "And",
    "Or",
    "Not",
    "Constant",
    "TRUE",
    "FALSE",
    "ParseError",
    "parse",
    "tokenize",
]
