"""Comparison operators and the condition expression grammar.

Structured conditions compare ``left <operator> right``. Free-text
expressions support:

    - Literals: 'strings', "strings", numbers, true, false, null
    - References: ${node-1.output.content} or bare names (left, score.value)
    - Comparison: ==, !=, <, >, <=, >=
    - Word operators: contains, not_contains, startsWith, endsWith
    - Boolean: and, or, not (also &&, ||, !)
    - Parentheses

Expressions are parsed and evaluated here; nothing is ever run as code.
"""

import re
from typing import Any

from canvasflow.core.utils import to_number, to_text
from canvasflow.core.variables import VariableScope


class ConditionError(Exception):
    """Malformed condition expression or unsupported operator."""

    pass


# Tokenizer patterns (first match wins)
TOKEN_PATTERNS = [
    (r"\s+", None),  # Skip whitespace
    (r"\$\{[^}]+\}", "REF"),
    (r"==|!=|<=|>=|<|>", "OP"),
    (r"&&", "AND"),
    (r"\|\|", "OR"),
    (r"!", "NOT"),
    (r"\b(?:not_contains|contains|startsWith|endsWith)(?![\w.-])", "OP"),
    (r"\band(?![\w.-])", "AND"),
    (r"\bor(?![\w.-])", "OR"),
    (r"\bnot(?![\w.-])", "NOT"),
    (r"\btrue(?![\w.-])", "TRUE"),
    (r"\bfalse(?![\w.-])", "FALSE"),
    (r"\b(?:null|undefined)(?![\w.-])", "NULL"),
    (r"'[^']*'", "STRING"),
    (r'"[^"]*"', "STRING"),
    (r"-?\d+(?:\.\d+)?", "NUMBER"),
    (r"[A-Za-z_][\w-]*(?:\.[\w-]+|\[\d+\])*", "IDENT"),
    (r"\(", "LPAREN"),
    (r"\)", "RPAREN"),
]
_COMPILED_PATTERNS = [(re.compile(pattern), token_type) for pattern, token_type in TOKEN_PATTERNS]


# ---------------------------------------------------------------------------
# Operators
# ---------------------------------------------------------------------------


def _equals(left: Any, right: Any) -> bool:
    left_num, right_num = to_number(left), to_number(right)
    if left_num is not None and right_num is not None:
        return left_num == right_num
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, str) != isinstance(right, str):
        # "true" == True, "5" == 5.0 handled above
        return to_text(left) == to_text(right)
    return left == right


def _ordered(left: Any, operator: str, right: Any) -> bool:
    left_num, right_num = to_number(left), to_number(right)
    if left_num is not None and right_num is not None:
        a, b = left_num, right_num
    elif left is None or right is None:
        return False
    else:
        a, b = to_text(left), to_text(right)
    if operator == ">":
        return a > b
    if operator == "<":
        return a < b
    if operator == ">=":
        return a >= b
    return a <= b


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    if isinstance(container, dict):
        return to_text(item) in container
    if isinstance(container, (list, tuple)):
        return any(_equals(element, item) for element in container)
    return to_text(item) in to_text(container)


def compare(left: Any, operator: str, right: Any) -> bool:
    """Apply a comparison operator.

    Numeric-looking values compare as numbers; everything else compares as
    text or by structure. ``exists``/``not_exists`` ignore ``right``.

    Raises:
        ConditionError: If the operator is not supported
    """
    if operator == "exists":
        return left is not None and left != ""
    if operator == "not_exists":
        return left is None or left == ""
    if operator == "==":
        return _equals(left, right)
    if operator == "!=":
        return not _equals(left, right)
    if operator in (">", "<", ">=", "<="):
        return _ordered(left, operator, right)
    if operator == "contains":
        return _contains(left, right)
    if operator == "not_contains":
        return not _contains(left, right)
    if operator == "startsWith":
        return left is not None and to_text(left).startswith(to_text(right))
    if operator == "endsWith":
        return left is not None and to_text(left).endswith(to_text(right))
    raise ConditionError(f"Unknown operator: {operator}")


def is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "null")
    return bool(value)


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------


def tokenize(expr: str) -> list[tuple[str, str]]:
    """Tokenize a condition expression."""
    tokens = []
    pos = 0
    while pos < len(expr):
        for regex, token_type in _COMPILED_PATTERNS:
            match = regex.match(expr, pos)
            if match:
                if token_type:
                    tokens.append((token_type, match.group()))
                pos = match.end()
                break
        else:
            raise ConditionError(f"Invalid character at position {pos}: {expr[pos]!r}")
    return tokens


class Parser:
    """Recursive descent parser for condition expressions.

    With ``strict`` set, a reference that does not resolve is an error;
    otherwise it evaluates to None.
    """

    def __init__(self, tokens: list[tuple[str, str]], scope: VariableScope, strict: bool = False):
        self.tokens = tokens
        self.scope = scope
        self.strict = strict
        self.pos = 0

    def peek(self) -> tuple[str, str] | None:
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return None

    def consume(self, expected_type: str | None = None) -> tuple[str, str]:
        token = self.peek()
        if token is None:
            raise ConditionError("Unexpected end of expression")
        if expected_type and token[0] != expected_type:
            raise ConditionError(f"Expected {expected_type}, got {token[0]}")
        self.pos += 1
        return token

    def parse(self) -> Any:
        result = self.parse_or()
        if self.peek() is not None:
            raise ConditionError(f"Unexpected token: {self.peek()[1]!r}")
        return result

    def parse_or(self) -> Any:
        left = self.parse_and()
        while self.peek() and self.peek()[0] == "OR":
            self.consume("OR")
            right = self.parse_and()
            left = is_truthy(left) or is_truthy(right)
        return left

    def parse_and(self) -> Any:
        left = self.parse_not()
        while self.peek() and self.peek()[0] == "AND":
            self.consume("AND")
            right = self.parse_not()
            left = is_truthy(left) and is_truthy(right)
        return left

    def parse_not(self) -> Any:
        if self.peek() and self.peek()[0] == "NOT":
            self.consume("NOT")
            return not is_truthy(self.parse_not())
        return self.parse_comparison()

    def parse_comparison(self) -> Any:
        left = self.parse_term()
        if self.peek() and self.peek()[0] == "OP":
            op = self.consume("OP")[1]
            right = self.parse_term()
            return compare(left, op, right)
        return left

    def parse_term(self) -> Any:
        token = self.peek()
        if token is None:
            raise ConditionError("Unexpected end of expression")

        kind = token[0]
        if kind == "LPAREN":
            self.consume("LPAREN")
            result = self.parse_or()
            self.consume("RPAREN")
            return result
        if kind == "STRING":
            return self.consume("STRING")[1][1:-1]
        if kind == "NUMBER":
            return to_number(self.consume("NUMBER")[1])
        if kind == "TRUE":
            self.consume("TRUE")
            return True
        if kind == "FALSE":
            self.consume("FALSE")
            return False
        if kind == "NULL":
            self.consume("NULL")
            return None
        if kind == "REF":
            return self._resolve(self.consume("REF")[1][2:-1])
        if kind == "IDENT":
            return self._resolve(self.consume("IDENT")[1])
        raise ConditionError(f"Unexpected token: {token[1]!r}")

    def _resolve(self, reference: str) -> Any:
        found, value = self.scope.lookup(reference)
        if not found and self.strict:
            raise ConditionError(f"Unknown reference: {reference}")
        return value


def evaluate_expression(expr: str, scope: VariableScope, strict: bool = False) -> Any:
    """Evaluate an expression and return its value (not coerced to bool).

    Raises:
        ConditionError: If the expression is invalid
    """
    tokens = tokenize(expr)
    if not tokens:
        raise ConditionError("Empty expression")
    return Parser(tokens, scope, strict=strict).parse()


def evaluate_condition(expr: str, scope: VariableScope) -> bool:
    """Evaluate a condition expression to a boolean.

    Args:
        expr: Condition expression (e.g., "${score} >= 60 and status == 'ok'")
        scope: Names visible to references

    Raises:
        ConditionError: If the expression is invalid
    """
    try:
        return is_truthy(evaluate_expression(expr, scope))
    except ConditionError:
        raise
    except Exception as e:
        raise ConditionError(f"Error evaluating condition: {e}") from e
