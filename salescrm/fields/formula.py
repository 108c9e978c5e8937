from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Mapping

from salescrm.fields.errors import FieldValidationError

PLACEHOLDER_RE = re.compile(r"\{\{\s*(\d+)\s*\}\}")
ALLOWED_CHARS_RE = re.compile(r"^[0-9+\-*/().\s]+$")

DIVISION_BY_ZERO_WARNING = "division by zero — result not stored"
FORMULA_REQUIRED_MESSAGE = "formula is required"
FORMULA_CHARACTERS_MESSAGE = (
    "formula may only contain digits, arithmetic operators, parentheses, and field placeholders"
)
FORMULA_MALFORMED_MESSAGE = "formula is not a valid arithmetic expression"

_UNARY_MINUS = "u-"
_PRECEDENCE = {_UNARY_MINUS: 3, "*": 2, "/": 2, "+": 1, "-": 1}
_BINARY_OPERATORS = frozenset({"+", "-", "*", "/"})


@dataclass(slots=True)
class FormulaResult:
    value: float | None
    warnings: list[str] = field(default_factory=list)


class _MalformedFormula(Exception):
    pass


class _DivisionByZero(Exception):
    pass


def extract_field_ids(formula: str | None) -> list[int]:
    """Field ids referenced by `{{id}}` placeholders, in order of first appearance."""
    if not formula:
        return []
    seen: list[int] = []
    for match in PLACEHOLDER_RE.finditer(formula):
        field_id = int(match.group(1))
        if field_id not in seen:
            seen.append(field_id)
    return seen


def calculation_order(formulas: Mapping[int, str | None]) -> tuple[list[int], set[int]]:
    """Order calculation fields so each one runs after the calculations it references.

    `formulas` maps calculation field id to formula; its iteration order breaks ties.
    Returns the evaluation order and the ids that sit on or behind a reference cycle,
    which can never be computed.
    """
    pending = {
        field_id: {referenced for referenced in extract_field_ids(text) if referenced in formulas}
        for field_id, text in formulas.items()
    }
    ordered: list[int] = []
    resolved: set[int] = set()
    progressed = True
    while pending and progressed:
        progressed = False
        for field_id, references in list(pending.items()):
            if references <= resolved:
                ordered.append(field_id)
                resolved.add(field_id)
                del pending[field_id]
                progressed = True
    return ordered, set(pending)


def validate_formula_syntax(formula: str | None) -> None:
    if formula is None or not formula.strip():
        raise FieldValidationError(FORMULA_REQUIRED_MESSAGE, reason="formula")
    substituted = PLACEHOLDER_RE.sub("1", formula)
    if not ALLOWED_CHARS_RE.match(substituted):
        raise FieldValidationError(FORMULA_CHARACTERS_MESSAGE, reason="formula")
    try:
        _to_rpn(_tokenize(formula, {}, check_values=False))
    except _MalformedFormula as exc:
        raise FieldValidationError(FORMULA_MALFORMED_MESSAGE, reason="formula") from exc


def evaluate(formula: str | None, values: Mapping[int, float | None]) -> FormulaResult:
    """Evaluate a calculation formula against numeric field values.

    Any referenced field without a value yields no result. Malformed expressions
    also yield no result, silently. Division by zero yields no result plus a warning.
    """
    if not formula:
        return FormulaResult(None)

    for field_id in extract_field_ids(formula):
        if values.get(field_id) is None:
            return FormulaResult(None)

    if not ALLOWED_CHARS_RE.match(PLACEHOLDER_RE.sub("1", formula)):
        return FormulaResult(None)

    try:
        rpn = _to_rpn(_tokenize(formula, values))
        value = _evaluate_rpn(rpn)
    except _DivisionByZero:
        return FormulaResult(None, [DIVISION_BY_ZERO_WARNING])
    except _MalformedFormula:
        return FormulaResult(None)

    if not math.isfinite(value):
        return FormulaResult(None)
    return FormulaResult(value)


def _tokenize(
    formula: str,
    values: Mapping[int, float | None],
    *,
    check_values: bool = True,
) -> list[float | str]:
    tokens: list[float | str] = []
    index = 0
    length = len(formula)
    while index < length:
        char = formula[index]
        if char.isspace():
            index += 1
            continue

        placeholder = PLACEHOLDER_RE.match(formula, index)
        if placeholder is not None:
            if check_values:
                value = values.get(int(placeholder.group(1)))
                if value is None:
                    raise _MalformedFormula(formula)
                tokens.append(float(value))
            else:
                tokens.append(1.0)
            index = placeholder.end()
            continue

        if char.isdigit() or char == ".":
            end = index
            while end < length and (formula[end].isdigit() or formula[end] == "."):
                end += 1
            try:
                tokens.append(float(formula[index:end]))
            except ValueError as exc:
                raise _MalformedFormula(formula[index:end]) from exc
            index = end
            continue

        if char in _BINARY_OPERATORS or char in "()":
            tokens.append(char)
            index += 1
            continue

        raise _MalformedFormula(char)
    return tokens


def _to_rpn(tokens: list[float | str]) -> list[float | str]:
    output: list[float | str] = []
    stack: list[str] = []
    previous = "start"

    for token in tokens:
        if isinstance(token, float):
            output.append(token)
            previous = "operand"
            continue

        if token == "(":
            stack.append(token)
            previous = "open"
            continue

        if token == ")":
            while stack and stack[-1] != "(":
                output.append(stack.pop())
            if not stack:
                raise _MalformedFormula("unbalanced parenthesis")
            stack.pop()
            previous = "operand"
            continue

        if token == "-" and previous in {"start", "operator", "open"}:
            # prefix operator, nothing on its left to reduce
            stack.append(_UNARY_MINUS)
            previous = "operator"
            continue

        precedence = _PRECEDENCE[token]
        while stack and stack[-1] != "(" and _PRECEDENCE[stack[-1]] >= precedence:
            output.append(stack.pop())
        stack.append(token)
        previous = "operator"

    while stack:
        operator = stack.pop()
        if operator == "(":
            raise _MalformedFormula("unbalanced parenthesis")
        output.append(operator)
    return output


def _evaluate_rpn(rpn: list[float | str]) -> float:
    stack: list[float] = []
    for token in rpn:
        if isinstance(token, float):
            stack.append(token)
            continue

        if token == _UNARY_MINUS:
            if not stack:
                raise _MalformedFormula(token)
            stack.append(-stack.pop())
            continue

        if len(stack) < 2:
            raise _MalformedFormula(token)
        right = stack.pop()
        left = stack.pop()
        if token == "+":
            stack.append(left + right)
        elif token == "-":
            stack.append(left - right)
        elif token == "*":
            stack.append(left * right)
        else:
            if right == 0:
                raise _DivisionByZero()
            stack.append(left / right)

    if len(stack) != 1:
        raise _MalformedFormula("dangling operand")
    return stack[0]
