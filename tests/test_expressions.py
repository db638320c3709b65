from __future__ import annotations

import pytest

from ingest_core.errors import ExpressionError
from ingest_core.pipeline.expressions import evaluate


def test_arithmetic_and_field_references():
    assert evaluate("price * qty", {"price": 2.5, "qty": 4}) == 10.0
    assert evaluate("(a + b) // 2", {"a": 3, "b": 4}) == 3
    assert evaluate('record["unit price"] + 1', {"unit price": 1}) == 2


def test_comparisons_booleans_and_conditionals():
    ctx = {"amount": 120, "status": "open"}
    assert evaluate("amount > 100 and status == 'open'", ctx) is True
    assert evaluate("0 < amount <= 100", ctx) is False
    assert evaluate("status in ['open', 'closed']", ctx) is True
    assert evaluate("'big' if amount > 100 else 'small'", ctx) == "big"


def test_whitelisted_functions():
    ctx = {"first": "Ada", "last": None, "email": "  ADA@EXAMPLE.COM "}
    assert evaluate("concat(first, '-', last)", ctx) == "Ada-"
    assert evaluate("coalesce(last, first)", ctx) == "Ada"
    assert evaluate("lower(trim(email))", ctx) == "ada@example.com"
    assert evaluate("round(max(1.26, 0.5), 1)", {}) == 1.3


@pytest.mark.parametrize(
    "expr",
    [
        "__import__('os')",
        "open('x')",
        "first.upper()",
        "[x for x in range(3)]",
        "lambda: 1",
        "max(1, key=abs)",
    ],
)
def test_unsafe_syntax_is_rejected(expr):
    with pytest.raises(ExpressionError):
        evaluate(expr, {"first": "a"})


def test_runtime_errors_become_expression_errors():
    with pytest.raises(ExpressionError):
        evaluate("a / b", {"a": 1, "b": 0})
    with pytest.raises(ExpressionError):
        evaluate("missing + 1", {})
    with pytest.raises(ExpressionError):
        evaluate("2 ** 1000", {})
    with pytest.raises(ExpressionError):
        evaluate("a +", {"a": 1})
