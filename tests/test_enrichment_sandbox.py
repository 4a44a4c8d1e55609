"""Tests for the sandboxed query-expression evaluator.

Verifies:
- String building with declared variables and helper functions
- Variable values are bound as literals and never parsed (injection safety)
- Disallowed constructs are rejected
- evaluate() is total: failures yield "" plus a warning
"""

from __future__ import annotations

import logging

import pytest

from restclaim.services.enrichment.errors import ScriptEvaluationError
from restclaim.services.enrichment.models import ExpressionEvaluator
from restclaim.services.enrichment.sandbox import (
    MAX_EXPRESSION_LENGTH,
    MAX_STRING_LENGTH,
    SafeExpressionSandbox,
    to_text,
)

SANDBOX_LOGGER = "restclaim.services.enrichment.sandbox"


@pytest.fixture
def sandbox() -> SafeExpressionSandbox:
    return SafeExpressionSandbox()


class TestEvaluate:
    def test_concatenation_with_variables(self, sandbox: SafeExpressionSandbox) -> None:
        result = sandbox.evaluate(
            '"?user=" + username + "&mail=" + email',
            {"username": "jdoe", "email": "jdoe@example.com"},
        )

        assert result == "?user=jdoe&mail=jdoe@example.com"

    def test_default_script_is_empty_string(self, sandbox: SafeExpressionSandbox) -> None:
        assert sandbox.evaluate('""', {}) == ""

    @pytest.mark.parametrize("expression", [None, "", "   "])
    def test_blank_expression(self, sandbox: SafeExpressionSandbox, expression: str | None) -> None:
        assert sandbox.evaluate(expression, {"a": "b"}) == ""

    def test_quote_helper(self, sandbox: SafeExpressionSandbox) -> None:
        result = sandbox.evaluate('"?q=" + quote(name)', {"name": "a b&c"})

        assert result == "?q=a%20b%26c"

    def test_encode_uri_component_alias(self, sandbox: SafeExpressionSandbox) -> None:
        assert sandbox.evaluate("encodeURIComponent(v)", {"v": "x/y"}) == "x%2Fy"

    def test_string_helpers(self, sandbox: SafeExpressionSandbox) -> None:
        assert sandbox.evaluate("upper(trim(v))", {"v": "  jdoe "}) == "JDOE"
        assert sandbox.evaluate("lower(v)", {"v": "JDoe"}) == "jdoe"
        assert sandbox.evaluate("len(v)", {"v": "four"}) == "4"

    def test_fstring(self, sandbox: SafeExpressionSandbox) -> None:
        assert sandbox.evaluate('f"?id={sub}&n={1 + 1}"', {"sub": "abc"}) == "?id=abc&n=2"

    def test_conditional_expression(self, sandbox: SafeExpressionSandbox) -> None:
        expression = '"?mail=" + email if email != "" else "?user=" + username'

        assert sandbox.evaluate(expression, {"email": "", "username": "jdoe"}) == "?user=jdoe"
        assert sandbox.evaluate(expression, {"email": "j@x", "username": "jdoe"}) == "?mail=j@x"

    def test_arithmetic_and_number_coercion(self, sandbox: SafeExpressionSandbox) -> None:
        assert sandbox.evaluate("1 + 2", {}) == "3"
        assert sandbox.evaluate("10 / 4", {}) == "2.5"
        assert sandbox.evaluate("4 / 2", {}) == "2"
        assert sandbox.evaluate('"page=" + 5', {}) == "page=5"

    def test_boolean_result_is_lowercase(self, sandbox: SafeExpressionSandbox) -> None:
        assert sandbox.evaluate('"a" in v', {"v": "cat"}) == "true"
        assert sandbox.evaluate("not v", {"v": "x"}) == "false"

    def test_invalid_variable_name_ignored(self, sandbox: SafeExpressionSandbox) -> None:
        assert sandbox.evaluate("ok", {"not-valid": "x", "ok": "y"}) == "y"

    def test_implements_evaluator_protocol(self, sandbox: SafeExpressionSandbox) -> None:
        assert isinstance(sandbox, ExpressionEvaluator)


class TestInjectionSafety:
    @pytest.mark.parametrize(
        "value",
        [
            '" + __import__("os").getcwd() + "',
            "'); exit(1); ('",
            "username",
            "line1\nline2",
            '{"json": true}',
            "\\x00\\",
        ],
    )
    def test_value_is_bound_verbatim(self, sandbox: SafeExpressionSandbox, value: str) -> None:
        assert sandbox.evaluate('"?q=" + v', {"v": value}) == "?q=" + value

    def test_variable_named_like_helper_stays_a_value(self, sandbox: SafeExpressionSandbox) -> None:
        assert sandbox.evaluate("quote(upper)", {"upper": "a b"}) == "a%20b"


class TestRejectedExpressions:
    @pytest.mark.parametrize(
        "expression",
        [
            '__import__("os").getcwd()',
            "v.upper()",
            "v[0]",
            "[c for c in v]",
            "(lambda: 1)()",
            "open('/etc/passwd')",
            "quote(v, safe='')",
            "2 ** 10",
            "undefined_name",
            '"unterminated',
        ],
    )
    def test_returns_empty_with_warning(
        self, sandbox: SafeExpressionSandbox, caplog: pytest.LogCaptureFixture, expression: str
    ) -> None:
        with caplog.at_level(logging.WARNING, logger=SANDBOX_LOGGER):
            result = sandbox.evaluate(expression, {"v": "value"})

        assert result == ""
        assert any(r.levelno == logging.WARNING for r in caplog.records)

    def test_runtime_error_returns_empty(self, sandbox: SafeExpressionSandbox) -> None:
        assert sandbox.evaluate("1 / 0", {}) == ""
        assert sandbox.evaluate('"a" - 1', {}) == ""

    def test_oversized_expression(self, sandbox: SafeExpressionSandbox) -> None:
        expression = '"' + "a" * MAX_EXPRESSION_LENGTH + '"'

        assert sandbox.evaluate(expression, {}) == ""

    def test_oversized_string_result(self, sandbox: SafeExpressionSandbox) -> None:
        assert sandbox.evaluate('"a" * 100000', {}) == ""
        assert sandbox.evaluate("v + v", {"v": "x" * MAX_STRING_LENGTH}) == ""

    def test_warning_does_not_leak_values(
        self, sandbox: SafeExpressionSandbox, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger=SANDBOX_LOGGER):
            sandbox.evaluate("v - 1", {"v": "secret-value"})

        assert "secret-value" not in caplog.text


class TestCompile:
    def test_compile_rejects_attribute_access(self, sandbox: SafeExpressionSandbox) -> None:
        with pytest.raises(ScriptEvaluationError):
            sandbox.compile("v.__class__")

    def test_compile_accepts_valid_expression(self, sandbox: SafeExpressionSandbox) -> None:
        tree = sandbox.compile('"?u=" + quote(username)')

        assert tree.body is not None


class TestToText:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(True, "true"), (False, "false"), (None, "null"), (2.0, "2"), (2.5, "2.5"), ("s", "s")],
    )
    def test_coercion(self, value: object, expected: str) -> None:
        assert to_text(value) == expected
