"""Response-to-claim extraction.

Applies an endpoint's mapping rules to the JSON document it returned.
Plain rules read a top-level key; rules starting with "$" are JSONPath
queries. Values are normalized to a string or an ordered list of strings:

- array            -> list of string-coerced elements (null -> "")
- one-element array -> that element as a string
- empty array, null or missing -> no claim (debug log only)
- scalar           -> its text ("true"/"false" for booleans, JSON otherwise)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from functools import lru_cache
from typing import Any

from jsonpath_ng.ext import parse as jsonpath_parse
from jsonpath_ng.jsonpath import JSONPath

from restclaim.services.enrichment.errors import ParseError
from restclaim.services.enrichment.models import ClaimSet, ClaimValue, MappingRule

logger = logging.getLogger(__name__)

_MISSING = object()


def parse_document(raw: str | bytes | None) -> Any:
    """Parse a response body as JSON.

    Raises:
        ParseError: If the body is empty or not valid JSON. The message never
            includes the body itself.
    """
    if raw is None or not raw.strip():
        raise ParseError("empty response body")
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ParseError(f"invalid JSON at line {getattr(exc, 'lineno', '?')}") from exc


def extract(raw: str | bytes | None, rules: Iterable[MappingRule]) -> ClaimSet:
    """Parse a raw response body and apply the mapping rules to it.

    Returns an empty map, and logs an error, if the body is not valid JSON.
    """
    try:
        document = parse_document(raw)
    except ParseError as exc:
        logger.error("Failed to parse JSON response: %s", exc)
        return {}
    return extract_claims(document, rules)


def extract_claims(document: Any, rules: Iterable[MappingRule]) -> ClaimSet:
    """Apply mapping rules, in declaration order, to a parsed document.

    Pure: the same document and rules always give the same claims. A failing
    rule is logged and skipped without affecting the others.
    """
    claims: ClaimSet = {}
    for rule in rules:
        try:
            value = _resolve(document, rule)
        except Exception as exc:
            logger.warning("Error applying mapping rule '%s': %s", rule, exc)
            continue

        if value is None:
            logger.debug("Mapping rule '%s' produced no value", rule)
            continue
        claims[rule.claim_name] = value
    return claims


def _resolve(document: Any, rule: MappingRule) -> ClaimValue | None:
    if rule.is_path_query:
        matches = [match.value for match in _compile_path(rule.source_field).find(document)]
        if not matches:
            return None
        raw_value: Any = matches[0] if len(matches) == 1 else matches
    else:
        if not isinstance(document, dict):
            return None
        raw_value = document.get(rule.source_field, _MISSING)
        if raw_value is _MISSING:
            return None
    return normalize_value(raw_value)


@lru_cache(maxsize=256)
def _compile_path(expression: str) -> JSONPath:
    return jsonpath_parse(expression)


def normalize_value(value: Any) -> ClaimValue | None:
    """Normalize a resolved JSON value to a claim value (None means no claim)."""
    if value is None:
        return None
    if isinstance(value, list):
        items = ["" if item is None else _scalar_text(item) for item in value]
        if not items:
            return None
        return items[0] if len(items) == 1 else items
    return _scalar_text(value)


def _scalar_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
