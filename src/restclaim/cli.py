"""restclaim CLI - administrative commands for the claim enrichment engine.

Usage:
    python -m restclaim.cli test-query [--input PATH]
    python -m restclaim.cli inspect-config [--input PATH] [--config-id ID]

test-query reads a test query request (camelCase JSON, as accepted by
POST /v1/test-query) and prints the response. inspect-config reads a flat
mapper configuration object and prints the parsed endpoints with their
fingerprints; secrets are redacted.

Exit codes:
    0: Success
    1: Internal error (unexpected, or invalid engine settings)
    2: Invalid input / test query reported an error
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from pydantic import ValidationError

from restclaim.services.enrichment.cache_policy import compute_fingerprint
from restclaim.services.enrichment.config_parser import parse_mapper_config
from restclaim.services.enrichment.dry_run import TestQueryRequest, run_test_query
from restclaim.services.enrichment.fetcher import SourceFetcher
from restclaim.services.enrichment.models import EndpointDefinition
from restclaim.services.enrichment.sandbox import SafeExpressionSandbox
from restclaim.settings import load_engine_settings

REDACTED = "***"
DEFAULT_CONFIG_ID = "default"


def _output_json(data: dict[str, Any]) -> None:
    """Output JSON to stdout with deterministic ordering."""
    print(json.dumps(data, sort_keys=True, indent=2, ensure_ascii=False))


def _make_error_result(code: str, message: str) -> dict[str, Any]:
    return {"error": {"code": code, "message": message}}


def _load_json_input(input_path: str | None) -> tuple[Any, str | None]:
    """Load JSON from file or stdin.

    Returns:
        Tuple of (parsed_data, error_message). If error_message is not None,
        parsed_data should be ignored.
    """
    try:
        if input_path:
            with open(input_path, encoding="utf-8") as f:
                content = f.read()
        else:
            content = sys.stdin.read()

        if not content.strip():
            return None, "Empty input"

        return json.loads(content), None
    except FileNotFoundError:
        return None, f"File not found: {input_path}"
    except json.JSONDecodeError as e:
        return None, f"Invalid JSON: {e}"
    except OSError as e:
        return None, f"Cannot read input: {e}"


def _build_fetcher() -> SourceFetcher:
    return SourceFetcher(settings=load_engine_settings())


def _endpoint_to_dict(endpoint: EndpointDefinition) -> dict[str, Any]:
    return {
        "auth_type": endpoint.auth_type.value,
        "auth_value": REDACTED if endpoint.auth_value else "",
        "fingerprint": compute_fingerprint(endpoint),
        "index": endpoint.index,
        "mapping_rules": [str(rule) for rule in endpoint.mapping_rules],
        "query_expression": endpoint.query_expression,
        "url": endpoint.url,
        "variable_names": list(endpoint.variable_names),
    }


def cmd_test_query(args: argparse.Namespace) -> int:
    """Execute a test query and print the response.

    Exit codes:
        0: the endpoint answered and its response was mapped
        2: invalid input, or the response carries an error
    """
    data, error_msg = _load_json_input(args.input)
    if error_msg is not None:
        _output_json(_make_error_result("INVALID_JSON", error_msg))
        return 2

    try:
        request = TestQueryRequest.model_validate(data)
    except ValidationError as e:
        _output_json(_make_error_result("INVALID_REQUEST", str(e)))
        return 2

    with _build_fetcher() as fetcher:
        response = run_test_query(request, fetcher=fetcher, sandbox=SafeExpressionSandbox())

    _output_json(response.model_dump(by_alias=True, exclude_none=True))
    return 0 if response.error is None else 2


def cmd_inspect_config(args: argparse.Namespace) -> int:
    """Parse a mapper configuration and print its endpoints.

    Exit codes:
        0: configuration parsed
        2: input is not a JSON object
    """
    data, error_msg = _load_json_input(args.input)
    if error_msg is not None:
        _output_json(_make_error_result("INVALID_JSON", error_msg))
        return 2

    if not isinstance(data, dict):
        _output_json(_make_error_result("INVALID_CONFIG", "Configuration must be a JSON object"))
        return 2

    flat = {str(key): "" if value is None else str(value) for key, value in data.items()}
    config = parse_mapper_config(flat, config_id=args.config_id)

    _output_json(
        {
            "cache_ttl_seconds": config.cache_ttl_seconds,
            "config_id": config.config_id,
            "endpoints": [_endpoint_to_dict(ep) for ep in config.configured_endpoints],
        }
    )
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="restclaim",
        description="restclaim - REST claim enrichment engine CLI",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for diagnostics written to stderr",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    test_query_parser = subparsers.add_parser(
        "test-query",
        help="Evaluate, call and map one endpoint definition",
    )
    test_query_parser.add_argument(
        "--input",
        required=False,
        default=None,
        metavar="PATH",
        help="Path to JSON request file (reads from stdin if omitted)",
    )

    inspect_parser = subparsers.add_parser(
        "inspect-config",
        help="Print parsed endpoints and their fingerprints",
    )
    inspect_parser.add_argument(
        "--input",
        required=False,
        default=None,
        metavar="PATH",
        help="Path to JSON configuration file (reads from stdin if omitted)",
    )
    inspect_parser.add_argument(
        "--config-id",
        default=DEFAULT_CONFIG_ID,
        metavar="ID",
        help="Configuration identifier used to namespace cache keys",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Exit codes:
        0: Success
        1: Internal error (unexpected)
        2: Invalid input / failed test query
    """
    try:
        parser = create_parser()
        args = parser.parse_args(argv)

        logging.basicConfig(
            level=getattr(logging, args.log_level),
            stream=sys.stderr,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )

        if args.command is None:
            parser.print_help()
            return 0

        if args.command == "test-query":
            return cmd_test_query(args)

        if args.command == "inspect-config":
            return cmd_inspect_config(args)

        return 0

    except Exception as e:
        # Unexpected errors return exit code 1
        _output_json(_make_error_result("INTERNAL_ERROR", str(e)))
        return 1


if __name__ == "__main__":
    sys.exit(main())
