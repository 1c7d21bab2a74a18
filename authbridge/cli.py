"""
authbridge command line.

Purpose:
  Issue one call against the backend through the same client the application
  uses, so the bearer token, refresh and error normalization all apply.

Examples:
  authbridge GET /users/me --session-file ~/.authbridge/session.json
  authbridge POST /jobs --json '{"title": "Intern"}'
  authbridge GET /users/me --access-token AT --refresh-token RT

Exit codes:
  0 = success (envelope printed as JSON)
  1 = application or session error (normalized error printed as JSON)
  2 = network error
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional, Sequence

from .client import ApiClient
from .core.config import ClientSettings, get_settings
from .core.errors import ApiError, FailureKind
from .core.logging import configure_logging
from .services.events import SessionInvalidated
from .services.session_store import REFRESH_TOKEN_KEY

METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="authbridge", description="Call the backend API through the session-aware client.")
    p.add_argument("method", type=str.upper, choices=METHODS, help="HTTP method.")
    p.add_argument("path", help="Path relative to the API base URL (e.g. /users/me).")
    p.add_argument("--json", dest="body", default=None, help="JSON request body.")
    p.add_argument("-q", "--query", action="append", default=[], metavar="KEY=VALUE",
                   help="Query parameter; may be repeated.")
    p.add_argument("--base-url", default=None, help="Override the API base URL.")
    p.add_argument("--timeout", type=float, default=None, help="Request timeout in seconds.")
    p.add_argument("--session-file", type=Path, default=None,
                   help="JSON file holding the persisted session.")
    p.add_argument("--access-token", default=None, help="Seed the access token before the call.")
    p.add_argument("--refresh-token", default=None, help="Seed the refresh token before the call.")
    p.add_argument("-v", "--verbose", action="store_true", help="Log requests to stderr.")
    return p.parse_args(argv)


def parse_query(pairs: Sequence[str]) -> dict[str, str]:
    params: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid query parameter '{pair}', expected KEY=VALUE")
        params[key] = value
    return params


def build_settings(args: argparse.Namespace) -> ClientSettings:
    overrides: dict[str, Any] = {}
    if args.base_url:
        overrides["API_URL"] = args.base_url
    if args.timeout:
        overrides["TIMEOUT_SECONDS"] = args.timeout
    if args.session_file:
        overrides["SESSION_FILE"] = args.session_file
        overrides["SESSION_DB_URL"] = None
    if not args.verbose:
        overrides["LOG_LEVEL"] = "WARNING"
    base = get_settings()
    if not overrides:
        return base
    return ClientSettings.model_validate({**base.model_dump(), **overrides})


async def run(args: argparse.Namespace, client: ApiClient) -> int:
    if args.access_token:
        client.session.set_tokens(args.access_token, args.refresh_token)
    elif args.refresh_token:
        client.session.store.set(REFRESH_TOKEN_KEY, args.refresh_token)

    @client.events.subscribe
    def _report(event: SessionInvalidated) -> None:
        print(f"Session invalidated ({event.reason.value}); log in again at {event.redirect_to}", file=sys.stderr)

    body = json.loads(args.body) if args.body else None
    params = parse_query(args.query) or None
    try:
        result = await client.request(args.method, args.path, json=body, params=params)
    except ApiError as exc:
        print(json.dumps(exc.to_dict(), indent=2))
        return 2 if exc.kind is FailureKind.TRANSPORT else 1
    print(json.dumps(result, indent=2, ensure_ascii=False, default=str))
    return 0


async def _main(args: argparse.Namespace) -> int:
    settings = build_settings(args)
    configure_logging(settings)
    async with ApiClient(settings) as client:
        return await run(args, client)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        return asyncio.run(_main(args))
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
