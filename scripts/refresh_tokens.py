"""Operator entry point for one-off token refresh runs.

Example usages::

    # Refresh every expired token once, skipping previously failed ones.
    python -m scripts.refresh_tokens all --skip-failed

    # Refresh a single user's tokens for one provider.
    python -m scripts.refresh_tokens user github-alice github

    # Only validate the provider configuration.
    python -m scripts.refresh_tokens check --env-file /opt/tokens/.env
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from federated_tokens.core.config import AppSettings, _load_env_file, get_settings
from federated_tokens.core.logging import configure_logging
from federated_tokens.services.tokens import TokensError, TokenService

EXIT_OK = 0
EXIT_VALIDATION_ERROR = 2
EXIT_RUNTIME_ERROR = 5


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Refresh stored federated tokens.")
    parser.add_argument(
        "--env-file",
        default=".env",
        type=Path,
        help="Optional environment file loaded before settings (default: .env).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    all_parser = subparsers.add_parser("all", help="Refresh every expired token pair.")
    all_parser.add_argument(
        "--skip-failed",
        action="store_true",
        help="Skip token pairs whose last refresh attempt failed.",
    )

    user_parser = subparsers.add_parser("user", help="Refresh one user's tokens.")
    user_parser.add_argument("uid", help="Local user key.")
    user_parser.add_argument("provider_id", help="Provider identifier.")

    subparsers.add_parser("check", help="Validate settings and exit.")
    return parser


def _load_settings(env_file: Path) -> AppSettings:
    _load_env_file(str(env_file))
    get_settings.cache_clear()
    return get_settings()


async def _run(args: argparse.Namespace, token_service: TokenService) -> int:
    if args.command == "all":
        summary = await token_service.refresh_all_tokens(skip_failed=args.skip_failed)
        counts = ", ".join(
            f"{outcome.value}={count}" for outcome, count in summary.counts.items()
        )
        print(f"Processed {summary.total} token records ({counts}).")
        return EXIT_OK

    outcome = await token_service.refresh_user_tokens(args.uid, args.provider_id)
    if outcome is None:
        print(f"No tokens stored for {args.uid} at {args.provider_id}.")
    else:
        print(f"Tokens for {args.uid} at {args.provider_id}: {outcome.value}.")
    return EXIT_OK


def main(
    argv: list[str] | None = None,
    token_service: Optional[TokenService] = None,
) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        settings = _load_settings(args.env_file)
    except ValidationError as exc:
        print(
            "Settings validation failed. Missing or invalid values detected:\n"
            f"{exc.json(indent=2)}",
            file=sys.stderr,
        )
        return EXIT_VALIDATION_ERROR

    if args.command == "check":
        print(f"Settings OK ({len(settings.providers)} providers configured).")
        return EXIT_OK

    configure_logging(settings.log_level)
    if token_service is None:
        from federated_tokens.dependencies import get_token_service

        token_service = get_token_service()

    try:
        return asyncio.run(_run(args, token_service))
    except TokensError as exc:
        print(f"Token refresh failed: {exc}", file=sys.stderr)
        return EXIT_RUNTIME_ERROR


if __name__ == "__main__":  # pragma: no cover - script entry point
    sys.exit(main())
