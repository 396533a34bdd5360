#!/usr/bin/env python3
"""
Mint Session Token

Signs a console session token for a local principal so the consent page
and the tool management endpoints can be driven without the identity
provider. Uses TOKEN_SIGNING_SECRET and BASE_URL from the environment.

Never point this at a production secret.
"""

import argparse
import sys

import structlog

from toolgate.config import ConfigurationError, Settings
from toolgate.services.token_codec import TokenCodec

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 8 * 3600


def mint(settings: Settings, principal: str, ttl_seconds: int) -> str:
    """Sign a session token for principal with the gateway's own codec."""
    codec = TokenCodec(
        secret=settings.token_signing_secret,
        issuer=settings.issuer,
        audience=settings.session_audience,
    )
    return codec.sign(
        principal,
        scopes=(),
        client_id=None,
        ttl_seconds=ttl_seconds,
        token_type="session",
    )


def main():
    parser = argparse.ArgumentParser(
        description="Mint a console session token for local development",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Token for user-1, valid for eight hours
  python3 mint_session_token.py user-1

  # Paste into the browser before opening the consent page
  localStorage.setItem("toolgate_session_token", "<token>")
        """,
    )
    parser.add_argument("principal", help="Principal id the token is issued to")
    parser.add_argument(
        "--ttl", type=int, default=DEFAULT_TTL_SECONDS, help="Lifetime in seconds"
    )
    args = parser.parse_args()

    if args.ttl <= 0:
        logger.error("invalid_ttl", ttl=args.ttl)
        sys.exit(1)

    try:
        settings = Settings()
    except ConfigurationError as e:
        logger.error("configuration_invalid", error=str(e))
        sys.exit(1)

    print(mint(settings, args.principal, args.ttl))


if __name__ == "__main__":
    main()
