"""
Bearer token verification boundary.

Real identity verification lives in an external service. The core only
needs `verify(token) -> user_id`; StaticTokenVerifier is the implementation
used for local development and tests.
"""

import hmac
import logging
from typing import Dict, Mapping, Optional, Protocol

from app.services.errors import Unauthorized

logger = logging.getLogger(__name__)


class AuthVerifier(Protocol):
    def verify(self, token: str) -> str:
        """Return the user id for `token` or raise Unauthorized."""
        ...


def parse_token_table(raw: Optional[str]) -> Dict[str, str]:
    """
    Parse `API_TOKENS`, a comma-separated list of `token:user_id` pairs.

    Malformed entries are skipped with a warning.
    """
    table: Dict[str, str] = {}
    if not raw:
        return table

    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        token, sep, user_id = entry.partition(":")
        if not sep or not token.strip() or not user_id.strip():
            logger.warning("Ignoring malformed API_TOKENS entry")
            continue
        table[token.strip()] = user_id.strip()
    return table


def extract_bearer_token(authorization: Optional[str]) -> str:
    """Pull the token out of an `Authorization: Bearer <token>` header."""
    if not authorization:
        raise Unauthorized()
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthorized("Authorization header is missing or malformed.")
    return token.strip()


class StaticTokenVerifier:
    """Verifies tokens against a fixed token → user id table."""

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._tokens = dict(tokens)
        if not self._tokens:
            logger.warning("No API tokens configured; every request will be rejected")

    def verify(self, token: str) -> str:
        for known, user_id in self._tokens.items():
            if hmac.compare_digest(known.encode("utf-8"), token.encode("utf-8")):
                return user_id
        logger.warning("Token verification failed")
        raise Unauthorized("Authentication failed.")
