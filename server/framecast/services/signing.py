from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

import jwt

from framecast.services.errors import ConfigurationError

TOKEN_TTL_SECONDS = 1800
NOT_BEFORE_SKEW_SECONDS = 5


def mask_key(value: str, *, visible: int = 8) -> str:
    """Return a log-safe prefix of a credential value."""
    trimmed = (value or "").strip()
    if not trimmed:
        return "<unset>"
    return f"{trimmed[:visible]}..."


@dataclass(frozen=True)
class Credentials:
    """Issuer key plus shared signing secret for the video provider."""

    issuer_key: str
    signing_secret: str = field(repr=False)

    @property
    def masked_issuer(self) -> str:
        return mask_key(self.issuer_key)


@dataclass(frozen=True, slots=True)
class SignedToken:
    """A bearer JWT together with the validity window it encodes."""

    value: str
    issued_at: int
    expires_at: int

    @property
    def not_before(self) -> int:
        return self.issued_at - NOT_BEFORE_SKEW_SECONDS

    def expires_within(self, seconds: float, *, now: float) -> bool:
        return self.expires_at - now <= seconds


class TokenSigner:
    """Builds HS256 JWTs proving possession of the provider signing secret.

    The header is ``{"alg": "HS256", "typ": "JWT"}`` and the claims are
    ``iss`` (issuer key), ``exp`` (now + 30 minutes) and ``nbf`` (now - 5s),
    all in epoch seconds. The clock is injectable so tokens are reproducible.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def sign(self, credentials: Credentials | None) -> SignedToken:
        issuer = (credentials.issuer_key if credentials else "") or ""
        secret = (credentials.signing_secret if credentials else "") or ""
        if not issuer.strip():
            raise ConfigurationError("Signing credentials are missing the issuer (access) key")
        if not secret.strip():
            raise ConfigurationError("Signing credentials are missing the signing secret")

        now = int(self._clock())
        claims = {
            "iss": issuer,
            "exp": now + TOKEN_TTL_SECONDS,
            "nbf": now - NOT_BEFORE_SKEW_SECONDS,
        }
        value = jwt.encode(claims, secret, algorithm="HS256", headers={"typ": "JWT"})
        return SignedToken(value=value, issued_at=now, expires_at=now + TOKEN_TTL_SECONDS)

    @staticmethod
    def describe(token: SignedToken, credentials: Credentials) -> dict[str, Any]:
        """Non-secret diagnostics about a freshly signed token."""
        header, payload, signature = token.value.split(".")

        def _iso(ts: int) -> str:
            return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()

        return {
            "issuer": credentials.masked_issuer,
            "issued_at": _iso(token.issued_at),
            "expires_at": _iso(token.expires_at),
            "not_before": _iso(token.not_before),
            "secret_length": len(credentials.signing_secret),
            "header_length": len(header),
            "payload_length": len(payload),
            "signature_length": len(signature),
            "token_length": len(token.value),
        }
