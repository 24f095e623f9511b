from __future__ import annotations

import time
from typing import Callable, Optional, Protocol

from framecast.services.errors import ConfigurationError
from framecast.services.signing import Credentials, SignedToken, TokenSigner


class AuthMethod(Protocol):
    """Produces the authentication headers attached to each provider request."""

    def headers(self) -> dict[str, str]:
        ...


class ApiKeyAuth:
    """Static API key sent verbatim in a provider-specific header."""

    def __init__(self, api_key: Optional[str], *, header_name: str = "X-Key") -> None:
        self._api_key = (api_key or "").strip()
        self._header_name = header_name

    def headers(self) -> dict[str, str]:
        if not self._api_key:
            raise ConfigurationError(f"API key for the {self._header_name} header is not configured")
        return {self._header_name: self._api_key}


class BearerTokenAuth:
    """Signs a fresh JWT for every request.

    With ``reuse_margin_seconds`` set, the last token is reused until it is
    within that many seconds of expiry.
    """

    def __init__(
        self,
        credentials: Optional[Credentials],
        *,
        signer: Optional[TokenSigner] = None,
        reuse_margin_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credentials = credentials
        self._signer = signer or TokenSigner(clock=clock)
        self._reuse_margin_seconds = reuse_margin_seconds
        self._clock = clock
        self._current: Optional[SignedToken] = None

    def token(self) -> SignedToken:
        if self._reuse_margin_seconds is not None and self._current is not None:
            if not self._current.expires_within(self._reuse_margin_seconds, now=self._clock()):
                return self._current
        token = self._signer.sign(self._credentials)
        if self._reuse_margin_seconds is not None:
            self._current = token
        return token

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token().value}"}
