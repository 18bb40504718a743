"""
sap_gateway.core.oauth - OAuth2 client-credentials tokens
==========================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional
from urllib.parse import urlencode
import json
import logging
import threading
import time

from sap_gateway.core.config import SapCredentials
from sap_gateway.core.errors import AuthError, ProtocolDecodeError, ValidationError, classify_http_error
from sap_gateway.core.request import HttpRequest, validate_url

logger = logging.getLogger("sap_gateway.oauth")

REFRESH_MARGIN = 5 * 60.0
DEFAULT_EXPIRES_IN = 3600
TOKEN_TIMEOUT = 30.0


@dataclass
class OAuthToken:
    access_token: str
    token_type: str
    expires_at: float
    scope: Optional[str] = None


class OAuthTokenManager:
    """
    Fetch and cache client-credentials tokens.

    Tokens are cached per ``client_id|token_url`` and refreshed once they
    are within five minutes of expiry.

    Parameters
    ----------
    transport : callable
        ``transport(HttpRequest) -> HttpResponse``
    clock : callable, optional
        Epoch-seconds time source
    """

    def __init__(self, transport, *, clock: Optional[Callable[[], float]] = None) -> None:
        self.transport = transport
        self.clock = clock or time.time
        self._tokens: Dict[str, OAuthToken] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(creds: SapCredentials) -> str:
        return f"{creds.client_id}|{creds.token_url}"

    def _valid(self, token: OAuthToken) -> bool:
        return self.clock() < token.expires_at - REFRESH_MARGIN

    def get_access_token(self, creds: SapCredentials) -> str:
        """
        Return a bearer token, fetching a new one if the cached one is stale.

        Raises
        ------
        ValidationError
            If the OAuth configuration is incomplete
        AuthError
            If the token endpoint rejects the client
        """
        if not creds.has_oauth:
            raise ValidationError("OAuth2 requires token_url, client_id and client_secret")
        key = self._key(creds)
        with self._lock:
            cached = self._tokens.get(key)
            if cached is not None and self._valid(cached):
                return cached.access_token

        token = self._fetch(creds)
        with self._lock:
            self._tokens[key] = token
        return token.access_token

    def _fetch(self, creds: SapCredentials) -> OAuthToken:
        validate_url(creds.token_url or "", allow_private_ips=creds.allow_private_ips)
        form = {"grant_type": "client_credentials"}
        if creds.oauth_scope:
            form["scope"] = creds.oauth_scope

        logger.debug("Fetching OAuth token for client %s...", (creds.client_id or "")[:10])
        resp = self.transport(HttpRequest(
            method="POST",
            url=creds.token_url or "",
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
            body=urlencode(form),
            auth=(creds.client_id or "", creds.client_secret or ""),
            timeout=TOKEN_TIMEOUT,
            verify=not creds.allow_unauthorized_certs,
        ))
        if resp.status in (400, 401):
            raise AuthError(resp.status, "OAuth authentication failed: check client id, secret and scope",
                            creds.token_url or "", resp.headers)
        if resp.status >= 300:
            raise classify_http_error(resp.status, resp.text, creds.token_url or "", resp.headers)

        try:
            payload = json.loads(resp.text or "{}")
        except ValueError as e:
            raise ProtocolDecodeError(f"OAuth token response is not JSON: {e}") from e
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise ProtocolDecodeError("OAuth token response missing access_token")

        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        logger.info("OAuth token fetched, expires in %ss", expires_in)
        return OAuthToken(
            access_token=access_token,
            token_type=payload.get("token_type") or "Bearer",
            expires_at=self.clock() + expires_in,
            scope=payload.get("scope"),
        )

    def clear_token(self, creds: SapCredentials) -> None:
        with self._lock:
            self._tokens.pop(self._key(creds), None)

    def clear_all(self) -> None:
        with self._lock:
            self._tokens.clear()
