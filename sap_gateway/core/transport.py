"""
sap_gateway.core.transport - HTTP transport over requests
==========================================================

A pooled :class:`requests.Session` that sends :class:`HttpRequest` objects
and returns :class:`HttpResponse` objects for every status code. Retries
and cookies are left to the retry handler and the session manager.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from http.cookiejar import DefaultCookiePolicy
from typing import Any, Callable, Dict, List, Optional
import json
import logging
import time

import requests
from requests import Response, Session
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from sap_gateway.core.config import PoolConfig
from sap_gateway.core.errors import TransportError
from sap_gateway.core.request import HttpRequest

logger = logging.getLogger("sap_gateway.transport")

USER_AGENT = "sap-gateway-client/0.3"


@dataclass
class HttpResponse:
    """
    What the engine needs from an HTTP response.

    Attributes
    ----------
    status : int
        HTTP status code
    headers : dict
        Response headers (single values)
    text : str
        Decoded body
    set_cookies : list of str
        Every raw ``Set-Cookie`` header value
    url : str
        Final URL
    elapsed_ms : float
        Round-trip time
    """
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    text: str = ""
    set_cookies: List[str] = field(default_factory=list)
    url: str = ""
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json_or_text(self) -> Any:
        """Decoded JSON when the body is JSON, else ``{"raw": ..., "content_type": ...}``."""
        ctype = ""
        for k, v in self.headers.items():
            if k.lower() == "content-type":
                ctype = v or ""
                break
        if self.text and ("json" in ctype.lower() or not ctype):
            try:
                return json.loads(self.text)
            except ValueError:
                pass
        if not self.text:
            return {}
        return {"raw": self.text, "content_type": ctype}


Transport = Callable[[HttpRequest], HttpResponse]


def _set_cookie_values(r: Response) -> List[str]:
    raw_headers = getattr(r.raw, "headers", None)
    getlist = getattr(raw_headers, "getlist", None)
    if callable(getlist):
        values = getlist("Set-Cookie")
        if isinstance(values, list) and values:
            return [str(v) for v in values]
    return [f"{c.name}={c.value}" for c in r.cookies]


class RequestsTransport:
    """
    Callable transport backed by a pooled ``requests.Session``.

    Parameters
    ----------
    pool : PoolConfig, optional
        Pool sizing and keep-alive

    Examples
    --------
    >>> with RequestsTransport() as transport:
    ...     resp = transport(HttpRequest("GET", "https://s4.example.com/sap/opu/odata/sap/API_X/"))
    ...     resp.status
    200
    """

    def __init__(self, pool: Optional[PoolConfig] = None) -> None:
        self.pool = pool or PoolConfig()
        self.session = self._build_session()

    def _build_session(self) -> Session:
        sess = requests.Session()
        sess.headers.update({"User-Agent": USER_AGENT})
        if not self.pool.keep_alive:
            sess.headers["Connection"] = "close"
        # session state is tracked explicitly per service
        sess.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))

        adapter = HTTPAdapter(
            max_retries=Retry(total=0, raise_on_status=False),
            pool_connections=max(1, int(self.pool.max_free_sockets)),
            pool_maxsize=max(1, int(self.pool.max_sockets)),
        )
        sess.mount("https://", adapter)
        sess.mount("http://", adapter)
        return sess

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()

    def __enter__(self) -> "RequestsTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __call__(self, request: HttpRequest) -> HttpResponse:
        t0 = time.perf_counter()
        try:
            r = self.session.request(
                method=request.method,
                url=request.url,
                params=request.params or None,
                headers=request.headers,
                data=request.body,
                auth=request.auth,
                timeout=request.timeout,
                verify=request.verify,
                allow_redirects=False,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransportError(f"{request.method} {request.url} failed: {e}", request.url) from e
        dt = (time.perf_counter() - t0) * 1000.0
        logger.debug("%s %s %s %sms", request.method, request.url, r.status_code, round(dt, 1))
        return HttpResponse(
            status=r.status_code,
            headers=dict(r.headers),
            text=r.text,
            set_cookies=_set_cookie_values(r),
            url=r.url,
            elapsed_ms=dt,
        )
