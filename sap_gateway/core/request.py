"""
sap_gateway.core.request - Wire request construction
=====================================================

Turns a logical Gateway call into an :class:`HttpRequest` the transport can
send: URL assembly with SSRF checks, auth, CSRF header, sap-client /
sap-language and validated custom headers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple, Union
from urllib.parse import urlsplit
import ipaddress
import json
import logging
import re
import socket

from sap_gateway.core.config import DEFAULT_TIMEOUT, PoolConfig, SapCredentials
from sap_gateway.core.errors import ValidationError

logger = logging.getLogger("sap_gateway.request")

_LOCALHOST_NAMES = ("localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback")
_METADATA_HOSTS = (
    "169.254.169.254",
    "metadata.google.internal",
    "metadata.azure.com",
    "100.100.100.200",
)
_FORBIDDEN_CUSTOM_HEADERS = {"authorization", "x-csrf-token", "cookie", "set-cookie"}
_HEADER_NAME_RE = re.compile(r"^[a-z0-9-]+$", re.I)
_ENTITY_SET_RE = re.compile(r"^[A-Za-z0-9_]+$")
_TRAVERSAL_RE = re.compile(r"\.\.[/\\]")
_NUMERIC_HOST_RE = re.compile(r"^[0-9a-fx.]+$", re.I)


@dataclass
class HttpRequest:
    """
    Transport-ready request description.

    Attributes
    ----------
    method : str
        HTTP method
    url : str
        Absolute URL without query string
    headers : dict
        Request headers
    params : dict
        Query parameters (already stringified)
    body : str or bytes, optional
        Encoded request body
    auth : tuple, optional
        (user, password) for HTTP basic auth
    timeout : float
        Seconds
    verify : bool
        TLS certificate verification
    expect_json : bool
        Whether the caller wants the body decoded as JSON
    """
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, str] = field(default_factory=dict)
    body: Optional[Union[str, bytes]] = None
    auth: Optional[Tuple[str, str]] = None
    timeout: float = DEFAULT_TIMEOUT
    verify: bool = True
    expect_json: bool = True


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def sanitize_header_value(value: Any) -> str:
    """Strip CR/LF/NUL so a value can't inject extra header lines."""
    return re.sub(r"[\r\n\0]", "", str(value))


def validate_entity_set_name(name: str) -> str:
    """Entity set names may only contain letters, digits and underscores."""
    if not name or not _ENTITY_SET_RE.match(name):
        raise ValidationError(
            f"Invalid entity set name {name!r}: only [a-zA-Z0-9_] allowed"
        )
    return name


def _normalize_numeric_host(hostname: str) -> str:
    # 2130706433, 0177.0.0.1, 0x7f.0.0.1 all mean 127.0.0.1
    if not _NUMERIC_HOST_RE.match(hostname) or not any(c.isdigit() for c in hostname):
        return hostname
    try:
        return socket.inet_ntoa(socket.inet_aton(hostname))
    except OSError:
        return hostname


def validate_url(url: str, *, allow_private_ips: bool = False) -> str:
    """
    Reject URLs that could be used for server-side request forgery.

    Only http/https are allowed. Loopback hosts and cloud metadata
    endpoints are always blocked; private/link-local ranges are blocked
    unless ``allow_private_ips`` is set (on-premise Gateways).

    Raises
    ------
    ValidationError
        If the URL is not acceptable
    """
    parts = urlsplit(url or "")
    if parts.scheme.lower() not in ("http", "https"):
        raise ValidationError(f"Invalid protocol: {parts.scheme or '<none>'}. Only HTTP and HTTPS are allowed")
    hostname = (parts.hostname or "").lower()
    if not hostname:
        raise ValidationError("URL has no host")

    normalized = _normalize_numeric_host(hostname)
    if any(h in hostname or h in normalized for h in _METADATA_HOSTS):
        raise ValidationError("Access to cloud metadata endpoints is not allowed")
    if hostname in _LOCALHOST_NAMES:
        raise ValidationError("Access to localhost is not allowed")

    try:
        ip = ipaddress.ip_address(normalized)
    except ValueError:
        return url
    if ip.is_loopback or ip.is_unspecified:
        raise ValidationError("Access to localhost is not allowed")
    if not allow_private_ips and (ip.is_private or ip.is_link_local or ip.is_reserved):
        raise ValidationError(
            "Access to private IP addresses is not allowed (enable allow_private_ips for on-premise systems)"
        )
    return url


def build_secure_url(host: str, service_path: str, resource: str = "") -> str:
    """
    Join host, service path and resource, dropping path traversal segments.

    Examples
    --------
    >>> build_secure_url("https://s4.example.com/", "/sap/opu/odata/sap/API_X", "../Orders")
    'https://s4.example.com/sap/opu/odata/sap/API_X/Orders'
    """
    parts = urlsplit(host or "")
    if parts.scheme.lower() not in ("http", "https"):
        raise ValidationError(f"Invalid protocol: {parts.scheme or '<none>'}. Only HTTP and HTTPS are allowed")
    path = _TRAVERSAL_RE.sub("", service_path or "").strip("/")
    res = _TRAVERSAL_RE.sub("", resource or "").lstrip("/")
    url = f"{parts.scheme}://{parts.netloc}/{path}" if path else f"{parts.scheme}://{parts.netloc}"
    return f"{url}/{res}"


def parse_custom_headers(headers: Mapping[str, Any]) -> Dict[str, str]:
    """
    Filter user-supplied headers.

    Names must match ``[a-z0-9-]+``; Authorization, X-CSRF-Token, Cookie
    and Set-Cookie are reserved for the engine. Rejected entries are
    logged and skipped.
    """
    out: Dict[str, str] = {}
    for key, value in headers.items():
        if value is None or value == "":
            continue
        name = str(key).strip().lower()
        if not _HEADER_NAME_RE.match(name):
            logger.warning("Invalid custom header name skipped: %r", key)
            continue
        if name in _FORBIDDEN_CUSTOM_HEADERS:
            logger.warning("Forbidden custom header skipped: %s", name)
            continue
        out[name] = sanitize_header_value(value)
    return out


def parse_status_codes(codes: Optional[str]) -> FrozenSet[int]:
    """
    Parse ``"429, 503, 504"`` into a set of status codes.

    Empty input gives the default retryable set; invalid entries are dropped.
    """
    if not codes or not isinstance(codes, str):
        return frozenset({429, 503, 504})
    out = set()
    for token in codes.split(","):
        token = token.strip()
        if token.isdigit() and 100 <= int(token) < 600:
            out.add(int(token))
    return frozenset(out)


def _stringify_params(query: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for k, v in (query or {}).items():
        if v is None:
            continue
        if isinstance(v, bool):
            params[k] = "true" if v else "false"
        else:
            params[k] = str(v)
    return params


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class RequestBuilder:
    """
    Build :class:`HttpRequest` objects for one set of credentials.

    Parameters
    ----------
    credentials : SapCredentials
        Host, auth and SAP header settings
    pool : PoolConfig, optional
        Supplies the request timeout

    Examples
    --------
    >>> rb = RequestBuilder(SapCredentials(host="https://s4.example.com", username="U", password="P"))
    >>> req = rb.build("GET", "A_SalesOrder", "/sap/opu/odata/sap/API_SALES_ORDER_SRV", query={"$top": 10})
    >>> req.url
    'https://s4.example.com/sap/opu/odata/sap/API_SALES_ORDER_SRV/A_SalesOrder'
    """

    def __init__(self, credentials: SapCredentials, pool: Optional[PoolConfig] = None) -> None:
        self.credentials = credentials
        self.pool = pool or PoolConfig()
        self._custom_headers = parse_custom_headers(credentials.custom_header_map())

    def _check_host(self) -> None:
        validate_url(self.credentials.host, allow_private_ips=self.credentials.allow_private_ips)

    def _resolve_uri(self, uri: str, service_path: str) -> str:
        if uri.lower().startswith(("http://", "https://")):
            validate_url(uri, allow_private_ips=self.credentials.allow_private_ips)
            if urlsplit(uri).netloc.lower() != urlsplit(self.credentials.host).netloc.lower():
                raise ValidationError("Next-link points to a different host")
            return uri
        if uri.startswith("/"):
            return build_secure_url(self.credentials.host, "", uri)
        return build_secure_url(self.credentials.host, service_path, uri)

    def _base_headers(self, bearer_token: Optional[str]) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if bearer_token:
            headers["Authorization"] = f"Bearer {sanitize_header_value(bearer_token)}"
        if self.credentials.sap_client:
            headers["sap-client"] = sanitize_header_value(self.credentials.sap_client)
        if self.credentials.sap_language:
            headers["sap-language"] = sanitize_header_value(self.credentials.sap_language)
        headers.update(self._custom_headers)
        return headers

    def _basic_auth(self) -> Optional[Tuple[str, str]]:
        c = self.credentials
        if c.auth_type == "basic" and c.username and c.password:
            return (c.username, c.password)
        return None

    def build(
        self,
        method: str,
        resource: str,
        service_path: str,
        *,
        body: Optional[Union[Mapping[str, Any], str, bytes]] = None,
        query: Optional[Mapping[str, Any]] = None,
        uri: Optional[str] = None,
        csrf_token: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        bearer_token: Optional[str] = None,
    ) -> HttpRequest:
        """
        Build a request.

        Parameters
        ----------
        method : str
            HTTP method
        resource : str
            Resource relative to the service root, e.g. "A_SalesOrder('1')"
        service_path : str
            Service root path
        body : dict, str or bytes, optional
            Dicts are JSON-encoded
        query : dict, optional
            Query parameters (None values dropped)
        uri : str, optional
            Full or service-relative URL that overrides ``resource``
            (used to follow next-links)
        csrf_token : str, optional
            Sent as X-CSRF-Token on non-GET requests
        headers : dict, optional
            Extra per-request headers (sanitized)
        bearer_token : str, optional
            OAuth access token

        Returns
        -------
        HttpRequest
        """
        method = method.upper()
        self._check_host()

        url = self._resolve_uri(uri, service_path) if uri else build_secure_url(
            self.credentials.host, service_path, resource
        )
        is_metadata = "$metadata" in (uri or resource)

        out_headers = {
            "Accept": "application/xml" if is_metadata else "application/json",
            "Content-Type": "application/json",
        }
        out_headers.update(self._base_headers(bearer_token))
        if method != "GET" and csrf_token:
            out_headers["X-CSRF-Token"] = sanitize_header_value(csrf_token)
        for k, v in (headers or {}).items():
            out_headers[k] = sanitize_header_value(v)

        data: Optional[Union[str, bytes]]
        if body is None or isinstance(body, (str, bytes)):
            data = body
        else:
            data = json.dumps(body, separators=(",", ":"))

        return HttpRequest(
            method=method,
            url=url,
            headers=out_headers,
            params=_stringify_params(query),
            body=data,
            auth=self._basic_auth(),
            timeout=float(self.pool.timeout),
            verify=not self.credentials.allow_unauthorized_certs,
            expect_json=not is_metadata,
        )

    def build_csrf_fetch(self, service_path: str, *, bearer_token: Optional[str] = None) -> HttpRequest:
        """GET on the service root with ``X-CSRF-Token: Fetch``."""
        self._check_host()
        headers = {"X-CSRF-Token": "Fetch", "Accept": "application/json"}
        headers.update(self._base_headers(bearer_token))
        return HttpRequest(
            method="GET",
            url=build_secure_url(self.credentials.host, service_path, ""),
            headers=headers,
            auth=self._basic_auth(),
            timeout=float(self.pool.timeout),
            verify=not self.credentials.allow_unauthorized_certs,
        )
