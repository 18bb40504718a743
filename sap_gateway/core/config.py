"""
sap_gateway.core.config - Credentials and execution options
============================================================

Plain dataclasses describing *who* talks to the Gateway and *how*.
Everything can be built from ``S4_*`` / ``ODATA_*`` environment variables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple, Union
from urllib.parse import urlsplit
import json
import os

from sap_gateway.core.errors import ValidationError

DEFAULT_SERVICE_PATH = "/sap/opu/odata/sap/"
DEFAULT_TIMEOUT = 120.0
DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_PAGES = 1000


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class SapCredentials:
    """
    Connection credentials for a SAP Gateway host.

    Parameters
    ----------
    host : str
        Scheme and host, e.g. "https://s4.example.com:44300"
    auth_type : str
        "none", "basic" or "oauth2" (client credentials)
    username, password : str, optional
        Basic auth credentials
    token_url, client_id, client_secret, oauth_scope : str, optional
        OAuth2 client-credentials configuration
    sap_client : str, optional
        Value for the ``sap-client`` header
    sap_language : str, optional
        Value for the ``sap-language`` header
    custom_headers : dict or str, optional
        Extra headers, either a mapping or a JSON object string
    allow_unauthorized_certs : bool
        Disable TLS certificate verification
    allow_private_ips : bool
        Permit hosts that resolve to private address ranges

    Examples
    --------
    >>> creds = SapCredentials(
    ...     host="https://s4.example.com",
    ...     auth_type="basic",
    ...     username="USER",
    ...     password="PASS",
    ...     sap_client="100",
    ... )
    """
    host: str
    auth_type: str = "basic"  # "none" | "basic" | "oauth2"
    username: Optional[str] = None
    password: Optional[str] = None
    token_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    oauth_scope: Optional[str] = None
    sap_client: Optional[str] = None
    sap_language: Optional[str] = None
    custom_headers: Optional[Union[Dict[str, str], str]] = None
    allow_unauthorized_certs: bool = False
    allow_private_ips: bool = False

    def __post_init__(self) -> None:
        if self.auth_type not in ("none", "basic", "oauth2"):
            raise ValidationError("auth_type must be 'none', 'basic' or 'oauth2'")

    @property
    def identity(self) -> str:
        """Non-secret identity used for cache/session scoping."""
        if self.auth_type == "oauth2":
            return self.client_id or ""
        return self.username or ""

    @property
    def has_oauth(self) -> bool:
        return (
            self.auth_type == "oauth2"
            and bool(self.token_url)
            and bool(self.client_id)
            and bool(self.client_secret)
        )

    def custom_header_map(self) -> Dict[str, str]:
        """Return ``custom_headers`` as a dict, decoding a JSON string if needed."""
        if not self.custom_headers:
            return {}
        if isinstance(self.custom_headers, dict):
            return dict(self.custom_headers)
        try:
            parsed = json.loads(self.custom_headers)
        except ValueError as e:
            raise ValidationError(f"custom_headers is not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise ValidationError("custom_headers must be a JSON object")
        return {str(k): str(v) for k, v in parsed.items()}

    @classmethod
    def from_env(cls) -> "SapCredentials":
        """
        Build credentials from ``S4_*`` environment variables.

        Uses OAuth2 when S4_OAUTH_CLIENT_ID is set, basic auth when S4_USER
        is set, and no auth otherwise.
        """
        base_url = os.environ.get("S4_BASE_URL", "").strip()
        if not base_url:
            raise ValidationError("Missing S4_BASE_URL environment variable")
        host, _ = split_base_url(base_url)

        client_id = os.environ.get("S4_OAUTH_CLIENT_ID")
        user = os.environ.get("S4_USER")
        if client_id:
            auth_type = "oauth2"
        elif user:
            auth_type = "basic"
        else:
            auth_type = "none"

        return cls(
            host=host,
            auth_type=auth_type,
            username=user,
            password=os.environ.get("S4_PASS"),
            token_url=os.environ.get("S4_OAUTH_TOKEN_URL"),
            client_id=client_id,
            client_secret=os.environ.get("S4_OAUTH_CLIENT_SECRET"),
            oauth_scope=os.environ.get("S4_OAUTH_SCOPE"),
            sap_client=os.environ.get("S4_SAP_CLIENT"),
            sap_language=os.environ.get("S4_SAP_LANGUAGE"),
            custom_headers=os.environ.get("S4_CUSTOM_HEADERS"),
            allow_unauthorized_certs=not _env_bool("S4_VERIFY_TLS", True),
            allow_private_ips=_env_bool("S4_ALLOW_PRIVATE_IPS", False),
        )


@dataclass
class PoolConfig:
    """Connection-pool sizing handed to the transport."""
    keep_alive: bool = True
    max_sockets: int = 50
    max_free_sockets: int = 10
    timeout: float = DEFAULT_TIMEOUT
    free_socket_timeout: float = 30.0


@dataclass
class ThrottleConfig:
    enabled: bool = False
    max_requests_per_second: float = 10.0
    strategy: str = "delay"  # "delay" | "drop"
    burst_size: int = 5


@dataclass
class ExecutionOptions:
    """
    Per-execution knobs for the request pipeline.

    Parameters
    ----------
    throttle : ThrottleConfig
        Rate limiting for this execution scope
    pool : PoolConfig
        Transport connection-pool configuration
    retry_enabled : bool
        Wrap calls in the retry handler
    max_attempts, initial_delay, max_delay, backoff_factor
        Retry policy (delays in seconds)
    retryable_status_codes : frozenset of int
        HTTP statuses that trigger a retry
    retry_network_errors : bool
        Retry on connection/timeout failures
    continue_on_fail : bool
        Return partial pagination results instead of raising
    max_items : int
        Item cap for collection reads (0 = unlimited)
    page_size : int
        ``$top`` of each page requested by a collection read
    max_pages : int
        Stop a collection read after this many pages (0 = unlimited); the
        result is then flagged partial
    debug_logging : bool
        Log request/response details at DEBUG
    """
    throttle: ThrottleConfig = field(default_factory=ThrottleConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    retry_enabled: bool = True
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    retryable_status_codes: FrozenSet[int] = frozenset({429, 503, 504})
    retry_network_errors: bool = True
    continue_on_fail: bool = False
    max_items: int = 0
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = DEFAULT_MAX_PAGES
    debug_logging: bool = False

    @classmethod
    def from_env(cls) -> "ExecutionOptions":
        """Read ODATA_TIMEOUT / ODATA_RETRIES / ODATA_BACKOFF overrides."""
        opts = cls()
        opts.pool.timeout = float(os.environ.get("ODATA_TIMEOUT", str(DEFAULT_TIMEOUT)))
        opts.max_attempts = int(os.environ.get("ODATA_RETRIES", str(opts.max_attempts)))
        opts.initial_delay = float(os.environ.get("ODATA_BACKOFF", str(opts.initial_delay)))
        return opts


# ---------------------------------------------------------------------------
# Service path sources
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ListSource:
    """Service path picked from a discovered service list."""
    value: str


@dataclass(frozen=True)
class CustomSource:
    """Service path typed in by the user."""
    value: str


@dataclass(frozen=True)
class LegacySource:
    """Plain service path string from older configurations."""
    value: str


ServicePathSource = Union[ListSource, CustomSource, LegacySource]


def split_base_url(base_url: str) -> Tuple[str, str]:
    """
    Split a base URL into ``(scheme://host[:port], service path)``.

    Examples
    --------
    >>> split_base_url("https://s4.example.com:44300/sap/opu/odata/sap/")
    ('https://s4.example.com:44300', '/sap/opu/odata/sap')
    >>> split_base_url("https://s4.example.com")
    ('https://s4.example.com', '/sap/opu/odata/sap')
    """
    parts = urlsplit(base_url.strip())
    if not parts.scheme or not parts.netloc:
        raise ValidationError(f"Invalid base URL: {base_url!r}")
    path = parts.path if parts.path not in ("", "/") else DEFAULT_SERVICE_PATH
    return f"{parts.scheme}://{parts.netloc}", normalize_service_path(path)


def normalize_service_path(path: str) -> str:
    """Ensure a leading slash and drop the trailing one (except for root)."""
    path = (path or "").strip()
    if not path:
        return DEFAULT_SERVICE_PATH.rstrip("/")
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def resolve_service_path(source: Optional[ServicePathSource]) -> str:
    """
    Resolve a :data:`ServicePathSource` to a normalized path.

    Examples
    --------
    >>> resolve_service_path(CustomSource("/sap/opu/odata/sap/API_SALES_ORDER_SRV/"))
    '/sap/opu/odata/sap/API_SALES_ORDER_SRV'
    >>> resolve_service_path(None)
    '/sap/opu/odata/sap'
    """
    if source is None:
        return normalize_service_path(DEFAULT_SERVICE_PATH)
    if not isinstance(source, (ListSource, CustomSource, LegacySource)):
        raise ValidationError(f"Unsupported service path source: {source!r}")
    return normalize_service_path(source.value)
