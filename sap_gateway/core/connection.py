"""
sap_gateway.core.connection - High-level connection management
===============================================================

Provides a ConnectionContext that builds credentials and a shared
:class:`~sap_gateway.core.executor.RequestExecutor`, and hands out
service clients.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any, Optional

from sap_gateway.core.config import (
    ExecutionOptions,
    SapCredentials,
    _env_bool,
    split_base_url,
)
from sap_gateway.core.errors import ValidationError
from sap_gateway.core.executor import RequestExecutor
from sap_gateway.core.store import KeyValueStore
from sap_gateway.core.transport import Transport

if TYPE_CHECKING:
    from sap_gateway.odata.service import ODataService


class ConnectionContext:
    """
    High-level connection manager for SAP Gateway OData services.

    Supports environment variable configuration and context manager usage.

    Parameters
    ----------
    base_url : str, optional
        Host plus optional service root, e.g.
        "https://s4.example.com/sap/opu/odata/sap/". Falls back to S4_BASE_URL.
    user : str, optional
        Username for basic auth. Falls back to S4_USER.
    password : str, optional
        Password for basic auth. Falls back to S4_PASS.
    sap_client : str, optional
        Default SAP client. Falls back to S4_SAP_CLIENT.
    verify : bool, optional
        TLS verification. Falls back to S4_VERIFY_TLS.
    credentials : SapCredentials, optional
        Use these instead of resolving the arguments above
    options : ExecutionOptions, optional
        Pipeline options; ODATA_* environment overrides by default
    store : KeyValueStore, optional
        Shared session/cache store
    scope : str
        Execution-scope identifier inside ``store``
    transport : callable, optional
        Custom transport (tests)

    Examples
    --------
    >>> # Using explicit credentials
    >>> conn = ConnectionContext(
    ...     base_url="https://s4.example.com/sap/opu/odata/sap/",
    ...     user="USER",
    ...     password="PASS",
    ...     sap_client="100",
    ... )

    >>> # Using environment variables
    >>> conn = ConnectionContext()  # reads from S4_* env vars

    >>> # As context manager
    >>> with ConnectionContext() as conn:
    ...     service = conn.get_service("API_SALES_ORDER_SRV")
    ...     orders = service.query("A_SalesOrder", top=10)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        sap_client: Optional[str] = None,
        verify: Optional[bool] = None,
        *,
        credentials: Optional[SapCredentials] = None,
        options: Optional[ExecutionOptions] = None,
        store: Optional[KeyValueStore] = None,
        scope: str = "default",
        transport: Optional[Transport] = None,
    ) -> None:
        raw_base = base_url or os.environ.get("S4_BASE_URL", "")
        if credentials is None:
            if not raw_base:
                raise ValidationError(
                    "Missing base_url. Set S4_BASE_URL environment variable "
                    "or pass base_url parameter."
                )
            credentials = self._resolve_credentials(raw_base, user, password, sap_client, verify)
            self._base_path = split_base_url(raw_base)[1]
        else:
            self._base_path = split_base_url(raw_base)[1] if raw_base else split_base_url(credentials.host)[1]

        self.credentials = credentials
        self._options = options or ExecutionOptions.from_env()
        self._store = store
        self._scope = scope
        self._transport = transport
        self._executor: Optional[RequestExecutor] = None

    @staticmethod
    def _resolve_credentials(
        base_url: str,
        user: Optional[str],
        password: Optional[str],
        sap_client: Optional[str],
        verify: Optional[bool],
    ) -> SapCredentials:
        host, _ = split_base_url(base_url)
        env_creds = None
        if os.environ.get("S4_BASE_URL"):
            env_creds = SapCredentials.from_env()

        user = user or os.environ.get("S4_USER", "")
        password = password or os.environ.get("S4_PASS", "")
        if env_creds is not None and env_creds.auth_type == "oauth2" and not user:
            env_creds.host = host
            if sap_client:
                env_creds.sap_client = sap_client
            if verify is not None:
                env_creds.allow_unauthorized_certs = not verify
            return env_creds

        if not (user and password):
            raise ValidationError(
                "Missing credentials. Set S4_USER/S4_PASS or the S4_OAUTH_* "
                "environment variables, or pass user/password parameters."
            )
        if verify is None:
            verify = _env_bool("S4_VERIFY_TLS", True)
        return SapCredentials(
            host=host,
            auth_type="basic",
            username=user,
            password=password,
            sap_client=sap_client or os.environ.get("S4_SAP_CLIENT"),
            sap_language=os.environ.get("S4_SAP_LANGUAGE"),
            custom_headers=os.environ.get("S4_CUSTOM_HEADERS"),
            allow_unauthorized_certs=not verify,
            allow_private_ips=_env_bool("S4_ALLOW_PRIVATE_IPS", False),
        )

    @property
    def executor(self) -> RequestExecutor:
        """Get or create the shared request executor."""
        if self._executor is None:
            self._executor = RequestExecutor(
                self.credentials,
                self._base_path,
                self._options,
                store=self._store,
                scope=self._scope,
                transport=self._transport,
            )
        return self._executor

    def close(self) -> None:
        """Close the connection."""
        if self._executor is not None:
            self._executor.close()
            self._executor = None

    def __enter__(self) -> "ConnectionContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def service_path(self, service_name: str) -> str:
        """Full service root for a technical name (paths are returned as-is)."""
        if service_name.startswith("/"):
            return service_name
        return f"{self._base_path.rstrip('/')}/{service_name.strip('/')}"

    def get_service(self, service_name: str, **options: Any) -> "ODataService":
        """
        Get an ODataService instance for the given service name.

        Parameters
        ----------
        service_name : str
            Technical name of the OData service, e.g. "API_SALES_ORDER_SRV",
            or a full service path

        Returns
        -------
        ODataService
            Service client for querying entity sets

        Other Parameters
        ----------------
        **options
            Passed to :class:`~sap_gateway.odata.service.ODataService`,
            e.g. ``convert_values=True`` or ``typed_keys=True``
        """
        # Import here to avoid circular imports
        from sap_gateway.odata.service import ODataService
        return ODataService(
            self.executor,
            self.service_path(service_name),
            default_sap_client=self.credentials.sap_client,
            **options,
        )

    @property
    def host(self) -> str:
        return self.credentials.host

    @property
    def base_path(self) -> str:
        """The configured service root, e.g. "/sap/opu/odata/sap"."""
        return self._base_path

    @property
    def sap_client(self) -> Optional[str]:
        """The configured SAP client."""
        return self.credentials.sap_client
