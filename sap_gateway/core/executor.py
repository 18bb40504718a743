"""
sap_gateway.core.executor - Request execution pipeline
=======================================================

:class:`RequestExecutor` runs one logical OData call end to end:

1. resolve the service path (explicit override wins)
2. take a throttle slot (a "drop" denial fails immediately)
3. get an OAuth bearer token when client credentials are configured
4. inside the retry loop: resolve the CSRF token for writes, build the
   request, send it, and fold cookies / context id / CSRF token from the
   response back into the session
5. a 404 drops the cached metadata for the service

Each executor owns its throttle and retry state. Sessions and caches live
in the injected store, scoped by ``scope``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Generator, List, Mapping, Optional, Sequence, Union
import logging
import random
import re
import time

from sap_gateway.core.cache import CacheManager
from sap_gateway.core.config import (
    ExecutionOptions,
    SapCredentials,
    ServicePathSource,
    normalize_service_path,
    resolve_service_path,
)
from sap_gateway.core.errors import (
    AuthError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
    classify_http_error,
)
from sap_gateway.core.messages import SapMessage, parse_sap_message_header
from sap_gateway.core.oauth import OAuthTokenManager
from sap_gateway.core.request import RequestBuilder
from sap_gateway.core.retry import RetryHandler, RetryPolicy
from sap_gateway.core.session import (
    SessionManager,
    apply_session_headers,
    header_value,
    update_session_from_response,
)
from sap_gateway.core.store import InMemoryStore, KeyValueStore, ScopedStore
from sap_gateway.core.throttle import ThrottleManager
from sap_gateway.core.transport import HttpResponse, RequestsTransport, Transport
from sap_gateway.odata.batch import (
    DEFAULT_BATCH_SIZE,
    BatchOperation,
    BatchRequestBuilder,
    BatchResponse,
    boundary_from_content_type,
)
from sap_gateway.odata.discovery import (
    CATALOG_RESOURCE,
    CATALOG_SERVICE_PATH,
    ServiceInfo,
    parse_service_catalog,
)
from sap_gateway.odata.metadata import ParsedMetadata, parse_metadata
from sap_gateway.odata.pagination import (
    PaginationConfig,
    PaginationResult,
    fetch_all_items,
    iter_pages,
    stream_all_items,
)
from sap_gateway.odata.query import (
    parse_metadata_for_entity_sets,
    parse_metadata_for_function_imports,
)

logger = logging.getLogger("sap_gateway.executor")

_BODY_BOUNDARY_RE = re.compile(r"^--([^\s-][^\s]*?)\s*$", re.M)


@dataclass
class RequestConfig:
    """
    One logical request.

    Parameters
    ----------
    method : str
        HTTP method
    resource : str
        Path relative to the service root, e.g. "A_SalesOrder('1')"
    body : dict or str, optional
        Payload for POST/PUT/PATCH/MERGE
    query : dict, optional
        Query options
    uri : str, optional
        Absolute or root-relative URL that replaces ``resource``
        (next-links)
    service_path : str, optional
        Overrides the executor's default service path
    headers : dict, optional
        Extra request headers
    raw : bool
        Return the :class:`HttpResponse` instead of the decoded body
    """
    method: str
    resource: str = ""
    body: Any = None
    query: Optional[Dict[str, Any]] = None
    uri: Optional[str] = None
    service_path: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    raw: bool = False


def _is_csrf_rejection(resp: HttpResponse) -> bool:
    return resp.status == 403 and (header_value(resp.headers, "x-csrf-token") or "").lower() == "required"


def _detect_boundary(text: str) -> Optional[str]:
    m = _BODY_BOUNDARY_RE.search(text or "")
    return m.group(1) if m else None


def _window_value(query: Mapping[str, Any], name: str) -> Optional[int]:
    """Caller ``$top``/``$skip`` as a non-negative int, or None when absent."""
    value = query.get(name)
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if number < 0:
        raise ValidationError(f"{name} must not be negative, got {number}")
    return number


class RequestExecutor:
    """
    Orchestrates session, CSRF, throttle, OAuth and retry for Gateway calls.

    Parameters
    ----------
    credentials : SapCredentials
        Host and authentication
    service_path : str or ServicePathSource, optional
        Default service root; falls back to ``/sap/opu/odata/sap``
    options : ExecutionOptions, optional
        Throttle, retry, pool and pagination settings
    store : KeyValueStore, optional
        Shared session/cache store; a private in-memory store by default
    scope : str
        Execution-scope identifier used to partition ``store``
    transport : callable, optional
        ``transport(HttpRequest) -> HttpResponse``; a pooled
        :class:`RequestsTransport` by default
    throttle : ThrottleManager, optional
        Overrides the throttle built from ``options.throttle``
    clock : callable, optional
        Epoch-seconds time source for sessions, caches and tokens
    sleep : callable
        Sleep used between retries and by the throttle
    rand : callable
        Jitter source in [0, 1)

    Examples
    --------
    >>> creds = SapCredentials(host="https://s4.example.com", username="U", password="P")
    >>> with RequestExecutor(creds, "/sap/opu/odata/sap/API_SALES_ORDER_SRV") as ex:
    ...     orders = ex.fetch_all("A_SalesOrder", query={"$filter": "SalesOrderType eq 'OR'"})
    ...     ex.execute(RequestConfig("PATCH", "A_SalesOrder('1')", body={"PurchaseOrderByCustomer": "X"}))
    """

    def __init__(
        self,
        credentials: SapCredentials,
        service_path: Optional[Union[str, ServicePathSource]] = None,
        options: Optional[ExecutionOptions] = None,
        *,
        store: Optional[KeyValueStore] = None,
        scope: str = "default",
        transport: Optional[Transport] = None,
        throttle: Optional[ThrottleManager] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.credentials = credentials
        self.options = options or ExecutionOptions()
        if isinstance(service_path, str):
            self.service_path = normalize_service_path(service_path)
        else:
            self.service_path = resolve_service_path(service_path)

        self.clock = clock or time.time
        self.store = ScopedStore(store if store is not None else InMemoryStore(), scope)
        self.cache = CacheManager(self.store, clock=self.clock)
        self.builder = RequestBuilder(credentials, self.options.pool)

        self._owns_transport = transport is None
        self.transport: Transport = transport or RequestsTransport(self.options.pool)

        self.oauth = (
            OAuthTokenManager(self.transport, clock=self.clock)
            if credentials.auth_type == "oauth2" else None
        )

        t = self.options.throttle
        if throttle is not None:
            self.throttle: Optional[ThrottleManager] = throttle
        elif t.enabled:
            self.throttle = ThrottleManager(
                t.max_requests_per_second, t.strategy, t.burst_size,
                sleep=sleep,
                on_throttle=lambda wait: logger.debug("Throttled for %.3fs", wait),
            )
        else:
            self.throttle = None

        self.retry: Optional[RetryHandler] = None
        if self.options.retry_enabled:
            self.retry = RetryHandler(
                RetryPolicy(
                    max_attempts=self.options.max_attempts,
                    initial_delay=self.options.initial_delay,
                    max_delay=self.options.max_delay,
                    backoff_factor=self.options.backoff_factor,
                    retryable_status_codes=frozenset(self.options.retryable_status_codes),
                    retry_network_errors=self.options.retry_network_errors,
                ),
                sleep=sleep,
                rand=rand,
            )

        self.batch_builder = BatchRequestBuilder()
        self._sessions: Dict[str, SessionManager] = {}
        self.last_messages: List[SapMessage] = []

        if self.options.debug_logging:
            logging.getLogger("sap_gateway").setLevel(logging.DEBUG)
        if credentials.allow_unauthorized_certs:
            logger.warning("SSL certificate verification is disabled for %s", credentials.host)

    # ---------------- lifecycle ----------------

    def close(self) -> None:
        """Close the transport if this executor created it."""
        close = getattr(self.transport, "close", None)
        if self._owns_transport and callable(close):
            close()

    def __enter__(self) -> "RequestExecutor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ---------------- plumbing ----------------

    def _resolve_path(self, service_path: Optional[str]) -> str:
        return normalize_service_path(service_path) if service_path else self.service_path

    def sessions_for(self, service_path: Optional[str] = None) -> SessionManager:
        """The :class:`SessionManager` for ``service_path`` (default path if omitted)."""
        path = self._resolve_path(service_path)
        manager = self._sessions.get(path)
        if manager is None:
            manager = SessionManager(
                self.store, self.credentials.host, path, self.credentials.identity,
                clock=self.clock,
            )
            self._sessions[path] = manager
        return manager

    def _acquire_slot(self) -> None:
        if self.throttle is None:
            return
        if not self.throttle.acquire():
            logger.warning("Request dropped by throttle (strategy=%s)", self.throttle.strategy)
            raise RateLimitedError(429, "Request dropped due to rate limiting", self.credentials.host)

    def _bearer_token(self) -> Optional[str]:
        if self.oauth is None:
            return None
        return self.oauth.get_access_token(self.credentials)

    def _fetch_csrf(self, service_path: str, sessions: SessionManager, bearer: Optional[str]) -> str:
        req = self.builder.build_csrf_fetch(service_path, bearer_token=bearer)
        apply_session_headers(req.headers, sessions)
        resp = self.transport(req)
        token = update_session_from_response(sessions, resp.headers, resp.set_cookies)
        if token:
            logger.debug("Fetched CSRF token for %s", service_path)
            return token
        if resp.status >= 300:
            raise classify_http_error(resp.status, resp.text, resp.url, resp.headers)
        raise AuthError(resp.status, "Failed to obtain CSRF token", resp.url, resp.headers)

    def _dispatch(
        self,
        config: RequestConfig,
        service_path: str,
        sessions: SessionManager,
        bearer: Optional[str],
        csrf_token: Optional[str],
    ) -> HttpResponse:
        req = self.builder.build(
            config.method,
            config.resource,
            service_path,
            body=config.body,
            query=config.query,
            uri=config.uri,
            csrf_token=csrf_token,
            headers=config.headers,
            bearer_token=bearer,
        )
        apply_session_headers(req.headers, sessions)
        resp = self.transport(req)
        update_session_from_response(sessions, resp.headers, resp.set_cookies)
        logger.debug("%s %s -> %s (%.0f ms)", req.method, req.url, resp.status, resp.elapsed_ms)
        return resp

    def _attempt(
        self,
        config: RequestConfig,
        service_path: str,
        sessions: SessionManager,
        bearer: Optional[str],
    ) -> HttpResponse:
        is_write = config.method.upper() != "GET"
        csrf_token = None
        if is_write:
            csrf_token = sessions.get_csrf_token() or self._fetch_csrf(service_path, sessions, bearer)

        resp = self._dispatch(config, service_path, sessions, bearer, csrf_token)
        if is_write and _is_csrf_rejection(resp):
            logger.debug("CSRF token rejected for %s; fetching a new one", service_path)
            sessions.invalidate_csrf_token()
            csrf_token = self._fetch_csrf(service_path, sessions, bearer)
            resp = self._dispatch(config, service_path, sessions, bearer, csrf_token)

        if resp.status >= 300:
            raise classify_http_error(resp.status, resp.text, resp.url, resp.headers)
        return resp

    def _record_messages(self, resp: HttpResponse) -> None:
        self.last_messages = parse_sap_message_header(header_value(resp.headers, "sap-message"))
        for msg in self.last_messages:
            level = logging.WARNING if msg.severity in ("warning", "error", "abort") else logging.DEBUG
            logger.log(level, "SAP message %s (%s): %s", msg.code, msg.severity, msg.message)

    # ---------------- public API ----------------

    def execute(self, config: RequestConfig) -> Any:
        """
        Run one request through the pipeline.

        Returns
        -------
        Any
            Decoded JSON body (``{}`` for an empty body), the raw text for
            ``$metadata``, or the :class:`HttpResponse` when ``config.raw``

        Raises
        ------
        ODataUpstreamError
            Classified HTTP failure (after retries where applicable)
        TransportError
            Connection failure (after retries where applicable)
        ValidationError
            Rejected input; nothing was sent

        Notes
        -----
        Messages from the ``sap-message`` header of a successful response
        are logged and kept in ``last_messages`` until the next call.
        """
        self.last_messages = []
        service_path = self._resolve_path(config.service_path)
        self._acquire_slot()
        bearer = self._bearer_token()
        sessions = self.sessions_for(service_path)

        try:
            if self.retry is not None:
                resp = self.retry.call(self._attempt, config, service_path, sessions, bearer)
            else:
                resp = self._attempt(config, service_path, sessions, bearer)
        except NotFoundError:
            self.cache.invalidate_on_404(self.credentials.host, service_path, self.credentials.identity)
            raise
        except AuthError as e:
            if e.status == 401 and self.oauth is not None:
                self.oauth.clear_token(self.credentials)
            raise

        self._record_messages(resp)
        if config.raw:
            return resp
        if "$metadata" in (config.uri or config.resource):
            return resp.text
        return resp.json_or_text()

    def request(self, method: str, resource: str = "", **kwargs: Any) -> Any:
        """Shorthand for ``execute(RequestConfig(method, resource, **kwargs))``."""
        return self.execute(RequestConfig(method, resource, **kwargs))

    # ---------------- metadata ----------------

    def _metadata_entry(self, service_path: Optional[str], refresh: bool) -> Dict[str, Any]:
        path = self._resolve_path(service_path)
        host, ident = self.credentials.host, self.credentials.identity
        entry = None if refresh else self.cache.get_metadata(host, path, ident)
        if entry is None or entry.get("schema") is None:
            xml = self.execute(RequestConfig("GET", "$metadata", service_path=path))
            schema = parse_metadata(xml)
            entity_sets = parse_metadata_for_entity_sets(xml)
            function_imports = parse_metadata_for_function_imports(xml)
            self.cache.set_metadata(host, path, entity_sets, function_imports, ident, schema=schema)
            entry = {"entity_sets": entity_sets, "function_imports": function_imports, "schema": schema}
        return entry

    def get_metadata(self, service_path: Optional[str] = None, *, refresh: bool = False) -> ParsedMetadata:
        """Parsed ``$metadata`` for the service, cached for five minutes."""
        return self._metadata_entry(service_path, refresh)["schema"]

    def list_entity_sets(self, service_path: Optional[str] = None) -> List[str]:
        return list(self._metadata_entry(service_path, False)["entity_sets"])

    def list_function_imports(self, service_path: Optional[str] = None) -> List[str]:
        return list(self._metadata_entry(service_path, False)["function_imports"])

    # ---------------- discovery ----------------

    def discover_services(self, *, refresh: bool = False) -> List[ServiceInfo]:
        """
        Services registered in the Gateway catalog, ordered by title.

        The catalog is cached for five minutes per host and identity.
        """
        host, ident = self.credentials.host, self.credentials.identity
        if not refresh:
            cached = self.cache.get_services(host, ident)
            if cached is not None:
                return list(cached)
        body = self.execute(RequestConfig(
            "GET", CATALOG_RESOURCE,
            query={"$orderby": "Title asc"},
            service_path=CATALOG_SERVICE_PATH,
        ))
        services = parse_service_catalog(body)
        self.cache.set_services(host, services, ident)
        logger.debug("Discovered %s services on %s", len(services), host)
        return services

    # ---------------- collections ----------------

    def _page_fn(self, resource: str, query: Optional[Mapping[str, Any]], service_path: Optional[str]):
        # paging owns $top/$skip; the caller's values go through PaginationConfig
        base = {k: v for k, v in (query or {}).items() if k not in ("$top", "$skip")}

        def request_fn(page_query: Optional[Dict[str, Any]], uri: Optional[str]) -> Any:
            if uri:
                return self.execute(RequestConfig("GET", resource, uri=uri, service_path=service_path))
            merged = dict(base)
            merged.update(page_query or {})
            return self.execute(RequestConfig("GET", resource, query=merged, service_path=service_path))

        return request_fn

    def _pagination_config(
        self,
        property_name: Optional[str],
        max_items: Optional[int],
        query: Optional[Mapping[str, Any]] = None,
    ) -> PaginationConfig:
        query = query or {}
        skip = _window_value(query, "$skip")
        return PaginationConfig(
            property_name=property_name,
            continue_on_fail=self.options.continue_on_fail,
            max_items=self.options.max_items if max_items is None else max_items,
            page_size=self.options.page_size,
            skip=skip or 0,
            top=_window_value(query, "$top"),
            max_pages=self.options.max_pages,
        )

    def fetch_all(
        self,
        resource: str,
        *,
        query: Optional[Mapping[str, Any]] = None,
        service_path: Optional[str] = None,
        max_items: Optional[int] = None,
        property_name: Optional[str] = None,
    ) -> Union[List[Any], PaginationResult]:
        """
        Fetch every page of ``resource``.

        Returns a plain list, or a :class:`PaginationResult` when the item
        cap was hit or (with ``continue_on_fail``) a page failed.
        """
        return fetch_all_items(
            self._page_fn(resource, query, service_path),
            self._pagination_config(property_name, max_items, query),
        )

    def pages(
        self,
        resource: str,
        *,
        query: Optional[Mapping[str, Any]] = None,
        service_path: Optional[str] = None,
        property_name: Optional[str] = None,
    ) -> Generator[List[Any], None, None]:
        """Lazily yield ``resource`` one page (list of items) at a time."""
        return iter_pages(
            self._page_fn(resource, query, service_path),
            self._pagination_config(property_name, 0, query),
        )

    def stream(
        self,
        resource: str,
        *,
        query: Optional[Mapping[str, Any]] = None,
        service_path: Optional[str] = None,
        max_items: Optional[int] = None,
        property_name: Optional[str] = None,
    ) -> Generator[Any, None, None]:
        """Lazily yield the items of ``resource``; pages are fetched on demand."""
        return stream_all_items(
            self._page_fn(resource, query, service_path),
            self._pagination_config(property_name, max_items, query),
        )

    # ---------------- batch ----------------

    def execute_batch(
        self,
        operations: Sequence[BatchOperation],
        *,
        use_change_set: bool = False,
        batch_size: int = DEFAULT_BATCH_SIZE,
        service_path: Optional[str] = None,
    ) -> BatchResponse:
        """
        Send ``operations`` through ``$batch``.

        Independent operations are split into sub-batches of ``batch_size``
        and sent one after another. A changeset is always sent as a single
        request. Result indexes refer to positions in ``operations``.

        Raises
        ------
        ValidationError
            If any operation is malformed (nothing is sent)
        ProtocolDecodeError
            If a multipart response cannot be decoded
        """
        errors = self.batch_builder.validate_operations(operations, use_change_set)
        if errors:
            raise ValidationError("Invalid batch operations: " + "; ".join(errors))
        if not operations:
            raise ValidationError("Invalid batch operations: no operations given")

        chunks = [list(operations)] if use_change_set else self.batch_builder.split_into_batches(operations, batch_size)
        results = []
        offset = 0
        for chunk in chunks:
            encoded = self.batch_builder.build_batch_request(chunk, "", use_change_set)
            resp = self.execute(RequestConfig(
                "POST", "$batch",
                body=encoded.body,
                service_path=service_path,
                headers={"Content-Type": encoded.content_type, "Accept": "multipart/mixed"},
                raw=True,
            ))
            boundary = (
                boundary_from_content_type(header_value(resp.headers, "content-type") or "")
                or _detect_boundary(resp.text)
                or encoded.boundary
            )
            parsed = self.batch_builder.parse_batch_response(
                resp.text, boundary, chunk, use_change_set, index_offset=offset,
            )
            results.extend(parsed.results)
            offset += len(chunk)

        return BatchResponse(success=all(r.success for r in results), results=results)
