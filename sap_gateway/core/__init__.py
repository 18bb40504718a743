"""
sap_gateway.core - Request pipeline and connectivity
=====================================================

This module provides the foundational classes for talking to SAP Gateway:

- SapCredentials / ExecutionOptions: connection and pipeline configuration
- SessionManager: per-service CSRF token, cookies and context id
- RetryHandler / ThrottleManager: backoff and rate limiting
- RequestBuilder / RequestsTransport: wire requests over a pooled session
- RequestExecutor: the orchestrator composing all of the above
- ConnectionContext: high-level connection manager

"""

from sap_gateway.core.errors import (
    AuthError,
    NotFoundError,
    ODataUpstreamError,
    ProtocolDecodeError,
    RateLimitedError,
    SapGatewayError,
    ServerTransientError,
    TransportError,
    ValidationError,
)
from sap_gateway.core.config import (
    CustomSource,
    ExecutionOptions,
    LegacySource,
    ListSource,
    PoolConfig,
    SapCredentials,
    ThrottleConfig,
    resolve_service_path,
)
from sap_gateway.core.store import InMemoryStore, KeyValueStore, ScopedStore
from sap_gateway.core.session import SessionManager
from sap_gateway.core.retry import RetryHandler, RetryPolicy
from sap_gateway.core.throttle import ThrottleManager
from sap_gateway.core.executor import RequestConfig, RequestExecutor
from sap_gateway.core.connection import ConnectionContext

__all__ = [
    "AuthError",
    "NotFoundError",
    "ODataUpstreamError",
    "ProtocolDecodeError",
    "RateLimitedError",
    "SapGatewayError",
    "ServerTransientError",
    "TransportError",
    "ValidationError",
    "CustomSource",
    "ExecutionOptions",
    "LegacySource",
    "ListSource",
    "PoolConfig",
    "SapCredentials",
    "ThrottleConfig",
    "resolve_service_path",
    "InMemoryStore",
    "KeyValueStore",
    "ScopedStore",
    "SessionManager",
    "RetryHandler",
    "RetryPolicy",
    "ThrottleManager",
    "RequestConfig",
    "RequestExecutor",
    "ConnectionContext",
]
