"""
SAP Gateway OData client (sap_gateway)
======================================

A resilient client engine for SAP Gateway OData services: CSRF and
session handling, retry with backoff, throttling, V2/V4 pagination,
$batch and $metadata.

Usage
-----
>>> from sap_gateway import ConnectionContext
>>>
>>> with ConnectionContext() as conn:
...     service = conn.get_service("API_SALES_ORDER_SRV")
...     orders = service.query("A_SalesOrder", top=10)
...     service.create_entity("A_SalesOrder", {"SalesOrderType": "OR"})

Subpackages
-----------
- sap_gateway.core: Configuration, session, retry, throttle and the request executor
- sap_gateway.odata: Metadata, query, pagination, batch and the service client
- sap_gateway.api: Optional FastAPI REST gateway

"""

__version__ = "0.3.0"

# Core exports - available at package root
from sap_gateway.core import (
    ConnectionContext,
    ExecutionOptions,
    ODataUpstreamError,
    RequestConfig,
    RequestExecutor,
    SapCredentials,
    SapGatewayError,
)

# Convenience re-exports
from sap_gateway.odata.service import ODataService

__all__ = [
    # Version
    "__version__",
    # Core
    "ConnectionContext",
    "ExecutionOptions",
    "ODataUpstreamError",
    "RequestConfig",
    "RequestExecutor",
    "SapCredentials",
    "SapGatewayError",
    # OData
    "ODataService",
]
