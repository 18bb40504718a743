"""
sap_gateway.api.gateway - FastAPI OData Gateway
===============================================

Optional REST API gateway exposing SAP Gateway OData services through the
request pipeline (sessions, CSRF, retry, throttling, paging, $batch).
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from sap_gateway import __version__
from sap_gateway.core.config import ExecutionOptions, SapCredentials
from sap_gateway.core.connection import ConnectionContext
from sap_gateway.core.errors import (
    ODataUpstreamError,
    SapGatewayError,
    TransportError,
    ValidationError,
    sanitize_error_message,
)
from sap_gateway.core.store import InMemoryStore
from sap_gateway.core.transport import Transport
from sap_gateway.odata.batch import BatchOperation, BatchOperationType
from sap_gateway.odata.discovery import search_services
from sap_gateway.odata.query import format_key
from sap_gateway.odata.service import ODataService
from sap_gateway.api.models import (
    EXAMPLE_ENTITY_SET,
    EXAMPLE_KEY,
    EXAMPLE_SERVICE,
    BatchRequest,
    BatchResponseModel,
    BatchResultModel,
    EntityCreateRequest,
    EntityResponse,
    EntityUpdateRequest,
    FieldInfo,
    PageErrorModel,
    QueryRequest,
    QueryResponse,
    ServiceInfoModel,
)

logger = logging.getLogger("sap_gateway.api")


class ODataGateway:
    """
    Configuration and connection factory for the API gateway.

    Reads configuration from environment variables by default. One
    :class:`ConnectionContext` is shared by all requests so sessions,
    CSRF tokens and metadata are reused.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        sap_client: Optional[str] = None,
        verify_tls: Optional[bool] = None,
        api_key: Optional[str] = None,
        max_top: int = 500,
        max_items: int = 5000,
        *,
        credentials: Optional[SapCredentials] = None,
        options: Optional[ExecutionOptions] = None,
        transport: Optional[Transport] = None,
    ):
        self.base_url = base_url or os.environ.get("S4_BASE_URL", "")
        self.user = user
        self.password = password
        self.sap_client = sap_client
        self.verify_tls = verify_tls
        self.credentials = credentials
        self.options = options
        self.transport = transport

        self.api_key = api_key or os.environ.get("ODATA_API_KEY", "")
        self.max_top = max_top
        self.max_items = max_items

        self.store = InMemoryStore()
        self._conn: Optional[ConnectionContext] = None

    def validate(self) -> None:
        """Validate configuration. Raises RuntimeError if invalid."""
        if not self.base_url and self.credentials is None:
            raise RuntimeError("Missing S4_BASE_URL environment variable")
        if not self.api_key:
            raise RuntimeError("Missing ODATA_API_KEY - required for security")
        try:
            self.connection
        except ValidationError as e:
            raise RuntimeError(str(e)) from e

    @property
    def connection(self) -> ConnectionContext:
        """Get or create the shared connection."""
        if self._conn is None:
            self._conn = ConnectionContext(
                self.base_url or None,
                self.user,
                self.password,
                self.sap_client,
                self.verify_tls,
                credentials=self.credentials,
                options=self.options,
                store=self.store,
                scope="api",
                transport=self.transport,
            )
        return self._conn

    def get_service(self, service: str, sap_client: Optional[str] = None) -> ODataService:
        svc = self.connection.get_service(service)
        if sap_client:
            svc.default_sap_client = sap_client
        return svc

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


def http_error(e: SapGatewayError) -> HTTPException:
    """Map an engine error to the HTTP error returned to API clients."""
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail={"error": sanitize_error_message(str(e))})
    if isinstance(e, ODataUpstreamError):
        return HTTPException(
            status_code=502,
            detail={
                "upstream_status": e.status,
                "url": sanitize_error_message(e.url),
                "error": sanitize_error_message(str(e)),
                "sap_code": e.code,
                "sap_messages": [m.to_dict() for m in e.sap_messages],
            },
        )
    if isinstance(e, TransportError):
        return HTTPException(status_code=502, detail={"error": sanitize_error_message(str(e))})
    return HTTPException(status_code=500, detail={"error": sanitize_error_message(str(e))})


# Global gateway instance (lazy init)
_gateway: Optional[ODataGateway] = None


def get_gateway() -> ODataGateway:
    """Get or create the global gateway instance."""
    global _gateway
    if _gateway is None:
        _gateway = ODataGateway()
    return _gateway


def _batch_operation(op: Any) -> BatchOperation:
    try:
        op_type = BatchOperationType[op.type.upper()]
    except KeyError:
        raise ValidationError(f"Unknown batch operation type {op.type!r}") from None
    return BatchOperation(
        type=op_type,
        entity_set=op.entity_set,
        entity_key=format_key(op.entity_key) if op.entity_key is not None else None,
        data=op.data,
        query_params=op.query_params,
        headers=op.headers,
    )


def create_app(
    gateway: Optional[ODataGateway] = None,
    validate_on_startup: bool = True,
) -> FastAPI:
    """
    Create the FastAPI application.

    Parameters
    ----------
    gateway : ODataGateway, optional
        Custom gateway configuration. If None, reads from environment.
    validate_on_startup : bool
        If True, validate configuration on startup.

    Returns
    -------
    FastAPI
        Configured FastAPI application
    """
    global _gateway

    if gateway:
        _gateway = gateway
    else:
        _gateway = ODataGateway()

    if validate_on_startup:
        try:
            _gateway.validate()
        except RuntimeError as e:
            # Allow app creation without a complete configuration
            logger.warning("Gateway configuration incomplete: %s", e)

    app = FastAPI(
        title="SAP Gateway OData API",
        description="""
## SAP Gateway OData API

A REST facade over SAP Gateway OData services with CSRF/session handling,
retry, throttling, paging and `$batch`.

### Authentication
Include your API key in the `x-api-key` header.
        """,
        version=__version__,
        openapi_tags=[
            {
                "name": "Discovery",
                "description": "Discover available services, entity sets, and fields",
            },
            {
                "name": "Generic OData",
                "description": "Generic OData query and write operations",
            },
        ],
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -------------------------------------------------------------------------
    # Dependencies
    # -------------------------------------------------------------------------

    def require_api_key(x_api_key: str = Header(...)) -> None:
        gw = get_gateway()
        if gw.api_key and x_api_key != gw.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    @app.get("/health")
    def health() -> Dict[str, Any]:
        """Health check endpoint."""
        return {"ok": True, "version": __version__}

    @app.get("/discover/services", tags=["Discovery"], response_model=List[ServiceInfoModel])
    def discover_services(
        search: Optional[str] = Query(default=None, description="Filter by title or technical name"),
        refresh: bool = Query(default=False, description="Bypass the catalog cache"),
        _: None = Depends(require_api_key),
    ) -> List[ServiceInfoModel]:
        """Discover available OData services via the Gateway catalog."""
        gw = get_gateway()
        try:
            services = gw.connection.executor.discover_services(refresh=refresh)
        except SapGatewayError as e:
            raise http_error(e)
        if search:
            services = search_services(services, search)
        return [ServiceInfoModel(**s.to_dict()) for s in services]

    @app.get("/metadata/entity-sets", tags=["Discovery"])
    def list_entity_sets(
        service: str = Query(default=EXAMPLE_SERVICE, examples=[EXAMPLE_SERVICE]),
        _: None = Depends(require_api_key),
    ) -> Dict[str, Any]:
        """List entity sets and function imports (cached for five minutes)."""
        gw = get_gateway()
        try:
            s = gw.get_service(service)
            return {
                "service": service,
                "entity_sets": s.list_entity_sets(),
                "function_imports": s.list_function_imports(),
            }
        except SapGatewayError as e:
            raise http_error(e)

    @app.get("/metadata/fields", tags=["Discovery"])
    def list_fields(
        service: str = Query(default=EXAMPLE_SERVICE, examples=[EXAMPLE_SERVICE]),
        entity_set: str = Query(default=EXAMPLE_ENTITY_SET, examples=[EXAMPLE_ENTITY_SET]),
        _: None = Depends(require_api_key),
    ) -> Dict[str, Any]:
        """List fields of an entity set with types and descriptions."""
        gw = get_gateway()
        try:
            s = gw.get_service(service)
            fields = [FieldInfo(**f) for f in s.describe_fields(entity_set)]
        except SapGatewayError as e:
            raise http_error(e)
        if not fields:
            raise HTTPException(status_code=404, detail=f"Entity set {entity_set!r} not found in $metadata")
        return {"service": service, "entity_set": entity_set, "fields": fields}

    @app.post(
        "/query",
        response_model=QueryResponse,
        tags=["Generic OData"],
        summary="Execute OData Query",
        description="Execute a paginated OData query; partial results are flagged.",
    )
    def query_any(
        req: QueryRequest,
        _: None = Depends(require_api_key),
    ) -> QueryResponse:
        """Execute a generic OData query."""
        gw = get_gateway()

        top = min(int(req.top), gw.max_top) if req.top is not None else None
        max_items = min(int(req.max_items or gw.max_items), gw.max_items)

        try:
            s = gw.get_service(req.service, req.sap_client)
            result = s.query_result(
                req.entity_set,
                fields=req.select,
                filter_expr=req.filter,
                filters=req.filters,
                orderby=req.orderby,
                top=top,
                skip=req.skip,
                expand=req.expand,
                max_items=max_items,
                validate_fields=req.validate_fields,
                extra_params=req.extra_params,
            )
        except SapGatewayError as e:
            raise http_error(e)

        return QueryResponse(
            service=req.service,
            entity_set=req.entity_set,
            count=len(result.data),
            items=result.data,
            partial=result.partial,
            limit_reached=result.limit_reached,
            message=result.message,
            errors=[
                PageErrorModel(page=pe.page, error=pe.error, items_fetched_so_far=pe.items_fetched_so_far)
                for pe in result.errors
            ],
        )

    @app.post("/entity", response_model=EntityResponse, tags=["Generic OData"], status_code=201)
    def create_entity(
        req: EntityCreateRequest,
        _: None = Depends(require_api_key),
    ) -> EntityResponse:
        """Create an entity (CSRF token handled automatically)."""
        gw = get_gateway()
        try:
            s = gw.get_service(req.service, req.sap_client)
            entity = s.create_entity(req.entity_set, req.data)
        except SapGatewayError as e:
            raise http_error(e)
        return EntityResponse(service=req.service, entity_set=req.entity_set, entity=entity)

    @app.patch("/entity", response_model=EntityResponse, tags=["Generic OData"])
    def update_entity(
        req: EntityUpdateRequest,
        _: None = Depends(require_api_key),
    ) -> EntityResponse:
        """Update an entity with PATCH, PUT or MERGE."""
        gw = get_gateway()
        try:
            s = gw.get_service(req.service, req.sap_client)
            entity = s.update_entity(req.entity_set, req.key, req.data, method=req.method)
        except SapGatewayError as e:
            raise http_error(e)
        return EntityResponse(service=req.service, entity_set=req.entity_set, entity=entity)

    @app.delete("/entity", tags=["Generic OData"])
    def delete_entity(
        service: str = Query(default=EXAMPLE_SERVICE, examples=[EXAMPLE_SERVICE]),
        entity_set: str = Query(default=EXAMPLE_ENTITY_SET, examples=[EXAMPLE_ENTITY_SET]),
        key: str = Query(..., description="Key value or predicate, e.g. 4711 or SalesOrder='1',Item='10'",
                         examples=[EXAMPLE_KEY]),
        sap_client: Optional[str] = Query(default=None),
        _: None = Depends(require_api_key),
    ) -> Dict[str, Any]:
        """Delete an entity."""
        gw = get_gateway()
        try:
            s = gw.get_service(service, sap_client)
            s.delete_entity(entity_set, key)
        except SapGatewayError as e:
            raise http_error(e)
        return {"service": service, "entity_set": entity_set, "deleted": True}

    @app.post("/batch", response_model=BatchResponseModel, tags=["Generic OData"])
    def run_batch(
        req: BatchRequest,
        _: None = Depends(require_api_key),
    ) -> BatchResponseModel:
        """Send operations through $batch; results keep their request index."""
        gw = get_gateway()
        try:
            operations = [_batch_operation(op) for op in req.operations]
            s = gw.get_service(req.service)
            response = s.batch(operations, use_change_set=req.use_change_set, batch_size=req.batch_size)
        except SapGatewayError as e:
            raise http_error(e)
        return BatchResponseModel(
            service=req.service,
            success=response.success,
            count=len(response.results),
            results=[
                BatchResultModel(
                    index=r.index, success=r.success, status_code=r.status_code,
                    data=r.data, error=r.error,
                )
                for r in response.results
            ],
        )

    return app
