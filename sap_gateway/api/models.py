"""
sap_gateway.api.models - Pydantic models for API requests/responses
====================================================================
"""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Example defaults (standard S/4HANA APIs)
# ---------------------------------------------------------------------------

EXAMPLE_SERVICE = "API_SALES_ORDER_SRV"
EXAMPLE_ENTITY_SET = "A_SalesOrder"
EXAMPLE_KEY = "4711"
EXAMPLE_SELECT = ["SalesOrder", "SalesOrderType", "SoldToParty", "TotalNetAmount"]

EntityKey = Union[str, int, Dict[str, Any]]


class QueryRequest(BaseModel):
    """Request model for generic OData queries."""

    service: str = Field(
        default=EXAMPLE_SERVICE,
        description="Technical service name or full service path",
        json_schema_extra={"example": EXAMPLE_SERVICE}
    )
    entity_set: str = Field(
        default=EXAMPLE_ENTITY_SET,
        description="Entity set name",
        json_schema_extra={"example": EXAMPLE_ENTITY_SET}
    )
    sap_client: Optional[str] = Field(
        default=None,
        description="Overrides default sap-client",
        json_schema_extra={"example": "100"}
    )
    select: Optional[List[str]] = Field(
        default=None,
        description="Fields for $select",
        json_schema_extra={"example": EXAMPLE_SELECT}
    )
    filter: Optional[str] = Field(
        default=None,
        description="Raw $filter expression",
        json_schema_extra={"example": "SalesOrderType eq 'OR'"}
    )
    filters: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Equality filters (primitive values only), joined with 'and'",
        json_schema_extra={"example": {"SalesOrganization": "1010"}}
    )
    orderby: Optional[str] = Field(
        default=None,
        description="Raw $orderby",
        json_schema_extra={"example": "SalesOrder desc"}
    )
    expand: Optional[str] = Field(
        default=None,
        description="Raw $expand",
        json_schema_extra={"example": "to_Item"}
    )
    top: Optional[int] = Field(
        default=None,
        description="$top (capped by the gateway)",
        json_schema_extra={"example": 100}
    )
    skip: Optional[int] = Field(
        default=None,
        description="$skip",
        json_schema_extra={"example": 0}
    )
    max_items: Optional[int] = Field(
        default=None,
        description="Stop paging after this many items (capped by the gateway)",
        json_schema_extra={"example": 500}
    )
    validate_fields: bool = Field(
        default=True,
        description="Drop $select fields unknown to $metadata"
    )
    extra_params: Optional[Dict[str, str]] = Field(
        default=None,
        description="Any additional OData params"
    )


class PageErrorModel(BaseModel):
    page: int
    error: str
    items_fetched_so_far: int


class QueryResponse(BaseModel):
    """Response model for OData queries."""

    service: str
    entity_set: str
    count: int
    items: List[Any]
    partial: bool = False
    limit_reached: bool = False
    message: str = ""
    errors: List[PageErrorModel] = Field(default_factory=list)


class EntityCreateRequest(BaseModel):
    service: str = Field(default=EXAMPLE_SERVICE, json_schema_extra={"example": EXAMPLE_SERVICE})
    entity_set: str = Field(default=EXAMPLE_ENTITY_SET, json_schema_extra={"example": EXAMPLE_ENTITY_SET})
    data: Dict[str, Any] = Field(
        description="Entity payload",
        json_schema_extra={"example": {"SalesOrderType": "OR", "SoldToParty": "17100001"}}
    )
    sap_client: Optional[str] = None


class EntityUpdateRequest(BaseModel):
    service: str = Field(default=EXAMPLE_SERVICE, json_schema_extra={"example": EXAMPLE_SERVICE})
    entity_set: str = Field(default=EXAMPLE_ENTITY_SET, json_schema_extra={"example": EXAMPLE_ENTITY_SET})
    key: EntityKey = Field(
        description="Single key value, or a mapping for composite keys",
        json_schema_extra={"example": EXAMPLE_KEY}
    )
    data: Dict[str, Any] = Field(
        description="Fields to change",
        json_schema_extra={"example": {"PurchaseOrderByCustomer": "PO-4711"}}
    )
    method: str = Field(
        default="PATCH",
        description="PATCH, PUT or MERGE",
        json_schema_extra={"example": "PATCH"}
    )
    sap_client: Optional[str] = None


class EntityResponse(BaseModel):
    service: str
    entity_set: str
    entity: Any = None


class BatchOperationModel(BaseModel):
    """One operation of a $batch request."""

    type: str = Field(
        description="CREATE, UPDATE, DELETE or GET",
        json_schema_extra={"example": "UPDATE"}
    )
    entity_set: str = Field(json_schema_extra={"example": EXAMPLE_ENTITY_SET})
    entity_key: Optional[EntityKey] = Field(default=None, json_schema_extra={"example": EXAMPLE_KEY})
    data: Optional[Dict[str, Any]] = None
    query_params: Optional[Dict[str, Any]] = None
    headers: Optional[Dict[str, str]] = None


class BatchRequest(BaseModel):
    service: str = Field(default=EXAMPLE_SERVICE, json_schema_extra={"example": EXAMPLE_SERVICE})
    operations: List[BatchOperationModel]
    use_change_set: bool = Field(default=False, description="Apply all operations atomically")
    batch_size: int = Field(default=100, ge=1, le=1000, description="Operations per $batch request")


class BatchResultModel(BaseModel):
    index: int
    success: bool
    status_code: int
    data: Any = None
    error: Optional[str] = None


class BatchResponseModel(BaseModel):
    service: str
    success: bool
    count: int
    results: List[BatchResultModel]


class ServiceInfoModel(BaseModel):
    """Information about a discovered service."""

    id: str
    title: str
    technical_name: str
    version: str
    service_url: Optional[str] = None
    path: str
    description: Optional[str] = None


class FieldInfo(BaseModel):
    name: str
    type: str
    display_type: str
    is_key: bool
    nullable: bool
    description: str
