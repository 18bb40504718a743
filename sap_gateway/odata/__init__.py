"""
sap_gateway.odata - OData protocol helpers
===========================================

This module provides the protocol-level building blocks:

- parse_metadata: $metadata parsing (entity types, sets, associations)
- build_odata_query / build_odata_filter: query option construction
- fetch_all_items / stream_all_items: V2/V4 pagination
- BatchRequestBuilder: multipart/mixed $batch encoding and decoding
- parse_sap_message_header: SAP business messages
- convert_entity / format_typed_literal: SAP value conversion and typed literals

The service-scoped client lives in :mod:`sap_gateway.odata.service`.

"""

from sap_gateway.odata.metadata import ParsedMetadata, parse_metadata
from sap_gateway.odata.query import (
    build_encoded_query_string,
    build_odata_filter,
    build_odata_query,
    escape_odata_string,
    format_key,
    normalize_odata_options,
    parse_navigation_path,
    validate_odata_filter,
)
from sap_gateway.odata.values import (
    build_typed_filter,
    convert_entity,
    convert_sap_date,
    convert_sap_time,
    convert_value,
    format_typed_key,
    format_typed_literal,
)
from sap_gateway.odata.envelope import classify, extract_items, extract_next_link
from sap_gateway.odata.pagination import (
    PaginationConfig,
    PaginationResult,
    fetch_all_items,
    stream_all_items,
)
from sap_gateway.odata.batch import (
    BatchOperation,
    BatchOperationType,
    BatchRequestBuilder,
    BatchResponse,
    BatchResult,
)
from sap_gateway.core.messages import SapMessage, parse_sap_error_body, parse_sap_message_header
from sap_gateway.odata.discovery import ServiceInfo

__all__ = [
    "ParsedMetadata",
    "parse_metadata",
    "build_encoded_query_string",
    "build_odata_filter",
    "build_odata_query",
    "escape_odata_string",
    "format_key",
    "normalize_odata_options",
    "validate_odata_filter",
    "parse_navigation_path",
    "build_typed_filter",
    "convert_entity",
    "convert_sap_date",
    "convert_sap_time",
    "convert_value",
    "format_typed_key",
    "format_typed_literal",
    "classify",
    "extract_items",
    "extract_next_link",
    "PaginationConfig",
    "PaginationResult",
    "fetch_all_items",
    "stream_all_items",
    "BatchOperation",
    "BatchOperationType",
    "BatchRequestBuilder",
    "BatchResponse",
    "BatchResult",
    "SapMessage",
    "parse_sap_error_body",
    "parse_sap_message_header",
    "ServiceInfo",
]
