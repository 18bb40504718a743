"""
sap_gateway.odata.service - OData Service Client
=================================================

Service-scoped client for one SAP Gateway OData service, built on
:class:`~sap_gateway.core.executor.RequestExecutor`.
"""

from __future__ import annotations

from typing import Any, Dict, Generator, List, Mapping, Optional, Sequence, Union
import logging

from sap_gateway.core.executor import RequestConfig, RequestExecutor
from sap_gateway.core.request import validate_entity_set_name
from sap_gateway.core.errors import ValidationError
from sap_gateway.odata.batch import DEFAULT_BATCH_SIZE, BatchOperation, BatchResponse
from sap_gateway.odata.envelope import V2Envelope, V4Envelope, classify, extract_items
from sap_gateway.odata.metadata import EntityProperty, display_type, field_description
from sap_gateway.odata.pagination import PaginationResult
from sap_gateway.odata.query import (
    _join_csv,
    build_odata_filter,
    build_odata_query,
    format_key,
    format_literal,
    parse_navigation_path,
)
from sap_gateway.odata.values import build_typed_filter, convert_entity, format_typed_key

logger = logging.getLogger("sap_gateway.service")

Key = Union[str, int, Mapping[str, Any]]

_UPDATE_METHODS = ("PATCH", "MERGE", "PUT")


def service_root(service: str) -> str:
    """
    Service root path for a technical name or an explicit path.

    Examples
    --------
    >>> service_root("API_SALES_ORDER_SRV")
    '/sap/opu/odata/sap/API_SALES_ORDER_SRV'
    >>> service_root("/sap/opu/odata/sap/ZMY_SRV;v=0002/")
    '/sap/opu/odata/sap/ZMY_SRV;v=0002'
    """
    if service.startswith("/"):
        return service.rstrip("/") or "/"
    return f"/sap/opu/odata/sap/{service.strip('/')}"


def _entity(body: Any) -> Any:
    """Unwrap a single-entity response (V2 ``d``, V4 body as-is)."""
    env = classify(body)
    if isinstance(env, V2Envelope):
        return env.d
    return body


def _clean_related(entity: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy of a nested deep-insert entity without ``__metadata`` style keys."""
    return {k: v for k, v in entity.items() if not k.startswith("__")}


class ODataService:
    """
    Service-scoped OData client.

    Provides paged reads, entity CRUD, function imports, ``$batch`` and
    metadata lookups for one service.

    Parameters
    ----------
    executor : RequestExecutor
        Shared request pipeline
    service : str
        Technical service name, or a full service path
    default_sap_client : str, optional
        Default SAP client override (sent as ``sap-client`` header)
    convert_values : bool
        Convert SAP dates, times and numeric strings in read results using
        the $metadata property types
    typed_keys : bool
        Format entity keys from the $metadata key property types, e.g.
        ``guid'...'`` for an Edm.Guid key

    Examples
    --------
    >>> with ConnectionContext() as conn:
    ...     api = conn.get_service("API_SALES_ORDER_SRV")
    ...
    ...     # Discover available entity sets
    ...     print(api.list_entity_sets())
    ...
    ...     # Query with field selection and filter
    ...     orders = api.query(
    ...         "A_SalesOrder",
    ...         fields=["SalesOrder", "SalesOrderType"],
    ...         filters={"SalesOrganization": "1010"},
    ...         top=50,
    ...     )
    ...
    ...     api.update_entity("A_SalesOrder", "4711", {"PurchaseOrderByCustomer": "PO-1"})
    """

    def __init__(
        self,
        executor: RequestExecutor,
        service: str,
        *,
        default_sap_client: Optional[str] = None,
        convert_values: bool = False,
        typed_keys: bool = False,
    ) -> None:
        self.executor = executor
        self.service = service
        self.path = service_root(service)
        self.default_sap_client = default_sap_client
        self.convert_values = convert_values
        self.typed_keys = typed_keys

    # ---------------- plumbing ----------------

    def _headers(self, sap_client: Optional[str]) -> Optional[Dict[str, str]]:
        client = sap_client or self.default_sap_client
        return {"sap-client": client} if client else None

    def _call(
        self,
        method: str,
        resource: str,
        *,
        sap_client: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        **kwargs: Any,
    ) -> Any:
        merged = dict(self._headers(sap_client) or {})
        merged.update(headers or {})
        return self.executor.execute(RequestConfig(
            method, resource, service_path=self.path, headers=merged or None, **kwargs
        ))

    @staticmethod
    def format_key(key: Key) -> str:
        """Key predicate for ``EntitySet(...)``; see :func:`~sap_gateway.odata.query.format_key`."""
        return format_key(key)

    def _entity_path(self, entity_set: str, key: Key) -> str:
        validate_entity_set_name(entity_set)
        if self.typed_keys:
            return f"{entity_set}({self.typed_key(entity_set, key)})"
        return f"{entity_set}({format_key(key)})"

    def property_types(self, entity_set: str) -> Dict[str, str]:
        """Property name to EDM type for ``entity_set`` ({} when unknown)."""
        et = self.executor.get_metadata(self.path).entity_type_for_set(entity_set)
        return {p.name: p.type for p in et.properties} if et else {}

    def typed_key(self, entity_set: str, key: Key) -> str:
        """
        Key predicate with literals typed from $metadata.

        Falls back to :func:`~sap_gateway.odata.query.format_key` when the
        entity set has no known key properties.

        Examples
        --------
        >>> service.typed_key("A_BusinessPartnerAddress", {"BusinessPartner": "1", "AddressID": "22"})
        "BusinessPartner='1',AddressID='22'"
        """
        et = self.executor.get_metadata(self.path).entity_type_for_set(entity_set)
        if et is None or not et.keys:
            return format_key(key)
        types = {p.name: p.type for p in et.properties}
        return format_typed_key(key, {k: types.get(k, "Edm.String") for k in et.keys})

    def _convert(self, entity_set: str, data: Any) -> Any:
        if not self.convert_values or not data:
            return data
        return convert_entity(data, self.property_types(entity_set))

    # ---------------- core reads ----------------

    def read(
        self,
        entity_set: str,
        *,
        sap_client: Optional[str] = None,
        **query: Any,
    ) -> List[Dict[str, Any]]:
        """
        Read a single page of results from an entity set.

        Parameters
        ----------
        entity_set : str
            Entity set name
        sap_client : str, optional
            SAP client override
        **query
            Additional OData query parameters

        Returns
        -------
        list of dict
            List of entity records
        """
        validate_entity_set_name(entity_set)
        body = self._call("GET", entity_set, sap_client=sap_client, query=query or None)
        return self._convert(entity_set, extract_items(body))

    def iterate(
        self,
        entity_set: str,
        *,
        max_pages: Optional[int] = None,
        **query: Any,
    ) -> Generator[List[Dict[str, Any]], None, None]:
        """
        Iterate through pages of results.

        Yields each page as a list of records, following next links (and
        ``$skip`` when a full page has none). Empty pages are skipped.

        Parameters
        ----------
        entity_set : str
            Entity set name
        max_pages : int, optional
            Maximum number of pages to fetch
        **query
            Additional OData query parameters

        Yields
        ------
        list of dict
            Each page of entity records
        """
        validate_entity_set_name(entity_set)
        yielded = 0
        for page in self.executor.pages(entity_set, query=query, service_path=self.path):
            if not page:
                continue
            yield self._convert(entity_set, page)
            yielded += 1
            if max_pages is not None and yielded >= int(max_pages):
                return

    def read_all(
        self,
        entity_set: str,
        *,
        max_pages: Optional[int] = None,
        max_items: Optional[int] = None,
        **query: Any,
    ) -> List[Dict[str, Any]]:
        """
        Read all pages of results into a single list.

        Parameters
        ----------
        entity_set : str
            Entity set name
        max_pages : int, optional
            Maximum number of pages to fetch
        max_items : int, optional
            Item cap (defaults to the executor's ``max_items``)
        **query
            Additional OData query parameters

        Returns
        -------
        list of dict
            All entity records across pages
        """
        if max_pages is not None:
            out: List[Dict[str, Any]] = []
            for page in self.iterate(entity_set, max_pages=max_pages, **query):
                out.extend(page)
            return out[:max_items] if max_items else out
        return self.read_all_result(entity_set, max_items=max_items, **query).data

    def read_all_result(
        self,
        entity_set: str,
        *,
        max_items: Optional[int] = None,
        **query: Any,
    ) -> PaginationResult:
        """Like :meth:`read_all` but keeps the partial / limit information."""
        validate_entity_set_name(entity_set)
        result = self.executor.fetch_all(
            entity_set, query=query, service_path=self.path, max_items=max_items
        )
        if isinstance(result, PaginationResult):
            if result.partial:
                logger.warning("Partial read of %s: %s", entity_set, result.message)
            result.data = self._convert(entity_set, result.data)
            return result
        return PaginationResult(data=self._convert(entity_set, result))

    # ---------------- generic query builder ----------------

    def _query_params(
        self,
        entity_set: str,
        fields: Optional[Sequence[str]],
        filter_expr: Optional[str],
        filters: Optional[Mapping[str, Any]],
        orderby: Optional[str],
        top: Optional[int],
        skip: Optional[int],
        expand: Optional[Union[str, Sequence[str]]],
        validate_fields: bool,
        extra_params: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        options: Dict[str, Any] = dict(extra_params or {})

        if fields:
            use_fields = list(fields)
            if validate_fields:
                known = self.executor.get_metadata(self.path).property_names(entity_set)
                if known:
                    unknown = [f for f in use_fields if f not in known]
                    if unknown:
                        logger.warning("Dropping unknown fields for %s: %s", entity_set, ", ".join(unknown))
                    use_fields = [f for f in use_fields if f in known]
            if use_fields:
                options["$select"] = _join_csv(use_fields)

        clauses = []
        if filter_expr:
            clauses.append(filter_expr)
        if filters:
            if validate_fields:
                built = build_typed_filter(filters, self.property_types(entity_set))
            else:
                built = build_odata_filter(filters)
            if built:
                clauses.append(built)
        if clauses:
            options["$filter"] = " and ".join(f"({c})" if len(clauses) > 1 else c for c in clauses)

        if orderby:
            options["$orderby"] = orderby
        if expand:
            options["$expand"] = expand
        if top is not None:
            options["$top"] = int(top)
        if skip is not None:
            options["$skip"] = int(skip)
        return build_odata_query(options)

    def query(
        self,
        entity_set: str,
        *,
        fields: Optional[Sequence[str]] = None,
        filter_expr: Optional[str] = None,
        filters: Optional[Mapping[str, Any]] = None,
        orderby: Optional[str] = None,
        top: Optional[int] = None,
        skip: Optional[int] = None,
        expand: Optional[Union[str, Sequence[str]]] = None,
        max_pages: Optional[int] = None,
        max_items: Optional[int] = None,
        validate_fields: bool = True,
        extra_params: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Execute a flexible query against an entity set.

        Supports field selection, filtering, sorting, paging, and
        optional field validation against $metadata.

        Parameters
        ----------
        entity_set : str
            Entity set name
        fields : list of str, optional
            Fields for $select
        filter_expr : str, optional
            Raw $filter expression (checked for injection patterns)
        filters : dict, optional
            Equality filters, ``and``-joined; literals are typed from
            $metadata (``datetime'...'``, ``guid'...'``) when
            ``validate_fields`` is set
        orderby : str, optional
            $orderby expression
        top : int, optional
            Total records wanted ($top); pages stay at the executor page size
        skip : int, optional
            Records to skip ($skip)
        expand : str or list of str, optional
            $expand for related entities
        max_pages : int, optional
            Maximum pages to follow
        max_items : int, optional
            Item cap across pages
        validate_fields : bool
            If True, drop fields unknown to $metadata and type filter literals
        extra_params : dict, optional
            Additional OData parameters

        Returns
        -------
        list of dict
            Query results

        Examples
        --------
        >>> orders = service.query(
        ...     "A_SalesOrder",
        ...     fields=["SalesOrder", "SoldToParty"],
        ...     filter_expr="SalesOrderDate ge datetime'2024-01-01T00:00:00'",
        ...     orderby="SalesOrder desc",
        ...     top=100,
        ...     max_pages=5,
        ... )
        """
        params = self._query_params(
            entity_set, fields, filter_expr, filters, orderby, top, skip, expand,
            validate_fields, extra_params,
        )
        return self.read_all(entity_set, max_pages=max_pages, max_items=max_items, **params)

    def query_result(
        self,
        entity_set: str,
        *,
        fields: Optional[Sequence[str]] = None,
        filter_expr: Optional[str] = None,
        filters: Optional[Mapping[str, Any]] = None,
        orderby: Optional[str] = None,
        top: Optional[int] = None,
        skip: Optional[int] = None,
        expand: Optional[Union[str, Sequence[str]]] = None,
        max_items: Optional[int] = None,
        validate_fields: bool = True,
        extra_params: Optional[Dict[str, Any]] = None,
    ) -> PaginationResult:
        """Same options as :meth:`query`, returning a :class:`PaginationResult`."""
        params = self._query_params(
            entity_set, fields, filter_expr, filters, orderby, top, skip, expand,
            validate_fields, extra_params,
        )
        return self.read_all_result(entity_set, max_items=max_items, **params)

    # ---------------- entity CRUD ----------------

    def get_entity(
        self,
        entity_set: str,
        key: Key,
        *,
        fields: Optional[Sequence[str]] = None,
        expand: Optional[Union[str, Sequence[str]]] = None,
        sap_client: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Read one entity by key.

        Raises
        ------
        NotFoundError
            If the entity does not exist
        """
        if expand:
            paths = [expand] if isinstance(expand, str) else list(expand)
            expand = ",".join("/".join(parse_navigation_path(p)) for p in paths)
        query = build_odata_query({"$select": fields, "$expand": expand})
        body = self._call("GET", self._entity_path(entity_set, key), sap_client=sap_client, query=query or None)
        return self._convert(entity_set, _entity(body))

    def read_navigation(
        self,
        entity_set: str,
        key: Key,
        navigation: str,
        *,
        sap_client: Optional[str] = None,
        **query: Any,
    ) -> Any:
        """
        Follow a navigation path from one entity, e.g. ``to_Item/to_Product``.

        Returns
        -------
        list of dict or dict
            A list for to-many navigation, the entity for to-one

        Examples
        --------
        >>> items = service.read_navigation("A_SalesOrder", "4711", "to_Item", **{"$select": "Material"})
        """
        segments = parse_navigation_path(navigation)
        path = f"{self._entity_path(entity_set, key)}/{'/'.join(segments)}"
        body = self._call("GET", path, sap_client=sap_client, query=query or None)

        env = classify(body)
        types = self._navigation_types(entity_set, segments) if self.convert_values else {}
        if isinstance(env, V4Envelope) or isinstance(_entity(body), list) or (
            isinstance(env, V2Envelope) and isinstance(env.d, dict) and isinstance(env.d.get("results"), list)
        ):
            items = env.items()
            return [convert_entity(i, types) for i in items] if self.convert_values else items
        entity = _entity(body)
        return convert_entity(entity, types) if self.convert_values and entity else entity

    def _navigation_types(self, entity_set: str, segments: Sequence[str]) -> Dict[str, str]:
        meta = self.executor.get_metadata(self.path)
        et = meta.entity_type_for_set(entity_set)
        for segment in segments:
            if et is None:
                return {}
            nav = next((n for n in et.navigation_properties if n.name == segment), None)
            et = meta.entity_types.get(nav.target_entity_type) if nav and nav.target_entity_type else None
        return {p.name: p.type for p in et.properties} if et else {}

    def create_deep(
        self,
        entity_set: str,
        data: Mapping[str, Any],
        navigation: Mapping[str, Union[Mapping[str, Any], Sequence[Mapping[str, Any]]]],
        *,
        validate: bool = True,
        sap_client: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create an entity together with related entities in one POST.

        Parameters
        ----------
        entity_set : str
            Entity set of the root entity
        data : dict
            Root entity properties
        navigation : dict
            Navigation property name to one related entity (to-one) or a
            list of them (to-many); ``__`` prefixed keys are dropped
        validate : bool
            Check the navigation names against $metadata first

        Raises
        ------
        ValidationError
            If a navigation property is unknown or its payload is not an
            object or a list of objects

        Examples
        --------
        >>> order = service.create_deep(
        ...     "A_SalesOrder",
        ...     {"SalesOrderType": "OR", "SoldToParty": "17100001"},
        ...     {"to_Item": [{"Material": "TG11", "RequestedQuantity": "2"}]},
        ... )
        """
        validate_entity_set_name(entity_set)
        if validate:
            et = self.executor.get_metadata(self.path).entity_type_for_set(entity_set)
            if et is not None:
                known = {n.name for n in et.navigation_properties}
                unknown = sorted(set(navigation) - known)
                if unknown:
                    raise ValidationError(
                        f"Unknown navigation properties for {entity_set}: {', '.join(unknown)}"
                    )

        payload = dict(data)
        for name, related in navigation.items():
            parse_navigation_path(name)
            if isinstance(related, Mapping):
                payload[name] = _clean_related(related)
            elif isinstance(related, (list, tuple)) and all(isinstance(r, Mapping) for r in related):
                payload[name] = [_clean_related(r) for r in related]
            else:
                raise ValidationError(
                    f"Navigation property {name} must be an object or a list of objects"
                )

        logger.debug("Deep insert into %s with %s", entity_set, ", ".join(navigation) or "no navigation")
        body = self._call("POST", entity_set, sap_client=sap_client, body=payload)
        return self._convert(entity_set, _entity(body))

    def create_entity(
        self,
        entity_set: str,
        data: Mapping[str, Any],
        *,
        sap_client: Optional[str] = None,
    ) -> Dict[str, Any]:
        """POST a new entity; returns the created entity as echoed by SAP."""
        validate_entity_set_name(entity_set)
        body = self._call("POST", entity_set, sap_client=sap_client, body=dict(data))
        return self._convert(entity_set, _entity(body))

    def update_entity(
        self,
        entity_set: str,
        key: Key,
        data: Mapping[str, Any],
        *,
        method: str = "PATCH",
        sap_client: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Update an entity.

        Parameters
        ----------
        method : str
            "PATCH" (default), "PUT", or "MERGE"; MERGE is tunnelled as a
            POST with ``X-HTTP-Method: MERGE`` for V2 services

        Returns
        -------
        dict
            Updated entity, or ``{}`` when SAP answers 204 No Content
        """
        method = method.upper()
        if method not in _UPDATE_METHODS:
            raise ValidationError(f"Unsupported update method {method!r}; use one of {_UPDATE_METHODS}")
        path = self._entity_path(entity_set, key)
        if method == "MERGE":
            body = self._call("POST", path, sap_client=sap_client, body=dict(data),
                              headers={"X-HTTP-Method": "MERGE"})
        else:
            body = self._call(method, path, sap_client=sap_client, body=dict(data))
        return self._convert(entity_set, _entity(body)) if body else {}

    def delete_entity(self, entity_set: str, key: Key, *, sap_client: Optional[str] = None) -> None:
        self._call("DELETE", self._entity_path(entity_set, key), sap_client=sap_client)

    # ---------------- functions and batch ----------------

    def call_function(
        self,
        name: str,
        params: Optional[Mapping[str, Any]] = None,
        *,
        method: str = "GET",
        sap_client: Optional[str] = None,
    ) -> Any:
        """
        Call a function import.

        Parameters are sent as URI literals, e.g. ``SalesOrder='1'``.
        """
        validate_entity_set_name(name)
        query = {k: format_literal(v, k) for k, v in (params or {}).items() if v is not None}
        body = self._call(method.upper(), name, sap_client=sap_client, query=query or None)
        return _entity(body)

    def batch(
        self,
        operations: Sequence[BatchOperation],
        *,
        use_change_set: bool = False,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> BatchResponse:
        """Run ``operations`` through ``$batch`` on this service."""
        return self.executor.execute_batch(
            operations, use_change_set=use_change_set, batch_size=batch_size, service_path=self.path,
        )

    # ---------------- discovery helpers ----------------

    def list_entity_sets(self) -> List[str]:
        """
        List all entity sets available in this service.

        Returns
        -------
        list of str
            Entity set names
        """
        return self.executor.list_entity_sets(self.path)

    def list_function_imports(self) -> List[str]:
        return self.executor.list_function_imports(self.path)

    def list_fields(self, entity_set: str) -> List[str]:
        """
        List all fields/properties for an entity set.

        Parameters
        ----------
        entity_set : str
            Entity set name

        Returns
        -------
        list of str
            Field/property names
        """
        return self.executor.get_metadata(self.path).property_names(entity_set)

    def fields(self, entity_set: str) -> List[EntityProperty]:
        et = self.executor.get_metadata(self.path).entity_type_for_set(entity_set)
        return list(et.properties) if et else []

    def describe_fields(self, entity_set: str) -> List[Dict[str, Any]]:
        """Fields with display type and a one-line description."""
        return [
            {
                "name": p.name,
                "type": p.type,
                "display_type": display_type(p.type),
                "is_key": p.is_key,
                "nullable": p.nullable,
                "description": field_description(p),
            }
            for p in self.fields(entity_set)
        ]
