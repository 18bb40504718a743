"""
Tests for sap_gateway.odata metadata, query helpers, envelopes and the service client.
"""

import pytest

from sap_gateway.core.errors import NotFoundError, ProtocolDecodeError, ValidationError
from sap_gateway.odata.discovery import (
    ServiceInfo,
    build_service_path,
    parse_service_catalog,
    search_services,
    service_from_entry,
)
from sap_gateway.odata.envelope import RawEnvelope, V2Envelope, V4Envelope, classify, extract_items, extract_next_link
from sap_gateway.odata.metadata import display_type, field_description, parse_metadata, strip_namespace
from sap_gateway.odata.query import (
    build_encoded_query_string,
    build_odata_filter,
    build_odata_query,
    escape_odata_string,
    format_key,
    format_literal,
    normalize_odata_options,
    parse_metadata_for_entity_sets,
    parse_metadata_for_function_imports,
    validate_odata_filter,
)
from sap_gateway.odata.service import ODataService, service_root

from conftest import HOST, SERVICE_PATH, csrf_response, json_response


class TestMetadataParsing:
    """Tests for $metadata parsing."""

    def test_entity_types(self, sample_metadata_xml):
        meta = parse_metadata(sample_metadata_xml)
        assert set(meta.entity_types) == {"A_SalesOrderType", "A_SalesOrderItemType"}
        order = meta.entity_types["A_SalesOrderType"]
        assert order.keys == ["SalesOrder"]
        assert order.property_names() == ["SalesOrder", "SalesOrderType", "TotalNetAmount", "CreationDate"]

        key = order.get_property("SalesOrder")
        assert key.is_key is True
        assert key.nullable is False
        assert key.max_length == "10"

        amount = order.get_property("TotalNetAmount")
        assert amount.nullable is True
        assert (amount.precision, amount.scale) == ("16", "3")

    def test_composite_key(self, sample_metadata_xml):
        item = parse_metadata(sample_metadata_xml).entity_types["A_SalesOrderItemType"]
        assert item.keys == ["SalesOrder", "SalesOrderItem"]

    def test_navigation_target_resolved(self, sample_metadata_xml):
        order = parse_metadata(sample_metadata_xml).entity_types["A_SalesOrderType"]
        nav = order.navigation_properties[0]
        assert nav.name == "to_Item"
        assert nav.target_entity_type == "A_SalesOrderItemType"

    def test_entity_sets(self, sample_metadata_xml):
        meta = parse_metadata(sample_metadata_xml)
        assert meta.entity_sets["A_SalesOrder"].entity_type == "A_SalesOrderType"
        assert meta.property_names("A_SalesOrderItem") == ["SalesOrder", "SalesOrderItem", "Material"]
        assert meta.property_names("Unknown") == []
        assert meta.associations["assoc_SalesOrder_Item"].ends[1].multiplicity == "*"

    def test_entity_set_with_unknown_type_dropped(self, sample_metadata_xml):
        xml = sample_metadata_xml.replace(
            '<EntitySet Name="A_SalesOrderItem"',
            '<EntitySet Name="A_Orphan" EntityType="API_SALES_ORDER_SRV.A_MissingType"/>\n'
            '        <EntitySet Name="A_SalesOrderItem"',
        )
        meta = parse_metadata(xml)
        assert "A_Orphan" not in meta.entity_sets
        for es in meta.entity_sets.values():
            assert es.entity_type in meta.entity_types

    def test_not_metadata(self):
        with pytest.raises(ProtocolDecodeError):
            parse_metadata("<html><body>Logon</body></html>")

    def test_empty_document(self):
        with pytest.raises(ProtocolDecodeError, match="no Schema element"):
            parse_metadata("")

    def test_v4_namespaces(self):
        xml = (
            '<edmx:Edmx xmlns:edmx="http://docs.oasis-open.org/odata/ns/edmx" Version="4.0">'
            '<edmx:DataServices><Schema xmlns="http://docs.oasis-open.org/odata/ns/edm" Namespace="S">'
            '<EntityType Name="T"><Key><PropertyRef Name="ID"/></Key>'
            '<Property Name="ID" Type="Edm.Guid" Nullable="false"/></EntityType>'
            '<EntityContainer Name="C"><EntitySet Name="Ts" EntityType="S.T"/></EntityContainer>'
            '</Schema></edmx:DataServices></edmx:Edmx>'
        )
        meta = parse_metadata(xml)
        assert meta.entity_sets["Ts"].entity_type == "T"
        assert meta.entity_types["T"].get_property("ID").is_key is True

    def test_name_lists(self, sample_metadata_xml):
        assert parse_metadata_for_entity_sets(sample_metadata_xml) == ["A_SalesOrder", "A_SalesOrderItem"]
        assert parse_metadata_for_function_imports(sample_metadata_xml) == ["ReleaseSalesOrder"]
        assert parse_metadata_for_entity_sets("") == []

    def test_field_description(self, sample_metadata_xml):
        order = parse_metadata(sample_metadata_xml).entity_types["A_SalesOrderType"]
        assert field_description(order.get_property("SalesOrder")) == "String · (Key) · Required · Max: 10"
        assert field_description(order.get_property("TotalNetAmount")) == "Decimal · Precision: 16 · Scale: 3"
        assert display_type("Edm.Guid") == "GUID"
        assert display_type("Custom.Type") == "Custom.Type"

    def test_strip_namespace(self):
        assert strip_namespace("API_X.A_SalesOrderType") == "A_SalesOrderType"
        assert strip_namespace("Plain") == "Plain"


class TestQueryHelpers:
    """Tests for OData query option helpers."""

    def test_escape(self):
        assert escape_odata_string("O'Brien") == "O''Brien"

    def test_build_filter(self):
        assert build_odata_filter({"Name": "O'Brien", "Active": True, "Qty": 5, "Skip": None}) == (
            "Name eq 'O''Brien' and Active eq true and Qty eq 5"
        )

    def test_build_filter_rejects_objects(self):
        with pytest.raises(ValidationError):
            build_odata_filter({"Bad": {"nested": 1}})
        with pytest.raises(ValidationError):
            build_odata_filter({"Bad": [1, 2]})

    def test_format_literal(self):
        assert format_literal("A'B") == "'A''B'"
        assert format_literal(False) == "false"
        assert format_literal(7) == "7"
        assert format_literal(1.5) == "1.5"

    def test_normalize_options(self):
        assert normalize_odata_options({"top": 5, "$skip": 0, "filter": ""}) == {"$top": 5, "$skip": 0}

    def test_build_query(self):
        assert build_odata_query({"select": ["ID", " Name "], "top": 10, "expand": "to_Item"}) == {
            "$select": "ID,Name",
            "$expand": "to_Item",
            "$top": 10,
        }

    @pytest.mark.parametrize("expr", [
        "Name eq 'x'; DROP TABLE users ",
        "Name eq 'x' UNION SELECT *",
        "javascript:alert(1)",
        "(Name eq 'x'",
        "Name eq %3Cscript%3E",
    ])
    def test_dangerous_filters(self, expr):
        with pytest.raises(ValidationError):
            validate_odata_filter(expr)

    def test_safe_filter(self):
        expr = "(SalesOrderType eq 'OR') and substringof('(', Name)"
        assert validate_odata_filter(expr) == expr

    def test_encoded_query_string(self):
        assert build_encoded_query_string({"$filter": "Name eq 'A B'", "$top": 5, "$x": None}) == (
            "%24filter=Name%20eq%20%27A%20B%27&%24top=5"
        )

    @pytest.mark.parametrize("key,expected", [
        ("4711", "'4711'"),
        (42, "42"),
        ("O'Brien", "'O''Brien'"),
        ("guid'0050568c-1234'", "guid'0050568c-1234'"),
        ("SalesOrder='1',Item='10'", "SalesOrder='1',Item='10'"),
        ({"SalesOrder": "1", "SalesOrderItem": "10"}, "SalesOrder='1',SalesOrderItem='10'"),
    ])
    def test_format_key(self, key, expected):
        assert format_key(key) == expected
        assert ODataService.format_key(key) == expected


class TestEnvelope:
    """Tests for V2/V4 response classification."""

    def test_v2_collection(self, sample_odata_response):
        env = classify(sample_odata_response)
        assert isinstance(env, V2Envelope)
        assert len(env.items()) == 2

    def test_v2_single_entity(self):
        assert extract_items({"d": {"SalesOrder": "1"}}) == [{"SalesOrder": "1"}]

    def test_v2_count_and_next(self):
        body = {"d": {"results": [], "__count": "42", "__next": "X?$skiptoken=1"}}
        assert classify(body).count() == 42
        assert extract_next_link(body) == "X?$skiptoken=1"

    def test_v4(self, sample_odata_v4_response):
        body = dict(sample_odata_v4_response, **{"@odata.nextLink": "next", "@odata.count": 9})
        env = classify(body)
        assert isinstance(env, V4Envelope)
        assert env.count() == 9
        assert extract_next_link(body) == "next"

    def test_raw(self):
        assert isinstance(classify([1, 2]), RawEnvelope)
        assert extract_items([1, 2]) == [1, 2]
        assert extract_items({"x": 1}) == [{"x": 1}]
        assert extract_next_link({"x": 1}) is None

    def test_property_name_first(self):
        assert extract_items({"Items": [1], "value": [2]}, "Items") == [1]
        assert extract_items({"value": [2]}, "Items") == [2]


class TestDiscovery:
    """Tests for catalog entry mapping."""

    def test_build_service_path(self):
        assert build_service_path("API_SALES_ORDER_SRV") == "/sap/opu/odata/sap/API_SALES_ORDER_SRV/"
        assert build_service_path("ZMY_SRV", "0001") == "/sap/opu/odata/sap/ZMY_SRV/"
        assert build_service_path("ZMY_SRV", "0002") == "/sap/opu/odata/sap/ZMY_SRV;v=0002/"

    def test_entry_without_url(self):
        info = service_from_entry({
            "ID": "ZMY_SRV",
            "TechnicalServiceName": "ZMY_SRV",
            "TechnicalServiceVersion": "2",
        })
        assert info.path == "/sap/opu/odata/sap/ZMY_SRV;v=2/"
        assert info.title == "ZMY_SRV"
        assert info.service_url is None

    def test_entry_missing_fields(self):
        assert service_from_entry({"ID": "X"}) is None
        assert service_from_entry({"TechnicalServiceName": "X"}) is None

    def test_parse_and_search(self):
        body = {"d": {"results": [
            {"ID": "A_0001", "TechnicalServiceName": "API_SALES_ORDER_SRV", "Title": "Sales Order",
             "BaseUrl": "https://s4.example.com/sap/opu/odata/sap/API_SALES_ORDER_SRV/"},
            {"ID": "B_0001", "TechnicalServiceName": "API_PRODUCT_SRV", "Title": "Product Master",
             "Description": "Materials"},
        ]}}
        services = parse_service_catalog(body)
        assert [s.id for s in services] == ["A_0001", "B_0001"]
        assert [s.id for s in search_services(services, "sales")] == ["A_0001"]
        assert [s.id for s in search_services(services, "MATERIAL")] == ["B_0001"]
        assert services[0].to_dict()["path"] == "/sap/opu/odata/sap/API_SALES_ORDER_SRV/"
        assert isinstance(services[1], ServiceInfo)


@pytest.fixture
def service(make_executor):
    return ODataService(make_executor(), "API_SALES_ORDER_SRV", default_sap_client="100")


class TestODataService:
    """Tests for ODataService."""

    def test_service_root(self):
        assert service_root("API_SALES_ORDER_SRV") == SERVICE_PATH
        assert service_root("/sap/opu/odata/sap/ZMY_SRV;v=0002/") == "/sap/opu/odata/sap/ZMY_SRV;v=0002"

    def test_read(self, service, transport, sample_odata_response):
        transport.queue(json_response(200, sample_odata_response))
        items = service.read("A_SalesOrder", **{"$top": 2})
        assert [i["SalesOrder"] for i in items] == ["1", "2"]
        req = transport.requests[0]
        assert req.params == {"$top": "2"}
        assert req.headers["sap-client"] == "100"

    def test_read_rejects_bad_entity_set(self, service, transport):
        with pytest.raises(ValidationError):
            service.read("A_SalesOrder?$top=1")
        assert transport.requests == []

    def test_iterate_max_pages(self, service, transport):
        transport.queue(
            json_response(200, {"d": {"results": [{"n": 1}], "__next": "A_SalesOrder?$skiptoken=1"}}),
            json_response(200, {"d": {"results": [{"n": 2}], "__next": "A_SalesOrder?$skiptoken=2"}}),
        )
        pages = list(service.iterate("A_SalesOrder", max_pages=2))
        assert pages == [[{"n": 1}], [{"n": 2}]]
        assert len(transport.requests) == 2

    def test_read_all(self, service, transport):
        transport.queue(
            json_response(200, {"value": [{"n": 1}], "@odata.nextLink": "A_SalesOrder?$skiptoken=1"}),
            json_response(200, {"value": [{"n": 2}]}),
        )
        assert service.read_all("A_SalesOrder") == [{"n": 1}, {"n": 2}]

    def test_query_builds_options(self, service, transport, metadata_response):
        transport.queue(metadata_response, json_response(200, {"d": {"results": []}}))
        service.query(
            "A_SalesOrder",
            fields=["SalesOrder", "Bogus", "SalesOrderType"],
            filter_expr="SalesOrderType eq 'OR'",
            filters={"SoldToParty": "17100001"},
            orderby="SalesOrder desc",
            top=10,
        )
        params = transport.requests[1].params
        assert params["$select"] == "SalesOrder,SalesOrderType"
        assert params["$filter"] == "(SalesOrderType eq 'OR') and (SoldToParty eq '17100001')"
        assert params["$orderby"] == "SalesOrder desc"
        assert params["$top"] == "10"

    def test_query_without_validation(self, service, transport):
        transport.queue(json_response(200, {"value": []}))
        service.query("A_SalesOrder", fields=["Anything"], validate_fields=False)
        assert transport.requests[0].params["$select"] == "Anything"

    def test_query_rejects_injection(self, service, transport):
        with pytest.raises(ValidationError):
            service.query("A_SalesOrder", filter_expr="A eq 1; DELETE FROM x ", validate_fields=False)
        assert transport.requests == []

    def test_query_result_limit(self, service, transport):
        transport.queue(json_response(200, {"value": [{"n": 1}, {"n": 2}], "@odata.nextLink": "A_SalesOrder?p=2"}))
        result = service.query_result("A_SalesOrder", max_items=1)
        assert result.data == [{"n": 1}]
        assert result.limit_reached is True

    def test_get_entity(self, service, transport):
        transport.queue(json_response(200, {"d": {"SalesOrder": "4711"}}))
        assert service.get_entity("A_SalesOrder", "4711", fields=["SalesOrder"]) == {"SalesOrder": "4711"}
        req = transport.requests[0]
        assert req.url == f"{HOST}{SERVICE_PATH}/A_SalesOrder('4711')"
        assert req.params == {"$select": "SalesOrder"}

    def test_get_entity_not_found(self, service, transport):
        transport.queue(json_response(404, {"error": {"code": "NF", "message": {"value": "gone"}}}))
        with pytest.raises(NotFoundError):
            service.get_entity("A_SalesOrder", "0")

    def test_create_entity(self, service, transport):
        transport.queue(csrf_response(), json_response(201, {"d": {"SalesOrder": "1", "SalesOrderType": "OR"}}))
        created = service.create_entity("A_SalesOrder", {"SalesOrderType": "OR"})
        assert created["SalesOrder"] == "1"
        post = transport.requests[1]
        assert post.method == "POST"
        assert post.body == '{"SalesOrderType":"OR"}'

    def test_update_entity_patch(self, service, transport):
        transport.queue(csrf_response(), json_response(204))
        assert service.update_entity("A_SalesOrder", "1", {"PurchaseOrderByCustomer": "PO"}) == {}
        assert transport.requests[1].method == "PATCH"

    def test_update_entity_merge(self, service, transport):
        transport.queue(csrf_response(), json_response(204))
        service.update_entity("A_SalesOrder", {"SalesOrder": "1"}, {"A": 1}, method="merge")
        req = transport.requests[1]
        assert req.method == "POST"
        assert req.headers["X-HTTP-Method"] == "MERGE"
        assert req.url.endswith("A_SalesOrder(SalesOrder='1')")

    def test_update_entity_bad_method(self, service):
        with pytest.raises(ValidationError):
            service.update_entity("A_SalesOrder", "1", {}, method="POST")

    def test_delete_entity(self, service, transport):
        transport.queue(csrf_response(), json_response(204))
        service.delete_entity("A_SalesOrder", "1", sap_client="200")
        req = transport.requests[1]
        assert req.method == "DELETE"
        assert req.headers["sap-client"] == "200"

    def test_call_function(self, service, transport):
        transport.queue(json_response(200, {"d": {"Released": True}}))
        assert service.call_function("ReleaseSalesOrder", {"SalesOrder": "1", "Force": True}) == {"Released": True}
        assert transport.requests[0].params == {"SalesOrder": "'1'", "Force": "true"}

    def test_metadata_helpers(self, service, transport, metadata_response):
        transport.queue(metadata_response)
        assert service.list_entity_sets() == ["A_SalesOrder", "A_SalesOrderItem"]
        assert service.list_function_imports() == ["ReleaseSalesOrder"]
        assert service.list_fields("A_SalesOrderItem") == ["SalesOrder", "SalesOrderItem", "Material"]
        described = {f["name"]: f for f in service.describe_fields("A_SalesOrder")}
        assert described["SalesOrder"]["is_key"] is True
        assert described["CreationDate"]["display_type"] == "DateTime"
        assert service.fields("Unknown") == []
        assert len(transport.requests) == 1


class TestServiceTyping:
    """Tests for metadata-typed keys, filters and value conversion."""

    def test_typed_composite_key(self, make_executor, transport, metadata_response):
        svc = ODataService(make_executor(), "API_SALES_ORDER_SRV", typed_keys=True)
        transport.queue(metadata_response, json_response(200, {"d": {"Material": "TG11"}}))
        key = {"SalesOrder": "4711", "SalesOrderItem": "10"}
        assert svc.get_entity("A_SalesOrderItem", key) == {"Material": "TG11"}
        assert transport.requests[1].url == f"{HOST}{SERVICE_PATH}/A_SalesOrderItem(SalesOrder='4711',SalesOrderItem='10')"

    def test_typed_key_needs_mapping_for_composite(self, make_executor, transport, metadata_response):
        svc = ODataService(make_executor(), "API_SALES_ORDER_SRV", typed_keys=True)
        transport.queue(metadata_response)
        with pytest.raises(ValidationError):
            svc.get_entity("A_SalesOrderItem", "4711")
        assert len(transport.requests) == 1

    def test_typed_key_without_metadata_keys(self, service, transport, metadata_response):
        transport.queue(metadata_response)
        assert service.typed_key("Unknown", 5) == "5"

    def test_convert_values(self, make_executor, transport, metadata_response):
        svc = ODataService(make_executor(), "API_SALES_ORDER_SRV", convert_values=True)
        row = {
            "SalesOrder": "0000004711",
            "TotalNetAmount": "175.50",
            "CreationDate": "/Date(1507248000000)/",
        }
        transport.queue(json_response(200, {"d": {"results": [row]}}), metadata_response)
        assert svc.read("A_SalesOrder") == [{
            "SalesOrder": "0000004711",
            "TotalNetAmount": 175.5,
            "CreationDate": "2017-10-06T00:00:00.000Z",
        }]

    def test_values_untouched_by_default(self, service, transport):
        row = {"TotalNetAmount": "175.50", "CreationDate": "/Date(1507248000000)/"}
        transport.queue(json_response(200, {"d": {"results": [row]}}))
        assert service.read("A_SalesOrder") == [row]

    def test_typed_filter(self, service, transport, metadata_response):
        transport.queue(metadata_response, json_response(200, {"d": {"results": []}}))
        service.query("A_SalesOrder", filters={"CreationDate": "2024-01-15T00:00:00Z", "TotalNetAmount": "10.5"})
        assert transport.requests[1].params["$filter"] == (
            "CreationDate eq datetime'2024-01-15T00:00:00' and TotalNetAmount eq 10.5M"
        )

    def test_get_entity_expand_paths(self, service, transport):
        transport.queue(json_response(200, {"d": {"SalesOrder": "1"}}))
        service.get_entity("A_SalesOrder", "1", expand=["to_Item", " to_Item/to_Product "])
        assert transport.requests[0].params == {"$expand": "to_Item,to_Item/to_Product"}

    def test_get_entity_bad_expand(self, service, transport):
        with pytest.raises(ValidationError):
            service.get_entity("A_SalesOrder", "1", expand="to_Item;x")
        assert transport.requests == []


class TestNavigationAndDeepInsert:
    """Tests for navigation reads and deep inserts."""

    def test_read_navigation_collection(self, service, transport):
        transport.queue(json_response(200, {"d": {"results": [{"SalesOrderItem": "10"}, {"SalesOrderItem": "20"}]}}))
        items = service.read_navigation("A_SalesOrder", "4711", "to_Item", **{"$select": "SalesOrderItem"})
        assert items == [{"SalesOrderItem": "10"}, {"SalesOrderItem": "20"}]
        req = transport.requests[0]
        assert req.url == f"{HOST}{SERVICE_PATH}/A_SalesOrder('4711')/to_Item"
        assert req.params == {"$select": "SalesOrderItem"}

    def test_read_navigation_single(self, service, transport):
        transport.queue(json_response(200, {"d": {"Customer": "17100001"}}))
        assert service.read_navigation("A_SalesOrder", "1", "to_Partner/to_Customer") == {"Customer": "17100001"}
        assert transport.requests[0].url.endswith("A_SalesOrder('1')/to_Partner/to_Customer")

    def test_read_navigation_v4(self, service, transport):
        transport.queue(json_response(200, {"value": [{"n": 1}]}))
        assert service.read_navigation("A_SalesOrder", "1", "to_Item") == [{"n": 1}]

    def test_read_navigation_converts_with_target_types(self, make_executor, transport, metadata_response):
        svc = ODataService(make_executor(), "API_SALES_ORDER_SRV", convert_values=True)
        transport.queue(
            json_response(200, {"d": {"results": [{"SalesOrderItem": "000010", "ChangedOn": "/Date(0)/"}]}}),
            metadata_response,
        )
        items = svc.read_navigation("A_SalesOrder", "1", "to_Item")
        assert items == [{"SalesOrderItem": "000010", "ChangedOn": "1970-01-01T00:00:00.000Z"}]

    def test_read_navigation_bad_path(self, service, transport):
        with pytest.raises(ValidationError, match="Invalid navigation segment"):
            service.read_navigation("A_SalesOrder", "1", "to_Item/$count")
        assert transport.requests == []

    def test_create_deep(self, service, transport, metadata_response):
        transport.queue(
            metadata_response,
            csrf_response(),
            json_response(201, {"d": {"SalesOrder": "4711", "to_Item": {"results": [{"SalesOrderItem": "10"}]}}}),
        )
        created = service.create_deep(
            "A_SalesOrder",
            {"SalesOrderType": "OR"},
            {"to_Item": [{"Material": "TG11", "__metadata": {"type": "X"}}]},
        )
        assert created["SalesOrder"] == "4711"
        post = transport.requests[2]
        assert post.method == "POST"
        assert post.url == f"{HOST}{SERVICE_PATH}/A_SalesOrder"
        assert post.body == '{"SalesOrderType":"OR","to_Item":[{"Material":"TG11"}]}'

    def test_create_deep_unknown_navigation(self, service, transport, metadata_response):
        transport.queue(metadata_response)
        with pytest.raises(ValidationError, match="to_Text"):
            service.create_deep("A_SalesOrder", {}, {"to_Text": [{"Text": "x"}]})
        assert len(transport.requests) == 1

    def test_create_deep_bad_payload(self, service, transport):
        with pytest.raises(ValidationError, match="object or a list of objects"):
            service.create_deep("A_SalesOrder", {}, {"to_Item": "TG11"}, validate=False)
        assert transport.requests == []
