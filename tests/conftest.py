"""
Pytest configuration and shared fixtures.
"""

import json
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from sap_gateway.core.config import ExecutionOptions, SapCredentials
from sap_gateway.core.request import HttpRequest
from sap_gateway.core.store import InMemoryStore
from sap_gateway.core.transport import HttpResponse

HOST = "https://s4.example.com"
SERVICE_PATH = "/sap/opu/odata/sap/API_SALES_ORDER_SRV"


def json_response(
    status: int = 200,
    body: Any = None,
    headers: Optional[Dict[str, str]] = None,
    set_cookies: Optional[List[str]] = None,
) -> HttpResponse:
    """A JSON HttpResponse; ``body=None`` gives an empty body."""
    h = {"Content-Type": "application/json"}
    h.update(headers or {})
    return HttpResponse(
        status=status,
        headers=h,
        text="" if body is None else json.dumps(body),
        set_cookies=list(set_cookies or []),
    )


def csrf_response(token: str = "tok-1", cookies: Optional[List[str]] = None) -> HttpResponse:
    """Answer to an ``X-CSRF-Token: Fetch`` request."""
    return json_response(200, {"d": {"EntitySets": []}}, headers={"x-csrf-token": token}, set_cookies=cookies)


class FakeTransport:
    """
    Scripted transport.

    Pops one queued response per call and records every request. Queued
    exceptions are raised; queued callables are called with the request.
    """

    def __init__(self, *responses: Union[HttpResponse, Exception, Callable]):
        self.responses = list(responses)
        self.requests: List[HttpRequest] = []
        self.closed = False

    def queue(self, *responses: Union[HttpResponse, Exception, Callable]) -> None:
        self.responses.extend(responses)

    def __call__(self, request: HttpRequest) -> HttpResponse:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(request)
        if not response.url:
            response.url = request.url
        return response

    def close(self) -> None:
        self.closed = True

    @property
    def methods(self) -> List[str]:
        return [r.method for r in self.requests]


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def credentials():
    """Basic-auth credentials for a public test host."""
    return SapCredentials(
        host=HOST,
        auth_type="basic",
        username="USER",
        password="PASS",
        sap_client="100",
    )


@pytest.fixture
def oauth_credentials():
    return SapCredentials(
        host=HOST,
        auth_type="oauth2",
        token_url="https://auth.example.com/oauth/token",
        client_id="client-1",
        client_secret="secret-1",
    )


@pytest.fixture
def options():
    """Pipeline options without throttling and with fast retries."""
    return ExecutionOptions(initial_delay=1.0, max_delay=10.0)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_executor(credentials, options, store, transport, clock, sleeps):
    """Factory for executors wired to the fake transport and clock."""
    from sap_gateway.core.executor import RequestExecutor

    def factory(**overrides):
        kwargs = dict(
            credentials=credentials,
            service_path=SERVICE_PATH,
            options=options,
            store=store,
            transport=transport,
            clock=clock,
            sleep=sleeps.append,
            rand=lambda: 0.0,
        )
        kwargs.update(overrides)
        return RequestExecutor(**kwargs)

    return factory


@pytest.fixture
def sample_odata_response():
    """Sample OData v2 collection response."""
    return {
        "d": {
            "results": [
                {"SalesOrder": "1", "SalesOrderType": "OR"},
                {"SalesOrder": "2", "SalesOrderType": "OR"},
            ],
        }
    }


@pytest.fixture
def sample_odata_v4_response():
    """Sample OData v4 collection response."""
    return {
        "@odata.context": "$metadata#A_SalesOrder",
        "value": [
            {"SalesOrder": "1", "SalesOrderType": "OR"},
            {"SalesOrder": "2", "SalesOrderType": "OR"},
        ],
    }


@pytest.fixture
def sample_metadata_xml():
    """Sample OData $metadata XML with two entity types and an association."""
    return """<?xml version="1.0" encoding="utf-8"?>
<edmx:Edmx Version="1.0" xmlns:edmx="http://schemas.microsoft.com/ado/2007/06/edmx">
  <edmx:DataServices m:DataServiceVersion="2.0" xmlns:m="http://schemas.microsoft.com/ado/2007/08/dataservices/metadata">
    <Schema Namespace="API_SALES_ORDER_SRV" xmlns="http://schemas.microsoft.com/ado/2008/09/edm">
      <EntityType Name="A_SalesOrderType">
        <Key>
          <PropertyRef Name="SalesOrder"/>
        </Key>
        <Property Name="SalesOrder" Type="Edm.String" Nullable="false" MaxLength="10"/>
        <Property Name="SalesOrderType" Type="Edm.String" MaxLength="4"/>
        <Property Name="TotalNetAmount" Type="Edm.Decimal" Precision="16" Scale="3"/>
        <Property Name="CreationDate" Type="Edm.DateTime"/>
        <NavigationProperty Name="to_Item" Relationship="API_SALES_ORDER_SRV.assoc_SalesOrder_Item" FromRole="FromRole_assoc_SalesOrder_Item" ToRole="ToRole_assoc_SalesOrder_Item"/>
      </EntityType>
      <EntityType Name="A_SalesOrderItemType">
        <Key>
          <PropertyRef Name="SalesOrder"/>
          <PropertyRef Name="SalesOrderItem"/>
        </Key>
        <Property Name="SalesOrder" Type="Edm.String" Nullable="false" MaxLength="10"/>
        <Property Name="SalesOrderItem" Type="Edm.String" Nullable="false" MaxLength="6"/>
        <Property Name="Material" Type="Edm.String" MaxLength="40"/>
      </EntityType>
      <Association Name="assoc_SalesOrder_Item">
        <End Type="API_SALES_ORDER_SRV.A_SalesOrderType" Multiplicity="1" Role="FromRole_assoc_SalesOrder_Item"/>
        <End Type="API_SALES_ORDER_SRV.A_SalesOrderItemType" Multiplicity="*" Role="ToRole_assoc_SalesOrder_Item"/>
      </Association>
      <EntityContainer Name="API_SALES_ORDER_SRV_Entities" m:IsDefaultEntityContainer="true">
        <EntitySet Name="A_SalesOrder" EntityType="API_SALES_ORDER_SRV.A_SalesOrderType"/>
        <EntitySet Name="A_SalesOrderItem" EntityType="API_SALES_ORDER_SRV.A_SalesOrderItemType"/>
        <AssociationSet Name="assoc_SalesOrder_Item_Set" Association="API_SALES_ORDER_SRV.assoc_SalesOrder_Item">
          <End EntitySet="A_SalesOrder" Role="FromRole_assoc_SalesOrder_Item"/>
          <End EntitySet="A_SalesOrderItem" Role="ToRole_assoc_SalesOrder_Item"/>
        </AssociationSet>
        <FunctionImport Name="ReleaseSalesOrder" ReturnType="API_SALES_ORDER_SRV.A_SalesOrderType" EntitySet="A_SalesOrder" m:HttpMethod="POST"/>
      </EntityContainer>
    </Schema>
  </edmx:DataServices>
</edmx:Edmx>"""


@pytest.fixture
def metadata_response(sample_metadata_xml):
    return HttpResponse(status=200, headers={"Content-Type": "application/xml"}, text=sample_metadata_xml)
