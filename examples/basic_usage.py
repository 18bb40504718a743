"""
Example: Basic OData usage with sap_gateway
===========================================

This example shows how to query, write and batch against SAP Gateway
OData services.
"""

from sap_gateway import ConnectionContext, ExecutionOptions, SapCredentials
from sap_gateway.core.config import ThrottleConfig
from sap_gateway.odata import BatchOperation, BatchOperationType, escape_odata_string


def example_basic_query():
    """Basic OData query example."""

    credentials = SapCredentials(
        host="https://your-s4.example.com",
        auth_type="basic",
        username="USER",
        password="PASSWORD",
        sap_client="100",
    )
    options = ExecutionOptions(
        throttle=ThrottleConfig(enabled=True, max_requests_per_second=5),
        max_items=1000,
    )

    with ConnectionContext(
        "https://your-s4.example.com/sap/opu/odata/sap/",
        credentials=credentials,
        options=options,
    ) as conn:
        api = conn.get_service("API_SALES_ORDER_SRV")

        # Discover what's available
        print("Entity Sets:", api.list_entity_sets())
        print("Fields:", api.list_fields("A_SalesOrder"))

        items = api.query(
            "A_SalesOrder",
            fields=["SalesOrder", "SalesOrderType", "SoldToParty", "TotalNetAmount"],
            filter_expr=f"SoldToParty eq '{escape_odata_string('17100001')}'",
            top=50,
            orderby="SalesOrder desc",
        )
        print(f"Found {len(items)} orders")
        print("First 2:", items[:2])


def example_connection_context():
    """Using ConnectionContext with environment configuration."""
    # Reads S4_BASE_URL, S4_USER, S4_PASS, S4_SAP_CLIENT (or S4_OAUTH_*)
    with ConnectionContext() as conn:
        service = conn.get_service("API_SALES_ORDER_SRV")

        for order in service.executor.stream("A_SalesOrder", service_path=service.path, max_items=200):
            print(order.get("SalesOrder"))

        created = service.create_entity("A_SalesOrder", {"SalesOrderType": "OR", "SoldToParty": "17100001"})
        print(f"Created: {created.get('SalesOrder')}")


def example_batch():
    """Several writes applied atomically through $batch."""
    with ConnectionContext() as conn:
        service = conn.get_service("API_PRODUCT_SRV")
        response = service.batch(
            [
                BatchOperation(BatchOperationType.CREATE, "A_Product", data={"Product": "P1"}),
                BatchOperation(BatchOperationType.UPDATE, "A_Product", entity_key="'P0'",
                               data={"ProductGroup": "01"}),
            ],
            use_change_set=True,
        )
        for result in response.results:
            print(result.index, result.status_code, result.error or "ok")


if __name__ == "__main__":
    # Uncomment the example you want to run
    # example_basic_query()
    # example_connection_context()
    # example_batch()

    print("Set up your environment variables and uncomment an example to run.")
    print("Required: S4_BASE_URL, S4_USER, S4_PASS (or S4_OAUTH_TOKEN_URL/CLIENT_ID/CLIENT_SECRET)")
