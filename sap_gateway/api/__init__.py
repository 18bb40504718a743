"""
sap_gateway.api - REST facade over SAP Gateway OData services
=============================================================

FastAPI application exposing query, entity write, ``$batch`` and discovery
endpoints, all backed by one shared
:class:`~sap_gateway.core.connection.ConnectionContext`.

Usage
-----
>>> from sap_gateway.api import create_app
>>> app = create_app()

``uvicorn sap_gateway.api:app`` serves an app configured from the
environment (``S4_*`` and ``ODATA_*``); a ``.env`` file is honoured.
"""

from dotenv import find_dotenv, load_dotenv

from sap_gateway.api.gateway import ODataGateway, create_app


def load_env() -> bool:
    """Load the nearest ``.env`` above the working directory; set variables win."""
    path = find_dotenv(usecwd=True)
    return load_dotenv(path) if path else False


def __getattr__(name):
    # "sap_gateway.api:app" is built on first access, not at import
    if name == "app":
        load_env()
        application = create_app()
        globals()["app"] = application
        return application
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "create_app",
    "load_env",
    "ODataGateway",
    "app",
]
