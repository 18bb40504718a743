"""
sap_gateway.odata.discovery - Gateway service catalog
=====================================================

Maps entries of the IWFND catalog service (``ServiceCollection``) to
:class:`ServiceInfo` records with a usable service path.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from sap_gateway.odata.envelope import extract_items

CATALOG_SERVICE_PATH = "/sap/opu/odata/IWFND/CATALOGSERVICE;v=2"
CATALOG_RESOURCE = "ServiceCollection"


@dataclass
class ServiceInfo:
    """
    One OData service registered in the Gateway.

    Attributes
    ----------
    id : str
        Catalog ID, e.g. "API_SALES_ORDER_SRV_0001"
    title : str
        Human readable title
    technical_name : str
        Technical service name
    version : str
        Technical service version ("1" when absent)
    service_url : str, optional
        ServiceUrl/BaseUrl exactly as reported by the catalog
    path : str
        Service root path, always ending in "/"
    description : str, optional
    """
    id: str
    title: str
    technical_name: str
    version: str
    service_url: Optional[str]
    path: str
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def build_service_path(name: str, version: Optional[str] = None, namespace: str = "sap") -> str:
    """
    Default service path for a catalog entry without a URL.

    Examples
    --------
    >>> build_service_path("API_SALES_ORDER_SRV")
    '/sap/opu/odata/sap/API_SALES_ORDER_SRV/'
    >>> build_service_path("ZMY_SRV", "0002")
    '/sap/opu/odata/sap/ZMY_SRV;v=0002/'
    """
    if version and version not in ("1", "0001"):
        return f"/sap/opu/odata/{namespace}/{name};v={version}/"
    return f"/sap/opu/odata/{namespace}/{name}/"


def _path_of(url: str) -> str:
    path = urlsplit(url).path if "://" in url else url
    return path if path.endswith("/") else path + "/"


def service_from_entry(entry: Dict[str, Any]) -> Optional[ServiceInfo]:
    """Map one ``ServiceCollection`` entry; entries without ID or name give None."""
    entry_id = entry.get("ID")
    technical_name = entry.get("TechnicalServiceName")
    if not entry_id or not technical_name:
        return None

    version = entry.get("TechnicalServiceVersion") or "1"
    service_url = entry.get("ServiceUrl") or entry.get("BaseUrl") or None
    if service_url:
        path = _path_of(service_url)
    else:
        path = build_service_path(entry_id, version, entry.get("Namespace") or "sap")

    return ServiceInfo(
        id=str(entry_id),
        title=entry.get("Title") or technical_name or "Unknown Service",
        technical_name=str(technical_name),
        version=str(version),
        service_url=service_url,
        path=path,
        description=entry.get("Description") or None,
    )


def parse_service_catalog(body: Any) -> List[ServiceInfo]:
    """All usable services in a decoded catalog response."""
    services = []
    for entry in extract_items(body):
        if isinstance(entry, dict):
            info = service_from_entry(entry)
            if info is not None:
                services.append(info)
    return services


def search_services(services: Iterable[ServiceInfo], keyword: str) -> List[ServiceInfo]:
    """Case-insensitive match on title, technical name or description."""
    needle = (keyword or "").lower()
    return [
        s for s in services
        if needle in s.title.lower()
        or needle in s.technical_name.lower()
        or needle in (s.description or "").lower()
    ]
