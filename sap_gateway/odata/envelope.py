"""
sap_gateway.odata.envelope - OData V2/V4 response shapes
=========================================================

A response body is classified exactly once into one of

- :class:`V2Envelope` (``{"d": ...}``)
- :class:`V4Envelope` (``{"value": [...]}``)
- :class:`RawEnvelope` (anything else)

and then consumed uniformly through :meth:`items` / :meth:`next_link`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union


@dataclass
class V2Envelope:
    d: Any
    body: Dict[str, Any]

    def items(self) -> List[Any]:
        if isinstance(self.d, dict) and isinstance(self.d.get("results"), list):
            return self.d["results"]
        if isinstance(self.d, list):
            return self.d
        return [self.d]

    def next_link(self) -> Optional[str]:
        return self.d.get("__next") if isinstance(self.d, dict) else None

    def count(self) -> Optional[int]:
        if isinstance(self.d, dict) and self.d.get("__count") is not None:
            return int(self.d["__count"])
        return None


@dataclass
class V4Envelope:
    value: List[Any]
    body: Dict[str, Any]

    def items(self) -> List[Any]:
        return self.value

    def next_link(self) -> Optional[str]:
        return self.body.get("@odata.nextLink")

    def count(self) -> Optional[int]:
        c = self.body.get("@odata.count")
        return int(c) if c is not None else None


@dataclass
class RawEnvelope:
    body: Any

    def items(self) -> List[Any]:
        if isinstance(self.body, list):
            return self.body
        return [self.body]

    def next_link(self) -> Optional[str]:
        if isinstance(self.body, dict):
            return self.body.get("@odata.nextLink")
        return None

    def count(self) -> Optional[int]:
        return None


ODataEnvelope = Union[V2Envelope, V4Envelope, RawEnvelope]


def classify(body: Any) -> ODataEnvelope:
    """
    Decide which envelope a decoded response body uses.

    Examples
    --------
    >>> classify({"d": {"results": [1, 2]}}).items()
    [1, 2]
    >>> classify({"value": [3]}).items()
    [3]
    """
    if isinstance(body, dict):
        if body.get("d") is not None:
            return V2Envelope(d=body["d"], body=body)
        if isinstance(body.get("value"), list):
            return V4Envelope(value=body["value"], body=body)
    return RawEnvelope(body=body)


def extract_items(body: Any, property_name: Optional[str] = None) -> List[Any]:
    """
    Items carried by a response.

    Lookup order: ``property_name`` (when given and present), V2
    ``d.results``, V4 ``value``, single-entity ``d``, whole body.
    """
    if property_name and isinstance(body, dict) and body.get(property_name):
        value = body[property_name]
        return value if isinstance(value, list) else [value]
    return classify(body).items()


def extract_next_link(body: Any) -> Optional[str]:
    """V2 ``d.__next``, else V4 ``@odata.nextLink``, else None."""
    env = classify(body)
    link = env.next_link()
    if link:
        return link
    if isinstance(env, V2Envelope) and isinstance(body, dict):
        return body.get("@odata.nextLink") or None
    return None
