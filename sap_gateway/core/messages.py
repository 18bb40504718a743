"""
sap_gateway.core.messages - SAP business messages
===================================================

SAP Gateway reports business messages in two places: the ``sap-message``
response header (URL-encoded JSON, also on success) and the ``error``
envelope of failed responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import unquote
import json
import logging

logger = logging.getLogger("sap_gateway.messages")

_SEVERITIES = {
    "success": "success",
    "info": "info",
    "information": "info",
    "warning": "warning",
    "error": "error",
    "abort": "abort",
}


@dataclass
class SapMessage:
    code: str
    message: str
    severity: str = "info"
    target: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "severity": self.severity, "target": self.target}


def map_severity(severity: Optional[str]) -> str:
    return _SEVERITIES.get((severity or "").strip().lower(), "info")


def _message_from(obj: Dict[str, Any], default_severity: Optional[str] = None) -> SapMessage:
    return SapMessage(
        code=str(obj.get("code") or ""),
        message=str(obj.get("message") or ""),
        severity=map_severity(obj.get("severity") or default_severity),
        target=obj.get("target") or None,
    )


def parse_sap_message_header(value: Optional[str]) -> List[SapMessage]:
    """
    Decode a ``sap-message`` header into a flat list: main message first,
    then its details. Undecodable headers yield an empty list.
    """
    if not value:
        return []
    try:
        data = json.loads(unquote(value))
    except ValueError as e:
        logger.warning("Failed to parse sap-message header (%s): %.100s", e, value)
        return []
    if not isinstance(data, dict):
        return []

    messages: List[SapMessage] = []
    if data.get("message"):
        messages.append(_message_from(data))
    for detail in data.get("details") or []:
        if isinstance(detail, dict):
            messages.append(_message_from(detail))
    return messages


def parse_sap_error_body(body: Any) -> List[SapMessage]:
    """
    Messages from an OData error body.

    Handles the V2 shape (``innererror.errordetails``) and the V4 shape
    (``error.details``). The top-level error always comes first.
    """
    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError:
            return []
    if not isinstance(body, dict) or not isinstance(body.get("error"), dict):
        return []

    err = body["error"]
    message = err.get("message")
    if isinstance(message, dict):
        message = message.get("value")
    messages = [SapMessage(code=str(err.get("code") or ""), message=str(message or ""), severity="error")]

    inner = err.get("innererror")
    details = []
    if isinstance(inner, dict) and isinstance(inner.get("errordetails"), list):
        details.extend(inner["errordetails"])
    if isinstance(err.get("details"), list):
        details.extend(err["details"])
    for detail in details:
        if isinstance(detail, dict):
            messages.append(_message_from(detail, default_severity="error"))
    return messages
