"""
sap_gateway.odata.values - SAP value conversion and typed literals
===================================================================

Two directions:

- responses: ``/Date(1507248000000)/`` becomes ``2017-10-06T00:00:00.000Z``
  and ``PT14H30M00S`` becomes ``14:30:00``; with $metadata types, numeric
  strings of Decimal/Double/Int64 properties become numbers
- requests: a Python value plus its EDM type becomes a URI literal such as
  ``guid'...'``, ``datetime'2024-01-15T10:30:00'`` or ``12.30M``
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
import re

from sap_gateway.core.errors import ValidationError

_SAP_DATE_RE = re.compile(r"^/Date\((-?\d+)([+-]\d+)?\)/$")
_SAP_TIME_RE = re.compile(r"^PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+(?:\.\d+)?)S)?$")
_CLOCK_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2})(?:\.\d+)?)?$")
_NUMERIC_RE = re.compile(r"^-?\d+(?:\.\d*)?$")
_GUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# entries kept as-is while converting
_SKIP_KEYS = ("__metadata", "__deferred")

_INTEGER_TYPES = ("byte", "sbyte", "int16", "int32", "int64")
_FLOAT_TYPES = ("single", "double")


def _iso_utc(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%S") + f".{dt.microsecond // 1000:03d}Z"


def convert_sap_date(value: Any) -> Optional[str]:
    """
    ``/Date(ms)/`` or ``/Date(ms+offset)/`` as an ISO-8601 UTC string.

    The offset is informational only; the milliseconds are already UTC.
    Returns None for anything else.

    Examples
    --------
    >>> convert_sap_date("/Date(1507248000000)/")
    '2017-10-06T00:00:00.000Z'
    >>> convert_sap_date("/Date(1508418010083+0000)/")
    '2017-10-19T13:00:10.083Z'
    """
    if not isinstance(value, str):
        return None
    m = _SAP_DATE_RE.match(value)
    if not m:
        return None
    return _iso_utc(_EPOCH + timedelta(milliseconds=int(m.group(1))))


def convert_sap_time(value: Any) -> Optional[str]:
    """
    ``PT14H30M00S`` style durations as ``HH:MM:SS``.

    Every component is optional (``PT5M`` is ``00:05:00``). Fractional
    seconds are truncated. Values beyond one day give None.

    Examples
    --------
    >>> convert_sap_time("PT14H30M00S"), convert_sap_time("PT2H"), convert_sap_time("PT30S")
    ('14:30:00', '02:00:00', '00:00:30')
    """
    if not isinstance(value, str) or value == "PT":
        return None
    m = _SAP_TIME_RE.match(value)
    if not m:
        return None
    hours = int(m.group(1) or 0)
    minutes = int(m.group(2) or 0)
    seconds = float(m.group(3) or 0)
    if hours > 23 or minutes > 59 or seconds >= 60:
        return None
    return f"{hours:02d}:{minutes:02d}:{int(seconds):02d}"


def convert_value(value: Any) -> Any:
    """
    Recursively convert SAP dates and times in a decoded response.

    Numeric strings are left alone: without $metadata a "0000004711"
    document number cannot be told apart from an amount. Use
    :func:`convert_entity` with property types for those.
    """
    if isinstance(value, list):
        return [convert_value(v) for v in value]
    if isinstance(value, dict):
        return {k: v if k in _SKIP_KEYS else convert_value(v) for k, v in value.items()}
    if isinstance(value, str):
        if value.startswith("/Date("):
            converted = convert_sap_date(value)
            return converted if converted is not None else value
        if value.startswith("PT"):
            converted = convert_sap_time(value)
            return converted if converted is not None else value
    return value


def _edm(edm_type: Optional[str]) -> str:
    return (edm_type or "").lower().replace("edm.", "")


def _convert_typed(value: Any, edm_type: str) -> Any:
    kind = _edm(edm_type)
    if not isinstance(value, str):
        return convert_value(value)
    if kind in ("datetime", "datetimeoffset"):
        converted = convert_sap_date(value)
        return converted if converted is not None else value
    if kind == "time":
        converted = convert_sap_time(value)
        return converted if converted is not None else value
    if kind in ("decimal",) + _FLOAT_TYPES and _NUMERIC_RE.match(value.strip()):
        return float(value)
    if kind in _INTEGER_TYPES and re.match(r"^-?\d+$", value.strip()):
        return int(value)
    return value


def convert_entity(entity: Any, property_types: Mapping[str, str]) -> Any:
    """
    Convert one entity (or a list of them) using $metadata property types.

    Parameters
    ----------
    entity : dict or list of dict
        Decoded entity records
    property_types : dict
        Property name to EDM type, e.g. ``{"TotalNetAmount": "Edm.Decimal"}``

    Returns
    -------
    dict or list of dict
        Copy with typed properties converted; Edm.String values are never
        touched, untyped and nested values get :func:`convert_value`

    Examples
    --------
    >>> convert_entity(
    ...     {"SalesOrder": "0000004711", "TotalNetAmount": "175.50", "CreationDate": "/Date(1507248000000)/"},
    ...     {"SalesOrder": "Edm.String", "TotalNetAmount": "Edm.Decimal", "CreationDate": "Edm.DateTime"},
    ... )
    {'SalesOrder': '0000004711', 'TotalNetAmount': 175.5, 'CreationDate': '2017-10-06T00:00:00.000Z'}
    """
    if isinstance(entity, list):
        return [convert_entity(e, property_types) for e in entity]
    if not isinstance(entity, dict):
        return convert_value(entity)

    out: Dict[str, Any] = {}
    for key, value in entity.items():
        if key in _SKIP_KEYS:
            out[key] = value
        elif key in property_types:
            edm_type = property_types[key]
            out[key] = value if _edm(edm_type) == "string" else _convert_typed(value, edm_type)
        else:
            out[key] = convert_value(value)
    return out


# ---------------- request literals ----------------

def _strip_zone(text: str) -> str:
    text = re.sub(r"\.\d+Z$", "", text)
    text = re.sub(r"Z$", "", text)
    return re.sub(r"[+-]\d{2}:\d{2}$", "", text)


def _datetime_text(value: Any) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat(timespec="seconds")
    if isinstance(value, date):
        return f"{value.isoformat()}T00:00:00"
    return _strip_zone(str(value).strip())


def _offset_text(value: Any) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        text = value.isoformat(timespec="seconds")
        return text[:-6] + "Z" if text.endswith("+00:00") else text
    return str(value).strip()


def _duration_text(value: Any) -> str:
    if isinstance(value, time):
        return f"PT{value.hour:02d}H{value.minute:02d}M{value.second:02d}S"
    if isinstance(value, timedelta):
        total = int(value.total_seconds())
        return f"PT{total // 3600:02d}H{total % 3600 // 60:02d}M{total % 60:02d}S"
    text = str(value).strip()
    if text.startswith("PT"):
        return text
    if "T" in text:
        text = _strip_zone(text.split("T", 1)[1])
    m = _CLOCK_RE.match(text)
    if not m:
        raise ValidationError(f"Invalid Edm.Time value {value!r}; expected HH:MM[:SS] or PTnHnMnS")
    return f"PT{int(m.group(1)):02d}H{m.group(2)}M{m.group(3) or '00'}S"


def _number_text(value: Any, edm_type: str) -> str:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal, str)):
        raise ValidationError(f"Invalid {edm_type} value {value!r}")
    text = str(value).strip()
    if not _NUMERIC_RE.match(text) and not re.match(r"^-?\d+(?:\.\d+)?[eE][+-]?\d+$", text):
        raise ValidationError(f"Invalid {edm_type} value {value!r}")
    return text


def format_typed_literal(value: Any, edm_type: Optional[str] = None) -> str:
    """
    Render ``value`` as an OData V2 URI literal of ``edm_type``.

    Parameters
    ----------
    value : Any
        Python value; strings are taken as already in the target format
    edm_type : str, optional
        EDM type such as "Edm.Guid" (the ``Edm.`` prefix is optional).
        Without a type, booleans and numbers render bare and everything
        else as a quoted string.

    Returns
    -------
    str
        The literal, e.g. ``guid'...'`` or ``'O''Brien'``

    Raises
    ------
    ValidationError
        If the value does not fit the type, or the type is unknown

    Examples
    --------
    >>> format_typed_literal("0050569A-1B2C-1EDB-8C8D-123456789ABC", "Edm.Guid")
    "guid'0050569a-1b2c-1edb-8c8d-123456789abc'"
    >>> format_typed_literal("2024-01-15T10:30:00.000Z", "Edm.DateTime")
    "datetime'2024-01-15T10:30:00'"
    >>> format_typed_literal("12.30", "Edm.Decimal")
    '12.30M'
    >>> format_typed_literal("14:30", "Edm.Time")
    "time'PT14H30M00S'"
    """
    if value is None:
        return "null"
    kind = _edm(edm_type)

    if not kind:
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, (int, float, Decimal)):
            return str(value)
        if isinstance(value, datetime):
            return f"datetime'{_datetime_text(value)}'"
        kind = "string"

    if kind == "string":
        return "'" + str(value).replace("'", "''") + "'"
    if kind == "boolean":
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower()
        if not isinstance(value, bool):
            raise ValidationError(f"Invalid Edm.Boolean value {value!r}")
        return "true" if value else "false"
    if kind == "guid":
        text = str(value).strip()
        if not _GUID_RE.match(text):
            raise ValidationError(f"Invalid Edm.Guid value {value!r}")
        return f"guid'{text.lower()}'"
    if kind == "datetime":
        return f"datetime'{_datetime_text(value)}'"
    if kind == "datetimeoffset":
        return f"datetimeoffset'{_offset_text(value)}'"
    if kind == "time":
        return f"time'{_duration_text(value)}'"
    if kind == "date":
        return value.isoformat() if isinstance(value, date) else str(value).strip()
    if kind == "timeofday":
        return value.isoformat() if isinstance(value, time) else str(value).strip()
    if kind == "decimal":
        return f"{_number_text(value, 'Edm.Decimal')}M"
    if kind in _INTEGER_TYPES:
        text = _number_text(value, f"Edm.{kind}")
        if not re.match(r"^-?\d+$", text):
            raise ValidationError(f"Invalid Edm.{kind} value {value!r}")
        return text
    if kind in _FLOAT_TYPES:
        return _number_text(value, f"Edm.{kind}")
    raise ValidationError(f"No URI literal format for type {edm_type!r}")


def format_typed_key(key: Any, key_types: Mapping[str, str]) -> str:
    """
    Key predicate for ``EntitySet(...)`` using the key properties' types.

    A scalar key needs exactly one key property. A mapping is rendered in
    the order given; properties missing from ``key_types`` are strings.

    Examples
    --------
    >>> format_typed_key("0050569a-1b2c-1edb-8c8d-123456789abc", {"NodeID": "Edm.Guid"})
    "guid'0050569a-1b2c-1edb-8c8d-123456789abc'"
    >>> format_typed_key({"SalesOrder": "1", "Item": 10}, {"SalesOrder": "Edm.String", "Item": "Edm.Int32"})
    "SalesOrder='1',Item=10"
    """
    if isinstance(key, Mapping):
        return ",".join(f"{k}={format_typed_literal(v, key_types.get(k, 'Edm.String'))}" for k, v in key.items())
    if len(key_types) != 1:
        raise ValidationError(
            f"Entity has {len(key_types)} key properties; pass the key as a mapping"
        )
    edm_type = next(iter(key_types.values()))
    return format_typed_literal(key, edm_type)


def build_typed_filter(filters: Mapping[str, Any], property_types: Mapping[str, str]) -> str:
    """
    ``and``-joined equality filter with literals typed from $metadata.

    None and empty-string values are skipped; unknown properties fall back
    to untyped literals.

    Examples
    --------
    >>> build_typed_filter(
    ...     {"CreationDate": "2024-01-15T00:00:00Z", "SalesOrderType": "OR"},
    ...     {"CreationDate": "Edm.DateTime", "SalesOrderType": "Edm.String"},
    ... )
    "CreationDate eq datetime'2024-01-15T00:00:00' and SalesOrderType eq 'OR'"
    """
    parts = []
    for name, value in filters.items():
        if value is None or value == "":
            continue
        if isinstance(value, (dict, list, tuple, set)):
            raise ValidationError(
                f"Invalid filter value type for key '{name}': objects and arrays are not "
                "supported in OData filters. Use primitive values (string, number, boolean) only."
            )
        parts.append(f"{name} eq {format_typed_literal(value, property_types.get(name))}")
    return " and ".join(parts)
