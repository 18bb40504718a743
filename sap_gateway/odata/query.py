"""
sap_gateway.odata.query - OData query option helpers
=====================================================

Build and validate ``$filter`` / ``$select`` / ``$expand`` ... options and
pull entity-set / function-import names out of $metadata.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence, Union
from urllib.parse import quote, unquote
import re
import unicodedata

from sap_gateway.core.errors import ValidationError


def escape_odata_string(value: str) -> str:
    """
    Escape a string value for use in OData $filter expressions.

    Parameters
    ----------
    value : str
        The value to escape

    Returns
    -------
    str
        Escaped value safe for OData filters

    Examples
    --------
    >>> escape_odata_string("O'Brien")
    "O''Brien"
    """
    return value.replace("'", "''")


def _join_csv(items: Sequence[str]) -> str:
    """Join items as comma-separated values, stripping whitespace."""
    return ",".join([s.strip() for s in items if s and s.strip()])


def _filter_literal(key: str, value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value) if isinstance(value, float) else str(value)
    if isinstance(value, str):
        return f"'{escape_odata_string(value)}'"
    raise ValidationError(
        f"Invalid filter value type for key '{key}': objects and arrays are not "
        "supported in OData filters. Use primitive values (string, number, boolean) only."
    )


def format_literal(value: Any, name: str = "value") -> str:
    """
    Render a primitive as an OData URI literal.

    Examples
    --------
    >>> format_literal("A'B"), format_literal(True), format_literal(7)
    ("'A''B'", 'true', '7')
    """
    return _filter_literal(name, value)


def build_odata_filter(filters: Mapping[str, Any]) -> str:
    """
    Build an ``and``-joined equality filter.

    None and empty-string values are skipped.

    Examples
    --------
    >>> build_odata_filter({"Name": "O'Brien", "Active": True, "Qty": 5})
    "Name eq 'O''Brien' and Active eq true and Qty eq 5"

    Raises
    ------
    ValidationError
        If a value is a dict, list or any other non-primitive
    """
    parts = []
    for key, value in filters.items():
        if value is None or value == "":
            continue
        parts.append(f"{key} eq {_filter_literal(key, value)}")
    return " and ".join(parts)


def normalize_odata_options(options: Mapping[str, Any]) -> Dict[str, Any]:
    """Prefix option names with ``$`` where missing; drop empty values."""
    out: Dict[str, Any] = {}
    for key, value in options.items():
        if value is None or value == "":
            continue
        out[key if key.startswith("$") else f"${key}"] = value
    return out


_DANGEROUS_PATTERNS = [re.compile(p, re.I) for p in (
    r"javascript\s*:",
    r"<\s*script",
    r"<\s*/\s*script",
    r"\bon\w+\s*=",
    r"eval\s*\(",
    r"expression\s*\(",
    r"Function\s*\(",
    r"setTimeout\s*\(",
    r"setInterval\s*\(",
    r"new\s+Function",
    r"document\s*\.",
    r"window\s*\.",
    r"innerHTML",
    r"outerHTML",
    r"data\s*:",
    r"vbscript\s*:",
)]

_SQL_PATTERNS = [
    re.compile(r";\s*(DROP|DELETE|INSERT|UPDATE|TRUNCATE|ALTER|CREATE)\s", re.I),
    re.compile(r"--\s*$", re.M),
    re.compile(r"/\*.*\*/", re.S),
    re.compile(r"UNION\s+SELECT", re.I),
    re.compile(r"EXEC\s*\(", re.I),
    re.compile(r"xp_cmdshell", re.I),
]


def _parens_balanced(text: str) -> bool:
    depth = 0
    in_string = False
    for ch in text:
        if ch == "'":
            in_string = not in_string
        elif not in_string:
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth < 0:
                    return False
    return depth == 0


def validate_odata_filter(expr: str) -> str:
    """
    Reject filters carrying script, SQL-injection patterns or unbalanced
    parentheses. Returns the filter unchanged when it is acceptable.
    """
    normalized = unicodedata.normalize("NFC", expr)
    decoded = unquote(normalized)
    for pattern in _DANGEROUS_PATTERNS:
        if pattern.search(normalized) or pattern.search(decoded):
            raise ValidationError("Invalid filter: contains potentially dangerous content")
    for pattern in _SQL_PATTERNS:
        if pattern.search(normalized) or pattern.search(decoded):
            raise ValidationError("Invalid filter: contains SQL injection patterns")
    if not _parens_balanced(decoded):
        raise ValidationError("Invalid filter: unbalanced parentheses")
    return expr


def build_odata_query(options: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Canonical query-parameter dict from loosely-specified options.

    Accepts ``filter``/``$filter`` style keys, list or string values for
    ``$select``/``$expand``, and validates ``$filter``.

    Examples
    --------
    >>> build_odata_query({"select": ["ID", "Name"], "top": 10})
    {'$select': 'ID,Name', '$top': 10}
    """
    opts = normalize_odata_options(options)
    query: Dict[str, Any] = {}
    if "$filter" in opts:
        query["$filter"] = validate_odata_filter(str(opts["$filter"]))
    for key in ("$select", "$expand"):
        if key in opts:
            value = opts[key]
            query[key] = _join_csv(value) if isinstance(value, (list, tuple)) else value
    for key in ("$orderby", "$top", "$skip", "$count", "$inlinecount", "$search", "$apply", "$format"):
        if key in opts:
            query[key] = opts[key]
    return query


def build_encoded_query_string(params: Mapping[str, Any], separator: str = "&") -> str:
    """
    Percent-encode ``params`` into a query string, skipping empty values.

    Examples
    --------
    >>> build_encoded_query_string({"$filter": "Name eq 'A B'", "$top": 5})
    '%24filter=Name%20eq%20%27A%20B%27&%24top=5'
    """
    parts = []
    for key, value in params.items():
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            value = "true" if value else "false"
        parts.append(f"{quote(str(key), safe='')}={quote(str(value), safe='')}")
    return separator.join(parts)


_ENTITY_SET_NAME_RE = re.compile(r"<(?:\w+:)?EntitySet\s+Name=\"([^\"]+)\"")
_FUNCTION_IMPORT_RE = re.compile(r"<(?:\w+:)?FunctionImport\s+Name=\"([^\"]+)\"")


def parse_metadata_for_entity_sets(metadata_xml: str) -> List[str]:
    """Sorted entity-set names declared in a $metadata document."""
    return sorted(_ENTITY_SET_NAME_RE.findall(metadata_xml or ""))


def parse_metadata_for_function_imports(metadata_xml: str) -> List[str]:
    """Sorted function-import names declared in a $metadata document."""
    return sorted(_FUNCTION_IMPORT_RE.findall(metadata_xml or ""))


_QUOTED_LITERAL_RE = re.compile(r"^\w*'.*'$", re.S)
_NAMED_KEY_RE = re.compile(r"^\w+\s*=")


def format_key(key: Union[str, int, Mapping[str, Any]]) -> str:
    """
    Render an entity key for use inside ``EntitySet(...)``.

    Examples
    --------
    >>> format_key("4711")
    "'4711'"
    >>> format_key(42)
    '42'
    >>> format_key({"SalesOrder": "1", "Item": "10"})
    "SalesOrder='1',Item='10'"
    """
    if isinstance(key, Mapping):
        return ",".join(f"{k}={_filter_literal(k, v)}" for k, v in key.items())
    if isinstance(key, str):
        stripped = key.strip()
        # already an OData literal, e.g. guid'...' or 'A1' or Key='x'
        if _QUOTED_LITERAL_RE.match(stripped) or _NAMED_KEY_RE.match(stripped):
            return stripped
        return f"'{escape_odata_string(stripped)}'"
    return _filter_literal("key", key)


_NAV_SEGMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def parse_navigation_path(path: str) -> List[str]:
    """
    Split and check a navigation path such as ``to_Item/to_Product``.

    Raises
    ------
    ValidationError
        If the path is empty or a segment is not a plain identifier
    """
    segments = [s.strip() for s in (path or "").split("/") if s.strip()]
    if not segments:
        raise ValidationError("Navigation path cannot be empty")
    for segment in segments:
        if not _NAV_SEGMENT_RE.match(segment):
            raise ValidationError(
                f"Invalid navigation segment: {segment}. Must start with letter/underscore "
                "and contain only alphanumeric characters."
            )
    return segments

