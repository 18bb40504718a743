"""
sap_gateway.odata.metadata - OData $metadata parsing
=====================================================

Lightweight $metadata parser for OData v2 services.

The parser scans tags with regular expressions instead of building a DOM:
SAP metadata documents can be several megabytes and only a handful of
elements (EntityType, EntitySet, Association) matter here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging
import re

from sap_gateway.core.errors import ProtocolDecodeError

logger = logging.getLogger("sap_gateway.metadata")


@dataclass
class EntityProperty:
    """
    A structural property of an entity type.

    Attributes
    ----------
    name : str
        Property name
    type : str
        EDM type, e.g. "Edm.String"
    nullable : bool
        False when the property is declared ``Nullable="false"``
    max_length, precision, scale : str, optional
        Facets as declared
    is_key : bool
        Part of the entity key
    """
    name: str
    type: str
    nullable: bool = True
    max_length: Optional[str] = None
    precision: Optional[str] = None
    scale: Optional[str] = None
    is_key: bool = False


@dataclass
class NavigationProperty:
    name: str
    relationship: str
    to_role: str
    from_role: str
    target_entity_type: Optional[str] = None


@dataclass
class EntityType:
    name: str
    properties: List[EntityProperty] = field(default_factory=list)
    navigation_properties: List[NavigationProperty] = field(default_factory=list)
    keys: List[str] = field(default_factory=list)

    def property_names(self) -> List[str]:
        return [p.name for p in self.properties]

    def get_property(self, name: str) -> Optional[EntityProperty]:
        for p in self.properties:
            if p.name == name:
                return p
        return None


@dataclass
class EntitySet:
    name: str
    entity_type: str


@dataclass
class AssociationEnd:
    role: str
    type: str
    multiplicity: Optional[str] = None


@dataclass
class Association:
    name: str
    ends: List[AssociationEnd] = field(default_factory=list)


@dataclass
class ParsedMetadata:
    """
    Entity model extracted from a $metadata document.

    Every ``entity_sets[x].entity_type`` is a key of ``entity_types``.
    """
    entity_types: Dict[str, EntityType] = field(default_factory=dict)
    entity_sets: Dict[str, EntitySet] = field(default_factory=dict)
    associations: Dict[str, Association] = field(default_factory=dict)

    def entity_type_for_set(self, entity_set: str) -> Optional[EntityType]:
        es = self.entity_sets.get(entity_set)
        return self.entity_types.get(es.entity_type) if es else None

    def property_names(self, entity_set: str) -> List[str]:
        et = self.entity_type_for_set(entity_set)
        return et.property_names() if et else []


# ---------------------------------------------------------------------------
# Tag scanning helpers
# ---------------------------------------------------------------------------

_TAG_CACHE: Dict[str, "re.Pattern[str]"] = {}


def _tag_pattern(tag: str) -> "re.Pattern[str]":
    pattern = _TAG_CACHE.get(tag)
    if pattern is None:
        pattern = re.compile(
            rf"<(?:\w+:)?{tag}\b([^>]*?)(?:/>|>(.*?)</(?:\w+:)?{tag}\s*>)",
            re.S | re.I,
        )
        _TAG_CACHE[tag] = pattern
    return pattern


def extract_tags(xml: str, tag: str) -> List[str]:
    """Return every ``<tag ...>`` element (self-closing or paired) as raw text."""
    return [m.group(0) for m in _tag_pattern(tag).finditer(xml)]


def _inner(element: str, tag: str) -> str:
    m = _tag_pattern(tag).match(element)
    return (m.group(2) or "") if m else ""


def extract_attribute(element: str, name: str) -> Optional[str]:
    """Value of attribute ``name`` on the element's opening tag."""
    head = element.split(">", 1)[0]
    m = re.search(rf"(?:^|\s)(?:\w+:)?{name}\s*=\s*([\"'])(.*?)\1", head, re.I | re.S)
    return m.group(2) if m else None


def strip_namespace(qualified_name: str) -> str:
    """``"API_X.A_SalesOrderType"`` -> ``"A_SalesOrderType"``."""
    return qualified_name.rsplit(".", 1)[-1]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def _parse_entity_types(xml: str) -> Dict[str, EntityType]:
    out: Dict[str, EntityType] = {}
    for element in extract_tags(xml, "EntityType"):
        name = extract_attribute(element, "Name")
        if not name:
            continue
        body = _inner(element, "EntityType")

        keys: List[str] = []
        for key_el in extract_tags(body, "Key"):
            for ref in extract_tags(_inner(key_el, "Key"), "PropertyRef"):
                key_name = extract_attribute(ref, "Name")
                if key_name:
                    keys.append(key_name)

        props: List[EntityProperty] = []
        for prop in extract_tags(body, "Property"):
            pname = extract_attribute(prop, "Name")
            ptype = extract_attribute(prop, "Type")
            if not pname or not ptype:
                continue
            props.append(EntityProperty(
                name=pname,
                type=ptype,
                nullable=(extract_attribute(prop, "Nullable") or "true").lower() != "false",
                max_length=extract_attribute(prop, "MaxLength"),
                precision=extract_attribute(prop, "Precision"),
                scale=extract_attribute(prop, "Scale"),
                is_key=pname in keys,
            ))

        navs: List[NavigationProperty] = []
        for nav in extract_tags(body, "NavigationProperty"):
            nname = extract_attribute(nav, "Name")
            rel = extract_attribute(nav, "Relationship")
            to_role = extract_attribute(nav, "ToRole")
            from_role = extract_attribute(nav, "FromRole")
            if nname and rel and to_role and from_role:
                navs.append(NavigationProperty(nname, rel, to_role, from_role))

        out[name] = EntityType(name=name, properties=props, navigation_properties=navs, keys=keys)
    return out


def _parse_entity_sets(xml: str, entity_types: Dict[str, EntityType]) -> Dict[str, EntitySet]:
    out: Dict[str, EntitySet] = {}
    for container in extract_tags(xml, "EntityContainer"):
        for element in extract_tags(_inner(container, "EntityContainer"), "EntitySet"):
            name = extract_attribute(element, "Name")
            et = extract_attribute(element, "EntityType")
            if not name or not et:
                continue
            et_name = strip_namespace(et)
            if et_name not in entity_types:
                logger.debug("Dropping entity set %s: unknown entity type %s", name, et)
                continue
            out[name] = EntitySet(name=name, entity_type=et_name)
    return out


def _parse_associations(xml: str) -> Dict[str, Association]:
    out: Dict[str, Association] = {}
    for element in extract_tags(xml, "Association"):
        name = extract_attribute(element, "Name")
        if not name:
            continue
        ends = []
        for end in extract_tags(_inner(element, "Association"), "End"):
            role = extract_attribute(end, "Role")
            etype = extract_attribute(end, "Type")
            if role and etype:
                ends.append(AssociationEnd(role, strip_namespace(etype), extract_attribute(end, "Multiplicity")))
        out[name] = Association(name=name, ends=ends)
    return out


def _resolve_navigation_targets(
    entity_types: Dict[str, EntityType],
    associations: Dict[str, Association],
) -> None:
    for et in entity_types.values():
        for nav in et.navigation_properties:
            assoc = associations.get(strip_namespace(nav.relationship))
            if assoc is None:
                continue
            for end in assoc.ends:
                if end.role == nav.to_role:
                    nav.target_entity_type = end.type
                    break


def parse_metadata(xml: str) -> ParsedMetadata:
    """
    Parse a $metadata document.

    Parameters
    ----------
    xml : str
        Raw $metadata XML

    Returns
    -------
    ParsedMetadata
        Entity types, entity sets and associations

    Raises
    ------
    ProtocolDecodeError
        If the document contains no ``Schema`` element

    Examples
    --------
    >>> meta = parse_metadata(xml_text)
    >>> meta.entity_types["Order"].keys
    ['ID']
    """
    if not isinstance(xml, str) or not re.search(r"<(?:\w+:)?Schema\b", xml):
        raise ProtocolDecodeError("Failed to parse metadata: no Schema element found")

    entity_types = _parse_entity_types(xml)
    associations = _parse_associations(xml)
    _resolve_navigation_targets(entity_types, associations)
    entity_sets = _parse_entity_sets(xml, entity_types)
    return ParsedMetadata(entity_types=entity_types, entity_sets=entity_sets, associations=associations)


_DISPLAY_TYPES = {
    "Edm.String": "String",
    "Edm.Int16": "Integer",
    "Edm.Int32": "Integer",
    "Edm.Int64": "Long Integer",
    "Edm.Decimal": "Decimal",
    "Edm.Double": "Number",
    "Edm.Single": "Number",
    "Edm.Boolean": "Boolean",
    "Edm.DateTime": "DateTime",
    "Edm.DateTimeOffset": "DateTimeOffset",
    "Edm.Date": "Date",
    "Edm.TimeOfDay": "Time",
    "Edm.Time": "Time",
    "Edm.Guid": "GUID",
    "Edm.Binary": "Binary",
    "Edm.Byte": "Byte",
}


def display_type(edm_type: str) -> str:
    return _DISPLAY_TYPES.get(edm_type, edm_type)


def field_description(prop: EntityProperty) -> str:
    """
    One-line human description, e.g. ``"String · (Key) · Required · Max: 10"``.
    """
    parts = [display_type(prop.type)]
    if prop.is_key:
        parts.append("(Key)")
    if not prop.nullable:
        parts.append("Required")
    if prop.max_length and prop.max_length != "Max":
        parts.append(f"Max: {prop.max_length}")
    if prop.precision:
        parts.append(f"Precision: {prop.precision}")
    if prop.scale:
        parts.append(f"Scale: {prop.scale}")
    return " · ".join(parts)
