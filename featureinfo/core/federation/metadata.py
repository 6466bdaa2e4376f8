# featureinfo/core/federation/metadata.py
"""
METADATA MODULE - Gather descriptive properties of an asset

Purpose:
    1. Bind the class's metadata template to the identifier
    2. Run it on every graph-store endpoint (plus virtual mappers for mapped classes)
    3. Normalize rows into ordered property groups
    4. Drop property/value pairs already returned by an earlier endpoint

Row conventions:
    Property | Value | Unit   → one group per endpoint, {"Height": "10 m"}
    anything else           → one group per row, {column: value}
"""

import logging
from typing import Any, Dict, List, Mapping, Set, Tuple

from featureinfo.core.errors import NotConfigured, QueryExecutionError
from featureinfo.core.federation.registry import RegistryView
from featureinfo.core.federation.sparql import (
    EndpointAnswer,
    QueryExecutor,
    Row,
    bind_template,
    fan_out,
    find_field,
)
from featureinfo.core.schemas import ClassQueryTemplate, EndpointKind

logger = logging.getLogger(__name__)

PropertyGroup = Dict[str, Any]


def _is_property_rows(rows: List[Row]) -> bool:
    return all(
        find_field("Property", row) is not None and find_field("Value", row) is not None
        for row in rows
    )


def _add_value(group: PropertyGroup, name: str, value: Any):
    # Repeated properties collect every value in arrival order
    if name not in group:
        group[name] = value
        return
    existing = group[name]
    if isinstance(existing, list):
        if value not in existing:
            existing.append(value)
    elif existing != value:
        group[name] = [existing, value]


def normalize_rows(rows: List[Row]) -> List[PropertyGroup]:
    """
    Turn one endpoint's rows into property groups, keeping row order.

    Example:
        [{"Property": "Name", "Value": "Tower"}, {"Property": "Height", "Value": "90", "Unit": "m"}]
        → [{"Name": "Tower", "Height": "90 m"}]
    """
    if not rows:
        return []

    if _is_property_rows(rows):
        group: PropertyGroup = {}
        for row in rows:
            value = str(find_field("Value", row))
            unit = find_field("Unit", row)
            if unit:
                value = f"{value} {unit}"
            _add_value(group, str(find_field("Property", row)), value)
        return [group]

    return [dict(row) for row in rows if row]


def _pairs(value: Any) -> List[Any]:
    return value if isinstance(value, list) else [value]


def merge_groups(per_endpoint: List[List[PropertyGroup]]) -> List[PropertyGroup]:
    """
    Concatenate groups in endpoint order, removing property/value pairs that
    an earlier endpoint already produced.
    """
    seen: Set[Tuple[str, str]] = set()
    merged: List[PropertyGroup] = []

    for groups in per_endpoint:
        emitted_here: Set[Tuple[str, str]] = set()
        for group in groups:
            kept: PropertyGroup = {}
            for name, value in group.items():
                for single in _pairs(value):
                    key = (name, repr(single))
                    if key in seen:
                        continue
                    emitted_here.add(key)
                    _add_value(kept, name, single)
            if kept:
                merged.append(kept)
        # Pairs only count as duplicates across endpoints, not within one
        seen |= emitted_here

    return merged


class MetadataAggregator:
    def __init__(self, executor: QueryExecutor, query_timeout: float = 10.0):
        self.executor = executor
        self.query_timeout = query_timeout

    async def fetch(
        self,
        identifier: str,
        class_id: str,
        templates: Mapping[str, ClassQueryTemplate],
        view: RegistryView,
    ) -> List[PropertyGroup]:
        """
        Gather the metadata record for an identifier of a known class.

        Returns:
            Ordered property groups, possibly empty (no metadata is not an error)

        Raises:
            NotConfigured: class has no template
            QueryExecutionError: no endpoints, bad template, or every endpoint failed
        """
        template = templates.get(class_id)
        if template is None:
            raise NotConfigured(class_id)

        endpoints = list(view.endpoints(EndpointKind.GRAPH_STORE))
        if template.mapped:
            endpoints += list(view.endpoints(EndpointKind.VIRTUAL_MAPPER))
        if not endpoints:
            raise QueryExecutionError("No endpoints available for metadata queries")

        query = bind_template(template.metadata_query, identifier, view.mapper_url)

        answers: List[EndpointAnswer] = await fan_out(
            self.executor, endpoints, query, self.query_timeout
        )
        succeeded = [answer for answer in answers if answer.ok]
        if not succeeded:
            raise QueryExecutionError(
                f"Metadata query failed on all {len(endpoints)} endpoints"
            )

        record = merge_groups([normalize_rows(answer.rows or []) for answer in succeeded])
        logger.info(
            f"Metadata from {len(succeeded)}/{len(endpoints)} endpoints, {len(record)} groups"
        )
        return record
