# featureinfo/core/federation/resolver.py
"""
RESOLVER MODULE - Work out which class an identifier is an instance of

Every graph-store endpoint gets the same query concurrently. The merge is
content-deterministic: the lexicographically smallest class wins no matter
which endpoint answered first.

    all endpoints failed (or none)         → ERROR
    some answered, union of classes empty  → NO_MATCH
    union non-empty                        → MATCHED(min(union))
"""

import logging
from typing import Set

from featureinfo.core.errors import QueryExecutionError
from featureinfo.core.federation.registry import RegistryView
from featureinfo.core.federation.sparql import QueryExecutor, bind_template, fan_out, find_field
from featureinfo.core.schemas import EndpointKind, ResolutionResult

logger = logging.getLogger(__name__)

CLASS_QUERY = "SELECT DISTINCT ?class WHERE { <[IRI]> a ?class . }"


class ClassResolver:
    def __init__(self, executor: QueryExecutor, query_timeout: float = 10.0):
        self.executor = executor
        self.query_timeout = query_timeout

    async def resolve(self, identifier: str, view: RegistryView) -> ResolutionResult:
        endpoints = view.endpoints(EndpointKind.GRAPH_STORE)
        if not endpoints:
            return ResolutionResult.error("No graph-store endpoints are known")

        try:
            query = bind_template(CLASS_QUERY, identifier)
        except QueryExecutionError as error:
            return ResolutionResult.error(str(error))

        answers = await fan_out(self.executor, endpoints, query, self.query_timeout)
        succeeded = [answer for answer in answers if answer.ok]

        if not succeeded:
            logger.error(f"None of {len(endpoints)} endpoints could determine classes")
            return ResolutionResult.error("Could not contact endpoints to determine class names")

        classes: Set[str] = set()
        for answer in succeeded:
            for row in answer.rows or []:
                class_id = find_field("class", row)
                if class_id:
                    classes.add(str(class_id))

        if not classes:
            logger.info(
                f"{len(succeeded)}/{len(endpoints)} endpoints answered, but no classes found"
            )
            return ResolutionResult.no_match()

        class_match = min(classes)
        if len(classes) > 1:
            logger.info(f"Multiple classes found {sorted(classes)}, picked {class_match}")
        logger.info(f"Discovered class match is: {class_match}")
        return ResolutionResult.matched(class_match)
