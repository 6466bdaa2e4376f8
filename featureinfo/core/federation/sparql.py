# featureinfo/core/federation/sparql.py
"""
SPARQL MODULE - Run queries against graph-store and virtual-mapper endpoints

Purpose:
    1. Bind an identifier into a query template
    2. POST the query to one endpoint and flatten the JSON result bindings
    3. Fan the same query out across many endpoints, each with its own timeout

Data Flow:
    template → bind_template() → fan_out() → [query_endpoint() per endpoint] → answers
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel

from featureinfo.core.errors import QueryExecutionError
from featureinfo.core.schemas import Endpoint

logger = logging.getLogger(__name__)

IRI_PLACEHOLDER = "[IRI]"
ONTOP_PLACEHOLDER = "[ONTOP]"

# Characters that may not appear inside <...> in a SPARQL IRI reference
_ILLEGAL_IRI_CHARS = re.compile(r'[<>"{}|^`\\\x00-\x20]')

Row = Dict[str, Any]


class QueryExecutor(Protocol):
    """Anything that can run one query against one endpoint."""

    async def query(self, endpoint: Endpoint, query: str) -> List[Row]: ...


class EndpointAnswer(BaseModel):
    """Outcome of one endpoint's query: rows on success, error otherwise."""

    endpoint: Endpoint
    rows: Optional[List[Row]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ============================================================================
# STEP 1: BIND TEMPLATES
# ============================================================================


def is_valid_iri(identifier: Optional[str]) -> bool:
    """True when the identifier can be placed inside <...> without escaping."""
    if identifier is None or not identifier.strip():
        return False
    return _ILLEGAL_IRI_CHARS.search(identifier) is None


def bind_template(
    template: str, identifier: str, mapper_url: Optional[str] = None
) -> str:
    """
    Replace the placeholders of a query template.

    Args:
        template: Raw query text containing [IRI] (and optionally [ONTOP])
        identifier: Asset IRI, already validated by is_valid_iri()
        mapper_url: Virtual mapper URL for federated SERVICE clauses

    Returns:
        Query ready to send

    Example:
        "SELECT ?p ?o WHERE { <[IRI]> ?p ?o }" with "urn:asset:1"
        → "SELECT ?p ?o WHERE { <urn:asset:1> ?p ?o }"
    """
    if not is_valid_iri(identifier):
        raise QueryExecutionError(f"Refusing to bind unsafe identifier: {identifier!r}")

    query = template.replace(IRI_PLACEHOLDER, identifier)

    if ONTOP_PLACEHOLDER in query:
        if not mapper_url:
            raise QueryExecutionError(
                "Template references [ONTOP] but no virtual mapper is known"
            )
        query = query.replace(ONTOP_PLACEHOLDER, mapper_url)

    return query


def find_field(key: str, row: Row) -> Any:
    """Look a column up as written, lower case or upper case."""
    for candidate in (key, key.lower(), key.upper()):
        if candidate in row:
            return row[candidate]
    return None


# ============================================================================
# STEP 2: QUERY ONE ENDPOINT
# ============================================================================


def parse_bindings(data: Any) -> List[Row]:
    """
    Flatten a SPARQL 1.1 JSON result into plain rows.

    Columns follow the order of head.vars so that callers can rely on the
    query's own SELECT order.

    Example:
        {"head": {"vars": ["class"]},
         "results": {"bindings": [{"class": {"type": "uri", "value": "urn:Sensor"}}]}}
        → [{"class": "urn:Sensor"}]
    """
    try:
        variables = data["head"].get("vars", [])
        bindings = data["results"]["bindings"]
        rows = []
        for binding in bindings:
            ordered = [var for var in variables if var in binding]
            ordered += [var for var in binding if var not in variables]
            rows.append({var: binding[var]["value"] for var in ordered})
        return rows
    except (KeyError, TypeError, AttributeError) as error:
        raise QueryExecutionError(f"Endpoint returned malformed results: {error}") from error


class SparqlClient:
    """
    Executes SPARQL over HTTP with a shared, pooled httpx client.

    Usage:
        async with httpx.AsyncClient() as http:
            rows = await SparqlClient(http).query(endpoint, "SELECT ...")
    """

    def __init__(self, http: httpx.AsyncClient):
        self.http = http

    async def query(self, endpoint: Endpoint, query: str) -> List[Row]:
        auth = None
        if endpoint.credentials is not None:
            auth = httpx.BasicAuth(
                endpoint.credentials.user, endpoint.credentials.secret or ""
            )

        try:
            response = await self.http.post(
                endpoint.url,
                data={"query": query},
                headers={"Accept": "application/sparql-results+json"},
                auth=auth,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as error:
            raise QueryExecutionError(
                f"Query against {endpoint.url} failed: {error}"
            ) from error
        except ValueError as error:
            raise QueryExecutionError(
                f"Endpoint {endpoint.url} did not return JSON: {error}"
            ) from error

        return parse_bindings(data)


# ============================================================================
# STEP 3: FAN OUT
# ============================================================================


async def query_endpoint(
    executor: QueryExecutor, endpoint: Endpoint, query: str, timeout: float
) -> EndpointAnswer:
    """
    Run one query under its own timeout and capture the outcome.
    A failure here is recorded on the answer and never raised, so one bad
    endpoint cannot affect its siblings.
    """
    try:
        rows = await asyncio.wait_for(executor.query(endpoint, query), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Endpoint {endpoint.id} timed out after {timeout}s")
        return EndpointAnswer(endpoint=endpoint, error="timed out")
    except QueryExecutionError as error:
        logger.warning(f"Endpoint {endpoint.id} failed: {error}")
        return EndpointAnswer(endpoint=endpoint, error=str(error))
    except Exception as error:
        logger.exception(f"Unexpected failure querying endpoint {endpoint.id}")
        return EndpointAnswer(endpoint=endpoint, error=repr(error))

    return EndpointAnswer(endpoint=endpoint, rows=rows)


async def fan_out(
    executor: QueryExecutor,
    endpoints: Sequence[Endpoint],
    query: str,
    timeout: float,
) -> List[EndpointAnswer]:
    """
    Send the same query to every endpoint concurrently.

    Returns:
        One answer per endpoint, in the order the endpoints were given
    """
    if not endpoints:
        return []

    answers = await asyncio.gather(
        *(query_endpoint(executor, endpoint, query, timeout) for endpoint in endpoints)
    )
    return list(answers)
