"""Fakes for the graph stores, stack services and time-series store."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from featureinfo.core.errors import DiscoveryError
from featureinfo.core.federation.registry import RegistrySnapshot, RegistryView
from featureinfo.core.schemas import ClassQueryTemplate, Endpoint, EndpointKind

ASSET = "urn:asset:1"
SENSOR = "https://example.org/ontology/Sensor"
NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

META_QUERY = "SELECT ?Property ?Value ?Unit WHERE { <[IRI]> ?p ?o } # meta"
TIME_QUERY = "SELECT ?Measurement ?Name ?Unit WHERE { <[IRI]> ?p ?m } # time"


def graph_endpoint(name: str) -> Endpoint:
    return Endpoint(
        id=name,
        url=f"http://blazegraph/blazegraph/namespace/{name}/sparql",
        kind=EndpointKind.GRAPH_STORE,
    )


MAPPER = Endpoint(id="ONTOP", url="http://ontop/sparql", kind=EndpointKind.VIRTUAL_MAPPER)
POSTGRES = Endpoint(
    id="POSTGRES",
    url="postgresql+asyncpg://postgis:5432/postgres",
    kind=EndpointKind.RELATIONAL_STORE,
)


class Slow:
    """Answer that only arrives after a delay."""

    def __init__(self, seconds: float, rows: Any = None):
        self.seconds = seconds
        self.rows = rows or []


def kind_of(query: str) -> str:
    if "?class" in query:
        return "class"
    if "ontop_url" in query:
        return "ontop"
    if "# meta" in query:
        return "meta"
    if "# time" in query:
        return "time"
    return "other"


class FakeExecutor:
    """
    In-process stand-in for the SPARQL client.

    answers: {endpoint id: {query kind: rows | Exception | Slow}}
    """

    def __init__(self, answers: Optional[Dict[str, Dict[str, Any]]] = None):
        self.answers = answers or {}
        self.calls: List[tuple] = []

    async def query(self, endpoint: Endpoint, query: str) -> List[Dict[str, Any]]:
        kind = kind_of(query)
        self.calls.append((endpoint.id, kind, query))
        answer = self.answers.get(endpoint.id, {}).get(kind, [])
        if isinstance(answer, Slow):
            await asyncio.sleep(answer.seconds)
            answer = answer.rows
        if isinstance(answer, Exception):
            raise answer
        return [dict(row) for row in answer]

    def calls_for(self, kind: str) -> List[str]:
        return [endpoint_id for endpoint_id, call_kind, _ in self.calls if call_kind == kind]


class FakeServices:
    """Stack discovery services with switchable failures."""

    def __init__(
        self,
        namespaces: Optional[Dict[str, str]] = None,
        mapper: Optional[Endpoint] = MAPPER,
        relational: Optional[Endpoint] = POSTGRES,
        fail_graph: bool = False,
        fail_mapper: bool = False,
        fail_relational: bool = False,
        delay: float = 0.0,
    ):
        self.namespaces = (
            namespaces
            if namespaces is not None
            else {name: graph_endpoint(name).url for name in ("kb", "ontology")}
        )
        self.mapper = mapper
        self.relational = relational
        self.fail_graph = fail_graph
        self.fail_mapper = fail_mapper
        self.fail_relational = fail_relational
        self.delay = delay
        self.graph_credentials = None
        self.namespace_calls = 0

    async def list_namespaces(self) -> Dict[str, str]:
        self.namespace_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_graph:
            raise DiscoveryError("graph store unreachable")
        return dict(self.namespaces)

    async def describe_virtual_mapper(self) -> Optional[Endpoint]:
        if self.fail_mapper:
            raise ConnectionError("mapper unreachable")
        return self.mapper

    async def describe_relational_store(self, database_name) -> Optional[Endpoint]:
        if self.fail_relational:
            raise DiscoveryError("relational store unreachable")
        return self.relational


class FakeStore:
    """streams: {stream id: [(timestamp, value), ...]} or an Exception."""

    def __init__(self, streams: Optional[Dict[str, Any]] = None, error: Optional[Exception] = None):
        self.streams = streams or {}
        self.error = error
        self.windows: List[tuple] = []

    async def fetch_samples(self, stream_id, start, end):
        self.windows.append((stream_id, start, end))
        if self.error is not None:
            raise self.error
        return [
            (timestamp, value)
            for timestamp, value in self.streams.get(stream_id, [])
            if start <= timestamp <= end
        ]


class FakeProvider:
    def __init__(self, store: FakeStore):
        self.store = store
        self.requested: List[Endpoint] = []

    async def store_for(self, endpoint: Endpoint) -> FakeStore:
        self.requested.append(endpoint)
        return self.store


def make_view(
    graph: Sequence[str] = ("kb", "ontology"),
    mappers=(MAPPER,),
    relational=(POSTGRES,),
) -> RegistryView:
    stores = tuple(graph_endpoint(name) for name in graph)
    snapshot = RegistrySnapshot(
        graph_stores=stores,
        virtual_mappers=tuple(mappers),
        relational_stores=tuple(relational),
        root=stores[0] if stores else None,
    )
    return RegistryView(snapshot=snapshot)


def make_templates(**overrides) -> Dict[str, ClassQueryTemplate]:
    template = ClassQueryTemplate(
        class_id=SENSOR,
        metadata_query=overrides.get("metadata_query", META_QUERY),
        timeseries_query=overrides.get("timeseries_query", TIME_QUERY),
        mapped=overrides.get("mapped", False),
    )
    return {SENSOR: template}
