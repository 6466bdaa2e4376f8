# featureinfo/core/federation/registry.py
"""
REGISTRY MODULE - Discover and cache the endpoints every request federates over

Purpose:
    1. Ask the graph store for its namespaces, one endpoint per namespace
    2. Locate the canonical root namespace (fatal if missing)
    3. Find virtual mappers: stack default + those registered in the root namespace
    4. Find the relational time-series store
    5. Publish all of it as one immutable snapshot, swapped atomically

Failure policy:
    Root namespace missing → DiscoveryError, nothing is published
    Mapper / relational discovery failing → logged, that kind is left empty
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict
from rdflib import Graph, Namespace, URIRef
from rdflib.namespace import DCTERMS
from sqlalchemy.engine import URL

from featureinfo.core.config import Settings
from featureinfo.core.errors import DiscoveryError
from featureinfo.core.federation.sparql import QueryExecutor, find_field, query_endpoint
from featureinfo.core.schemas import Credentials, Endpoint, EndpointKind

logger = logging.getLogger(__name__)

VOID = Namespace("http://rdfs.org/ns/void#")
BIGDATA_NAMESPACE = URIRef("http://www.bigdata.com/rdf#/features/KB/Namespace")

_NAMESPACE_IN_URL = re.compile(r"(?<=namespace/)([^/]+)(?=/sparql)")

# Mapper services registered in the root namespace
DEFAULT_ONTOP_QUERY = """
PREFIX dcat: <http://www.w3.org/ns/dcat#>
SELECT DISTINCT ?ontop_url WHERE {
    ?service a dcat:DataService ;
             dcat:endpointURL ?ontop_url .
    FILTER(CONTAINS(LCASE(STR(?ontop_url)), "ontop"))
}
"""


def parse_namespace_url(url: str) -> Optional[str]:
    """
    Pull the namespace name out of a graph-store SPARQL URL.

    Example:
        "http://host/blazegraph/namespace/kb/sparql" → "kb"
    """
    match = _NAMESPACE_IN_URL.search(url)
    return match.group(1) if match else None


def _ordered_unique(endpoints: List[Endpoint]) -> Tuple[Endpoint, ...]:
    seen = set()
    unique = []
    for endpoint in endpoints:
        if endpoint.url in seen:
            continue
        seen.add(endpoint.url)
        unique.append(endpoint)
    return tuple(unique)


# ============================================================================
# SNAPSHOTS
# ============================================================================


class RegistrySnapshot(BaseModel):
    """Immutable catalogue of endpoints produced by one discovery pass."""

    graph_stores: Tuple[Endpoint, ...] = ()
    virtual_mappers: Tuple[Endpoint, ...] = ()
    relational_stores: Tuple[Endpoint, ...] = ()
    root: Optional[Endpoint] = None

    model_config = ConfigDict(frozen=True)

    @property
    def is_empty(self) -> bool:
        return self.root is None and not self.graph_stores

    def endpoints(self, kind: EndpointKind) -> Tuple[Endpoint, ...]:
        return {
            EndpointKind.GRAPH_STORE: self.graph_stores,
            EndpointKind.VIRTUAL_MAPPER: self.virtual_mappers,
            EndpointKind.RELATIONAL_STORE: self.relational_stores,
        }[kind]

    def counts(self) -> Dict[str, int]:
        return {kind.value: len(self.endpoints(kind)) for kind in EndpointKind}


class RegistryView(BaseModel):
    """
    What one request sees: a snapshot, optionally with an enforced
    graph-store endpoint replacing the whole graph-store set.
    """

    snapshot: RegistrySnapshot
    enforced: Optional[Endpoint] = None

    model_config = ConfigDict(frozen=True)

    def endpoints(self, kind: EndpointKind) -> Tuple[Endpoint, ...]:
        if kind == EndpointKind.GRAPH_STORE and self.enforced is not None:
            return (self.enforced,)
        return self.snapshot.endpoints(kind)

    @property
    def relational_store(self) -> Optional[Endpoint]:
        stores = self.endpoints(EndpointKind.RELATIONAL_STORE)
        return stores[0] if stores else None

    @property
    def mapper_url(self) -> Optional[str]:
        mappers = self.endpoints(EndpointKind.VIRTUAL_MAPPER)
        return mappers[0].url if mappers else None


# ============================================================================
# STACK SERVICES (external discovery collaborators)
# ============================================================================


class StackServices:
    """
    Describes the services running in the stack.

    Graph store namespaces are read from the service itself; the virtual
    mapper and the relational store come from settings.
    """

    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self.settings = settings
        self.http = http

    @property
    def graph_credentials(self) -> Optional[Credentials]:
        if not self.settings.BLAZEGRAPH_USER:
            return None
        return Credentials(
            user=self.settings.BLAZEGRAPH_USER, secret=self.settings.BLAZEGRAPH_PASSWORD
        )

    async def list_namespaces(self) -> Dict[str, str]:
        """
        Ask the graph store for every namespace and its SPARQL URL.

        Returns:
            {namespace name: sparql url} in the order the service lists them

        Raises:
            DiscoveryError: service unreachable or listing unreadable
        """
        url = self.settings.BLAZEGRAPH_URL.rstrip("/") + "/namespace"
        auth = None
        credentials = self.graph_credentials
        if credentials is not None:
            auth = httpx.BasicAuth(credentials.user, credentials.secret or "")

        try:
            response = await self.http.get(
                url, headers={"Accept": "application/rdf+xml"}, auth=auth
            )
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as error:
            raise DiscoveryError(f"Could not contact graph store at {url}: {error}") from error

        return parse_namespace_listing(response.text)

    async def describe_virtual_mapper(self) -> Optional[Endpoint]:
        if not self.settings.ONTOP_URL:
            return None
        return Endpoint(
            id="ONTOP", url=self.settings.ONTOP_URL, kind=EndpointKind.VIRTUAL_MAPPER
        )

    async def describe_relational_store(
        self, database_name: Optional[str]
    ) -> Optional[Endpoint]:
        if not self.settings.POSTGRES_HOST:
            return None
        if not database_name:
            raise DiscoveryError("No 'database_name' setting for the relational store")

        url = URL.create(
            self.settings.POSTGRES_DRIVER,
            host=self.settings.POSTGRES_HOST,
            port=self.settings.POSTGRES_PORT,
            database=database_name,
        )
        credentials = None
        if self.settings.POSTGRES_USER:
            credentials = Credentials(
                user=self.settings.POSTGRES_USER, secret=self.settings.POSTGRES_PASSWORD
            )
        return Endpoint(
            id="POSTGRES",
            url=url.render_as_string(hide_password=False),
            kind=EndpointKind.RELATIONAL_STORE,
            credentials=credentials,
        )


def parse_namespace_listing(content: str) -> Dict[str, str]:
    """
    Read the VoID description the graph store returns for /namespace.

    Each dataset carries a void:sparqlEndpoint; its name is taken from the
    bigdata Namespace property, then dcterms:title, then the URL itself.
    """
    graph = Graph()
    try:
        graph.parse(data=content, format="xml")
    except Exception as error:
        raise DiscoveryError(f"Could not parse namespace listing: {error}") from error

    namespaces: Dict[str, str] = {}
    for dataset, endpoint_url in graph.subject_objects(VOID.sparqlEndpoint):
        url = str(endpoint_url)
        name = (
            graph.value(dataset, BIGDATA_NAMESPACE)
            or graph.value(dataset, DCTERMS.title)
            or parse_namespace_url(url)
        )
        namespaces[str(name) if name else url] = url

    # rdflib gives no ordering guarantee, sort for stable snapshots
    return dict(sorted(namespaces.items()))


# ============================================================================
# REGISTRY
# ============================================================================


class EndpointRegistry:
    """
    Process-wide endpoint catalogue.

    Readers always get a complete snapshot; discovery builds a new one and
    swaps the reference. Concurrent discover()/refresh() calls share one
    in-flight task.
    """

    def __init__(
        self,
        services: StackServices,
        executor: QueryExecutor,
        root_namespace: str = "kb",
        database_name: Optional[str] = None,
        ontop_query: str = DEFAULT_ONTOP_QUERY,
        query_timeout: float = 10.0,
    ):
        self.services = services
        self.executor = executor
        self.root_namespace = root_namespace
        self.database_name = database_name
        self.ontop_query = ontop_query
        self.query_timeout = query_timeout

        self._snapshot = RegistrySnapshot()
        self._lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Task] = None

    @property
    def current(self) -> RegistrySnapshot:
        return self._snapshot

    def endpoints(self, kind: EndpointKind) -> Tuple[Endpoint, ...]:
        return self._snapshot.endpoints(kind)

    async def snapshot(self) -> RegistrySnapshot:
        """Current snapshot, discovering first if nothing has been found yet."""
        if not self._snapshot.is_empty:
            return self._snapshot
        return await self.discover()

    async def discover(self) -> RegistrySnapshot:
        """
        Run (or join) a discovery pass.

        Raises:
            DiscoveryError: the root namespace could not be found
        """
        async with self._lock:
            if self._inflight is None or self._inflight.done():
                self._inflight = asyncio.create_task(self._discover())
            task = self._inflight
        # Shielded so a cancelled caller does not cancel everyone else's discovery
        return await asyncio.shield(task)

    async def refresh(self) -> RegistrySnapshot:
        logger.info("Refreshing endpoint registry...")
        return await self.discover()

    def with_override(
        self, snapshot: RegistrySnapshot, endpoint_url: Optional[str]
    ) -> RegistryView:
        """
        Build the per-request view. The enforced endpoint lives only on the
        returned view and is never written to the registry.
        """
        if not endpoint_url:
            return RegistryView(snapshot=snapshot)

        name = parse_namespace_url(endpoint_url)
        if name is None:
            logger.warning("Could not parse requested endpoint, will federate across all.")
            return RegistryView(snapshot=snapshot)

        enforced = Endpoint(
            id=name,
            url=endpoint_url,
            kind=EndpointKind.GRAPH_STORE,
            credentials=self.services.graph_credentials,
        )
        return RegistryView(snapshot=snapshot, enforced=enforced)

    async def _discover(self) -> RegistrySnapshot:
        graph_stores = await self._discover_graph_stores()
        root = next(
            (endpoint for endpoint in graph_stores if endpoint.id == self.root_namespace),
            None,
        )
        if root is None:
            logger.error(f"Could not find '{self.root_namespace}' namespace endpoint!")
            raise DiscoveryError(
                f"Could not find '{self.root_namespace}' namespace endpoint in the graph store"
            )
        logger.info(f"Have discovered the root namespace endpoint: {root.url}")

        virtual_mappers = await self._discover_virtual_mappers(root)
        relational_stores = await self._discover_relational_stores()

        snapshot = RegistrySnapshot(
            graph_stores=graph_stores,
            virtual_mappers=virtual_mappers,
            relational_stores=relational_stores,
            root=root,
        )
        self._snapshot = snapshot
        logger.info(f"Endpoint discovery complete: {snapshot.counts()}")
        return snapshot

    async def _discover_graph_stores(self) -> Tuple[Endpoint, ...]:
        namespaces = await self.services.list_namespaces()
        credentials = self.services.graph_credentials

        endpoints = []
        for name, url in namespaces.items():
            endpoints.append(
                Endpoint(
                    id=name,
                    url=url,
                    kind=EndpointKind.GRAPH_STORE,
                    credentials=credentials,
                )
            )
            logger.info(f"Have found a graph store endpoint at: {url}")
        return _ordered_unique(endpoints)

    async def _discover_virtual_mappers(self, root: Endpoint) -> Tuple[Endpoint, ...]:
        mappers: List[Endpoint] = []

        try:
            default = await self.services.describe_virtual_mapper()
            if default is not None:
                mappers.append(default)
                logger.info(f"Have discovered a local Ontop endpoint: {default.url}")
        except Exception:
            logger.warning("Could not determine the default Ontop endpoint", exc_info=True)

        answer = await query_endpoint(
            self.executor, root, self.ontop_query, self.query_timeout
        )
        if not answer.ok:
            logger.warning(
                f"Could not query root namespace for Ontop endpoints: {answer.error}"
            )
            return _ordered_unique(mappers)

        for row in answer.rows or []:
            ontop_url = find_field("ontop_url", row)
            if ontop_url:
                mappers.append(
                    Endpoint(
                        id=str(ontop_url),
                        url=str(ontop_url),
                        kind=EndpointKind.VIRTUAL_MAPPER,
                    )
                )
                logger.info(f"Have discovered an Ontop endpoint from the graph store: {ontop_url}")

        return _ordered_unique(mappers)

    async def _discover_relational_stores(self) -> Tuple[Endpoint, ...]:
        try:
            store = await self.services.describe_relational_store(self.database_name)
        except Exception:
            logger.warning("Could not determine the relational store", exc_info=True)
            return ()

        if store is None:
            logger.warning("No relational store is available, time series disabled")
            return ()

        logger.info(f"Have determined relational store endpoint: {store.id}")
        return (store,)


def load_ontop_query(location: Optional[str]) -> str:
    """Read a custom mapper discovery query, falling back to the default one."""
    if not location:
        return DEFAULT_ONTOP_QUERY
    try:
        return Path(location).read_text(encoding="utf-8")
    except OSError:
        logger.error("Could not read the Ontop query from its file!", exc_info=True)
        return DEFAULT_ONTOP_QUERY
