import asyncio

import httpx
import pytest

from featureinfo.core.config import Settings
from featureinfo.core.errors import DiscoveryError
from featureinfo.core.federation.registry import (
    DEFAULT_ONTOP_QUERY,
    EndpointRegistry,
    StackServices,
    load_ontop_query,
    parse_namespace_listing,
    parse_namespace_url,
)
from featureinfo.core.schemas import EndpointKind

from fakes import MAPPER, POSTGRES, FakeExecutor, FakeServices, graph_endpoint

NAMESPACE_LISTING = """<?xml version="1.0" encoding="UTF-8"?>
<rdf:RDF
    xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#"
    xmlns:void="http://rdfs.org/ns/void#"
    xmlns:dcterms="http://purl.org/dc/terms/">
  <rdf:Description rdf:nodeID="kbDataset">
    <rdf:type rdf:resource="http://rdfs.org/ns/void#Dataset"/>
    <Namespace xmlns="http://www.bigdata.com/rdf#/features/KB/">kb</Namespace>
    <void:sparqlEndpoint rdf:resource="http://blazegraph/blazegraph/namespace/kb/sparql"/>
  </rdf:Description>
  <rdf:Description rdf:nodeID="ontologyDataset">
    <rdf:type rdf:resource="http://rdfs.org/ns/void#Dataset"/>
    <dcterms:title>ontology</dcterms:title>
    <void:sparqlEndpoint rdf:resource="http://blazegraph/blazegraph/namespace/ontology/sparql"/>
  </rdf:Description>
  <rdf:Description rdf:nodeID="untitledDataset">
    <rdf:type rdf:resource="http://rdfs.org/ns/void#Dataset"/>
    <void:sparqlEndpoint rdf:resource="http://blazegraph/blazegraph/namespace/assets/sparql"/>
  </rdf:Description>
</rdf:RDF>
"""


def make_registry(services, executor=None, **kwargs):
    return EndpointRegistry(
        services, executor or FakeExecutor(), root_namespace="kb", query_timeout=0.2, **kwargs
    )


# =========================
# Discovery
# =========================
@pytest.mark.asyncio
async def test_discover_populates_every_kind():
    executor = FakeExecutor({"kb": {"ontop": [{"ontop_url": "http://stack-ontop/sparql"}]}})
    registry = make_registry(FakeServices(), executor)

    snapshot = await registry.discover()

    assert [e.id for e in snapshot.graph_stores] == ["kb", "ontology"]
    assert snapshot.root == graph_endpoint("kb")
    assert [e.url for e in snapshot.virtual_mappers] == [
        MAPPER.url,
        "http://stack-ontop/sparql",
    ]
    assert snapshot.relational_stores == (POSTGRES,)
    assert registry.current is snapshot
    # Mapper discovery query only goes to the root namespace
    assert executor.calls_for("ontop") == ["kb"]


@pytest.mark.asyncio
async def test_discover_drops_duplicate_mappers():
    executor = FakeExecutor({"kb": {"ontop": [{"ontop_url": MAPPER.url}]}})
    registry = make_registry(FakeServices(), executor)

    snapshot = await registry.discover()

    assert snapshot.virtual_mappers == (MAPPER,)


@pytest.mark.asyncio
async def test_missing_root_namespace_is_fatal():
    services = FakeServices(namespaces={"ontology": graph_endpoint("ontology").url})
    registry = make_registry(services)

    with pytest.raises(DiscoveryError):
        await registry.discover()

    assert registry.current.is_empty


@pytest.mark.asyncio
async def test_unreachable_graph_store_is_fatal():
    registry = make_registry(FakeServices(fail_graph=True))

    with pytest.raises(DiscoveryError):
        await registry.discover()


@pytest.mark.asyncio
async def test_mapper_and_relational_failures_are_not_fatal():
    services = FakeServices(fail_mapper=True, fail_relational=True)
    executor = FakeExecutor({"kb": {"ontop": RuntimeError("root namespace down")}})
    registry = make_registry(services, executor)

    snapshot = await registry.discover()

    assert snapshot.root is not None
    assert snapshot.virtual_mappers == ()
    assert snapshot.relational_stores == ()
    assert snapshot.counts() == {
        "graph_store": 2,
        "virtual_mapper": 0,
        "relational_store": 0,
    }


@pytest.mark.asyncio
async def test_absent_relational_store_leaves_kind_empty():
    registry = make_registry(FakeServices(relational=None, mapper=None))

    snapshot = await registry.discover()

    assert snapshot.endpoints(EndpointKind.RELATIONAL_STORE) == ()
    assert snapshot.endpoints(EndpointKind.VIRTUAL_MAPPER) == ()


@pytest.mark.asyncio
async def test_failed_refresh_keeps_last_good_snapshot():
    services = FakeServices()
    registry = make_registry(services)
    first = await registry.discover()

    services.fail_graph = True
    with pytest.raises(DiscoveryError):
        await registry.refresh()

    assert registry.current is first


@pytest.mark.asyncio
async def test_refresh_publishes_new_snapshot():
    services = FakeServices()
    registry = make_registry(services)
    first = await registry.discover()

    services.namespaces["assets"] = graph_endpoint("assets").url
    second = await registry.refresh()

    assert second is not first
    assert len(second.graph_stores) == 3
    assert len(first.graph_stores) == 2
    assert registry.current is second


@pytest.mark.asyncio
async def test_concurrent_discovery_runs_once():
    services = FakeServices(delay=0.1)
    registry = make_registry(services)

    snapshots = await asyncio.gather(*(registry.discover() for _ in range(5)))

    assert services.namespace_calls == 1
    assert all(snapshot is snapshots[0] for snapshot in snapshots)


@pytest.mark.asyncio
async def test_snapshot_discovers_lazily_once():
    services = FakeServices()
    registry = make_registry(services)

    await registry.snapshot()
    await registry.snapshot()

    assert services.namespace_calls == 1


# =========================
# Per-request override
# =========================
@pytest.mark.asyncio
async def test_override_restricts_view_without_touching_registry():
    registry = make_registry(FakeServices())
    snapshot = await registry.discover()
    override = "http://other-host/blazegraph/namespace/private/sparql"

    view = registry.with_override(snapshot, override)

    graph_stores = view.endpoints(EndpointKind.GRAPH_STORE)
    assert [e.url for e in graph_stores] == [override]
    assert graph_stores[0].id == "private"
    # Other kinds still come from the shared snapshot
    assert view.relational_store == POSTGRES
    assert registry.current.graph_stores == snapshot.graph_stores
    assert len(registry.endpoints(EndpointKind.GRAPH_STORE)) == 2


@pytest.mark.asyncio
async def test_unparsable_override_federates_across_all():
    registry = make_registry(FakeServices())
    snapshot = await registry.discover()

    view = registry.with_override(snapshot, "http://not-a-namespace-url/")

    assert view.enforced is None
    assert len(view.endpoints(EndpointKind.GRAPH_STORE)) == 2


def test_parse_namespace_url():
    assert parse_namespace_url("http://host/blazegraph/namespace/kb/sparql") == "kb"
    assert parse_namespace_url("http://host/sparql") is None


# =========================
# Stack services
# =========================
def test_parse_namespace_listing_names_each_dataset():
    namespaces = parse_namespace_listing(NAMESPACE_LISTING)

    assert namespaces == {
        "assets": "http://blazegraph/blazegraph/namespace/assets/sparql",
        "kb": "http://blazegraph/blazegraph/namespace/kb/sparql",
        "ontology": "http://blazegraph/blazegraph/namespace/ontology/sparql",
    }


def test_parse_namespace_listing_rejects_garbage():
    with pytest.raises(DiscoveryError):
        parse_namespace_listing("this is not rdf")


@pytest.mark.asyncio
async def test_stack_services_lists_namespaces_over_http():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/blazegraph/namespace"
        return httpx.Response(200, text=NAMESPACE_LISTING)

    settings = Settings(_env_file=None, BLAZEGRAPH_URL="http://blazegraph/blazegraph/")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        namespaces = await StackServices(settings, http).list_namespaces()

    assert list(namespaces) == ["assets", "kb", "ontology"]


@pytest.mark.asyncio
async def test_stack_services_wraps_unreachable_graph_store():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    settings = Settings(_env_file=None)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        with pytest.raises(DiscoveryError):
            await StackServices(settings, http).list_namespaces()


@pytest.mark.asyncio
async def test_stack_services_wraps_malformed_graph_store_url():
    """A bad BLAZEGRAPH_URL fails discovery instead of escaping startup"""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=NAMESPACE_LISTING)

    settings = Settings(_env_file=None, BLAZEGRAPH_URL="http://blazegraph:notaport/blazegraph")
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        with pytest.raises(DiscoveryError):
            await StackServices(settings, http).list_namespaces()


@pytest.mark.asyncio
async def test_stack_services_describes_relational_store():
    settings = Settings(
        _env_file=None,
        POSTGRES_HOST="postgis",
        POSTGRES_USER="postgres",
        POSTGRES_PASSWORD="secret",
    )
    async with httpx.AsyncClient() as http:
        services = StackServices(settings, http)
        store = await services.describe_relational_store("postgres")
        mapper = await services.describe_virtual_mapper()

        with pytest.raises(DiscoveryError):
            await services.describe_relational_store(None)

    assert store.url == "postgresql+asyncpg://postgis:5432/postgres"
    assert store.credentials.user == "postgres"
    assert store.kind == EndpointKind.RELATIONAL_STORE
    # No ONTOP_URL configured
    assert mapper is None


def test_load_ontop_query(tmp_path):
    query_file = tmp_path / "ontop.sparql"
    query_file.write_text("SELECT ?ontop_url WHERE { ?s ?p ?ontop_url }")

    assert load_ontop_query(str(query_file)).startswith("SELECT ?ontop_url")
    assert load_ontop_query(None) == DEFAULT_ONTOP_QUERY
    assert load_ontop_query(str(tmp_path / "missing.sparql")) == DEFAULT_ONTOP_QUERY
