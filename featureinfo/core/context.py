import logging
from typing import Optional

import httpx
from fastapi import Request

from featureinfo.core.config import Settings
from featureinfo.core.config_store import ConfigStore, load_config
from featureinfo.core.database import RelationalPool
from featureinfo.core.errors import ConfigError, DiscoveryError
from featureinfo.core.federation.metadata import MetadataAggregator
from featureinfo.core.federation.orchestrator import RequestOrchestrator
from featureinfo.core.federation.registry import (
    EndpointRegistry,
    StackServices,
    load_ontop_query,
)
from featureinfo.core.federation.resolver import ClassResolver
from featureinfo.core.federation.sparql import QueryExecutor, SparqlClient
from featureinfo.core.federation.timeseries import (
    PooledStoreProvider,
    StoreProvider,
    TimeseriesAggregator,
)

logger = logging.getLogger(__name__)


class AppContext:
    """
    Everything a request needs, built once at startup and shared by reference.
    Only the registry snapshot and the connection pools change afterwards.
    """

    def __init__(
        self,
        settings: Settings,
        config: Optional[ConfigStore],
        registry: EndpointRegistry,
        orchestrator: RequestOrchestrator,
        http: Optional[httpx.AsyncClient] = None,
        pool: Optional[RelationalPool] = None,
    ):
        self.settings = settings
        self.config = config
        self.registry = registry
        self.orchestrator = orchestrator
        self.http = http
        self.pool = pool

    @property
    def ready(self) -> bool:
        return self.config is not None and not self.registry.current.is_empty

    async def start(self):
        """Initial discovery; failures leave the service not ready but running."""
        if self.config is None:
            return
        try:
            await self.registry.discover()
        except DiscoveryError:
            logger.error("Could not discover stack endpoints!", exc_info=True)

    async def close(self):
        if self.pool is not None:
            await self.pool.dispose()
        if self.http is not None:
            await self.http.aclose()


def build_context(
    settings: Settings,
    config: Optional[ConfigStore] = None,
    executor: Optional[QueryExecutor] = None,
    services: Optional[StackServices] = None,
    stores: Optional[StoreProvider] = None,
) -> AppContext:
    """
    Wire the collaborators together.

    Anything passed in replaces the default network-backed implementation,
    which is how tests substitute fake endpoints and stores.
    """
    if config is None:
        try:
            config = load_config(settings.FIA_CONFIG_FILE)
        except ConfigError:
            logger.error("Could not initialise agent configuration!", exc_info=True)

    http = httpx.AsyncClient(timeout=settings.QUERY_TIMEOUT)
    executor = executor or SparqlClient(http)
    services = services or StackServices(settings, http)

    pool = None
    if stores is None:
        pool = RelationalPool(settings.DB_POOL_SIZE, settings.DB_MAX_OVERFLOW)
        stores = PooledStoreProvider(pool)

    registry = EndpointRegistry(
        services,
        executor,
        root_namespace=settings.ROOT_NAMESPACE,
        database_name=config.database_name if config is not None else None,
        ontop_query=load_ontop_query(settings.ONTOP_DISCOVERY_QUERY_FILE),
        query_timeout=settings.QUERY_TIMEOUT,
    )

    orchestrator = RequestOrchestrator(
        registry=registry,
        config=config,
        resolver=ClassResolver(executor, settings.QUERY_TIMEOUT),
        metadata=MetadataAggregator(executor, settings.QUERY_TIMEOUT),
        timeseries=TimeseriesAggregator(executor, stores, settings.QUERY_TIMEOUT),
        request_timeout=settings.REQUEST_TIMEOUT,
        default_hours=settings.DEFAULT_HOURS,
    )

    return AppContext(settings, config, registry, orchestrator, http, pool)


# This is the "Bridge" that gives the routes access to the shared context
def get_context(request: Request) -> AppContext:
    return request.app.state.context
