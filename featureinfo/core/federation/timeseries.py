# featureinfo/core/federation/timeseries.py
"""
TIMESERIES MODULE - Pull recent readings for every stream attached to an asset

Data Flow:
    time template → graph stores → (stream id, name, unit) per row
                                        ↓
                      relational store: samples in [now - hours, now]
                                        ↓
                      TimeseriesResult (merged() orders samples by time)

Outcomes:
    no relational store / no time template → None (time section omitted)
    no streams found                       → empty TimeseriesResult
    relational store failing               → TimeseriesStoreError
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from sqlalchemy import DateTime, column, select, table
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from featureinfo.core import models
from featureinfo.core.database import RelationalPool
from featureinfo.core.errors import NotConfigured, QueryExecutionError, TimeseriesStoreError
from featureinfo.core.federation.registry import RegistryView
from featureinfo.core.federation.sparql import QueryExecutor, bind_template, fan_out, find_field
from featureinfo.core.schemas import (
    ClassQueryTemplate,
    Endpoint,
    EndpointKind,
    StreamRef,
    TimeseriesRecord,
    TimeseriesResult,
)

logger = logging.getLogger(__name__)

Sample = Tuple[datetime, Any]

STREAM_COLUMNS = ("Measurement", "Stream", "DataIRI")


class TimeseriesStore(Protocol):
    async def fetch_samples(
        self, stream_id: str, start: datetime, end: datetime
    ) -> List[Sample]: ...


class StoreProvider(Protocol):
    async def store_for(self, endpoint: Endpoint) -> TimeseriesStore: ...


# ============================================================================
# RELATIONAL STORE
# ============================================================================


class SqlTimeseriesStore:
    """Reads samples through the dbTable index of the stack's time-series layout."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def fetch_samples(
        self, stream_id: str, start: datetime, end: datetime
    ) -> List[Sample]:
        """
        Read one stream's samples inside [start, end], oldest first.

        Raises:
            TimeseriesStoreError: connection or query failure
        """
        try:
            async with self.engine.connect() as conn:
                index_stmt = select(
                    models.TimeSeriesIndex.table_name, models.TimeSeriesIndex.column_name
                ).where(models.TimeSeriesIndex.data_iri == stream_id)
                location = (await conn.execute(index_stmt)).first()

                if location is None:
                    logger.warning(f"No time-series table registered for stream {stream_id}")
                    return []

                table_name, column_name = location
                time_col = column("time", DateTime(timezone=True))
                value_col = column(column_name)
                data_table = table(table_name, time_col, value_col)

                stmt = (
                    select(time_col, value_col)
                    .select_from(data_table)
                    .where(time_col >= start, time_col <= end)
                    .order_by(time_col)
                )
                rows = (await conn.execute(stmt)).all()

        except (SQLAlchemyError, OSError) as error:
            raise TimeseriesStoreError(
                f"Could not read samples for {stream_id}: {error}"
            ) from error

        return [(timestamp, _plain(value)) for timestamp, value in rows]


def _plain(value: Any) -> Any:
    # Numeric columns arrive as Decimal, keep JSON output numeric
    if isinstance(value, Decimal):
        return float(value)
    return value


class PooledStoreProvider:
    """Hands out SQL stores backed by the shared connection pool."""

    def __init__(self, pool: RelationalPool):
        self.pool = pool

    async def store_for(self, endpoint: Endpoint) -> TimeseriesStore:
        try:
            engine = await self.pool.engine_for(endpoint)
        except (SQLAlchemyError, ImportError, ValueError) as error:
            raise TimeseriesStoreError(
                f"Could not connect to relational store {endpoint.id}: {error}"
            ) from error
        return SqlTimeseriesStore(engine)


# ============================================================================
# AGGREGATOR
# ============================================================================


def discover_streams(rows_per_endpoint: List[List[Dict[str, Any]]]) -> List[StreamRef]:
    """
    Collect stream references in endpoint order; the first sighting of a
    stream id wins when several namespaces expose it.
    """
    streams: Dict[str, StreamRef] = {}
    for rows in rows_per_endpoint:
        for row in rows:
            stream_id = None
            for name in STREAM_COLUMNS:
                stream_id = find_field(name, row)
                if stream_id:
                    break
            if not stream_id or stream_id in streams:
                continue
            streams[stream_id] = StreamRef(
                stream_id=str(stream_id),
                name=find_field("Name", row),
                unit=find_field("Unit", row),
            )
    return list(streams.values())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimeseriesAggregator:
    def __init__(
        self,
        executor: QueryExecutor,
        stores: StoreProvider,
        query_timeout: float = 10.0,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.executor = executor
        self.stores = stores
        self.query_timeout = query_timeout
        self.clock = clock

    async def fetch(
        self,
        identifier: str,
        class_id: str,
        templates: Mapping[str, ClassQueryTemplate],
        view: RegistryView,
        lookback_hours: int,
    ) -> Optional[TimeseriesResult]:
        """
        Gather recent samples of every stream attached to the identifier.

        Returns:
            None when time series are unavailable for this request,
            otherwise a result (empty when no streams are attached)

        Raises:
            NotConfigured: class has no template
            QueryExecutionError: stream discovery failed on every endpoint
            TimeseriesStoreError: relational store unreachable or query failed
        """
        template = templates.get(class_id)
        if template is None:
            raise NotConfigured(class_id)

        store_endpoint = view.relational_store
        if store_endpoint is None:
            logger.info("No relational store discovered, skipping time series")
            return None
        if not template.timeseries_query:
            logger.info(f"No time-series query configured for {class_id}")
            return None

        streams = await self._discover(identifier, template, view)
        if not streams:
            return TimeseriesResult(streams=[])

        store = await self.stores.store_for(store_endpoint)
        end = self.clock()
        start = end - timedelta(hours=lookback_hours)

        results = await asyncio.gather(
            *(store.fetch_samples(stream.stream_id, start, end) for stream in streams),
            return_exceptions=True,
        )

        records = []
        for stream, samples in zip(streams, results):
            if isinstance(samples, BaseException):
                if isinstance(samples, TimeseriesStoreError):
                    raise samples
                raise TimeseriesStoreError(
                    f"Reading stream {stream.stream_id} failed: {samples!r}"
                ) from samples
            records.append(
                TimeseriesRecord(
                    stream_id=stream.stream_id,
                    name=stream.name,
                    unit=stream.unit,
                    samples=samples,
                )
            )

        logger.info(
            f"Read {sum(len(r.samples) for r in records)} samples from {len(records)} streams"
        )
        return TimeseriesResult(streams=records)

    async def _discover(
        self, identifier: str, template: ClassQueryTemplate, view: RegistryView
    ) -> List[StreamRef]:
        endpoints = view.endpoints(EndpointKind.GRAPH_STORE)
        if not endpoints:
            raise QueryExecutionError("No endpoints available for time-series queries")

        query = bind_template(template.timeseries_query, identifier, view.mapper_url)
        answers = await fan_out(self.executor, endpoints, query, self.query_timeout)
        succeeded = [answer for answer in answers if answer.ok]
        if not succeeded:
            raise QueryExecutionError(
                f"Time-series query failed on all {len(endpoints)} endpoints"
            )

        streams = discover_streams([answer.rows or [] for answer in succeeded])
        logger.info(f"Found {len(streams)} time-series streams")
        return streams
