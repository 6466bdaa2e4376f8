import asyncio
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from featureinfo.core.schemas import Endpoint

logger = logging.getLogger(__name__)


# All the models are "stored" in the Base class will be processed by the Engine
class Base(DeclarativeBase):
    pass


class RelationalPool:
    """
    Lazily builds one pooled engine for the discovered relational store and
    shares it across every in-flight request.
    """

    def __init__(
        self,
        pool_size: int = 10,
        max_overflow: int = 5,
        engine_factory: Callable[..., AsyncEngine] = create_async_engine,
    ):
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.engine_factory = engine_factory
        self._engine: Optional[AsyncEngine] = None
        self._url: Optional[str] = None
        self._lock = asyncio.Lock()

    async def engine_for(self, endpoint: Endpoint) -> AsyncEngine:
        """Return the engine for this endpoint, creating it on first use."""
        if self._engine is not None and self._url == endpoint.url:
            return self._engine

        async with self._lock:
            if self._engine is not None and self._url == endpoint.url:
                return self._engine

            # Re-discovery moved the store, drop the old pool
            if self._engine is not None:
                logger.info("Relational store endpoint changed, disposing old pool")
                await self._engine.dispose()

            url = make_url(endpoint.url)
            if endpoint.credentials is not None:
                url = url.set(
                    username=endpoint.credentials.user,
                    password=endpoint.credentials.secret,
                )

            options: Dict[str, Any] = {"pool_pre_ping": True}
            if url.get_backend_name() != "sqlite":
                options.update(pool_size=self.pool_size, max_overflow=self.max_overflow)

            self._engine = self.engine_factory(url, **options)
            self._url = endpoint.url
            logger.info(
                f"Created relational connection pool for {endpoint.id} (size {self.pool_size})"
            )
            return self._engine

    async def dispose(self):
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._url = None
