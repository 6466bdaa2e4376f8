import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from featureinfo.core.config_store import ConfigStore
from featureinfo.core.errors import DiscoveryError, FeatureInfoError, NotConfigured
from featureinfo.core.federation.metadata import MetadataAggregator
from featureinfo.core.federation.registry import EndpointRegistry, RegistryView
from featureinfo.core.federation.resolver import ClassResolver
from featureinfo.core.federation.sparql import is_valid_iri
from featureinfo.core.federation.timeseries import TimeseriesAggregator
from featureinfo.core.schemas import Outcome, OutcomeKind, ResolutionStatus


# -----------------------------------------------------------------------------
# ORCHESTRATOR MODULE
# Purpose: resolve the class, then gather metadata and time series as
# independent stages and merge whatever succeeded into one outcome.
# -----------------------------------------------------------------------------

logger = logging.getLogger(__name__)

BAD_REQUEST = "Bad request, no valid 'iri' parameter."
NOT_READY = "Could not initialise agent instance!"
CLASS_ERROR = "Internal error occurred, could not query to determine classes."
NO_CLASSES = "Queries sent, but no classes could be determined."
TIMED_OUT = "Request timed out before any data could be gathered."
UNEXPECTED = "An unexpected error occurred, please see the log file."


class RequestLogger:
    """Step logger scoped to one identifier."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        self.start_time = datetime.now()

    def log(self, step: str, message: str, level: str = "info"):
        """
        Log a request message.
        Why: one identifier prefix makes interleaved concurrent requests readable.
        """
        if level == "error":
            logger.error(f"[{self.identifier}] {step}: {message}")
        elif level == "warning":
            logger.warning(f"[{self.identifier}] {step}: {message}")
        else:
            logger.info(f"[{self.identifier}] {step}: {message}")

    def get_summary(self) -> Dict[str, Any]:
        end_time = datetime.now()
        return {
            "identifier": self.identifier,
            "start_time": self.start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "duration_seconds": (end_time - self.start_time).total_seconds(),
        }


class _Progress:
    """Stage results gathered so far, read back if the deadline expires."""

    def __init__(self):
        self.meta: Optional[List[Dict[str, Any]]] = None
        self.time: Optional[List[Any]] = None
        self.time_done = False
        self.warnings: List[str] = []


def _describe(error: BaseException) -> str:
    if isinstance(error, FeatureInfoError):
        return error.description
    return UNEXPECTED


class RequestOrchestrator:
    def __init__(
        self,
        registry: EndpointRegistry,
        config: Optional[ConfigStore],
        resolver: ClassResolver,
        metadata: MetadataAggregator,
        timeseries: TimeseriesAggregator,
        request_timeout: float = 60.0,
        default_hours: int = 24,
    ):
        self.registry = registry
        self.config = config
        self.resolver = resolver
        self.metadata = metadata
        self.timeseries = timeseries
        self.request_timeout = request_timeout
        self.default_hours = default_hours

    async def handle(
        self, identifier: Optional[str], endpoint_override: Optional[str] = None
    ) -> Outcome:
        """
        Run the whole pipeline for one identifier.

        Steps:
            1. Validate the identifier
            2. Resolve its class (ERROR / NO_MATCH short-circuit)
            3. Metadata and time series concurrently, each allowed to fail alone
        """
        if not is_valid_iri(identifier):
            logger.warning("Could not find a valid 'iri' field in the request.")
            return Outcome(kind=OutcomeKind.BAD_INPUT, description=BAD_REQUEST)

        if self.config is None:
            logger.error("Agent could not start in a valid state.")
            return Outcome(kind=OutcomeKind.FAILED, description=NOT_READY)

        request_logger = RequestLogger(identifier)
        request_logger.log("request", "Incoming request")
        progress = _Progress()

        try:
            return await asyncio.wait_for(
                self._run(identifier, endpoint_override, progress, request_logger),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError:
            request_logger.log(
                "request", f"Deadline of {self.request_timeout}s exceeded", "warning"
            )
            return self._partial(progress)
        finally:
            summary = request_logger.get_summary()
            logger.info(
                f"[{identifier}] finished in {summary['duration_seconds']:.3f}s"
            )

    def _partial(self, progress: _Progress) -> Outcome:
        if progress.meta is None:
            return Outcome(kind=OutcomeKind.FAILED, description=TIMED_OUT)

        warnings = list(progress.warnings)
        if not progress.time_done:
            warnings.append("Time series were not gathered before the deadline.")
        return Outcome(
            kind=OutcomeKind.SUCCESS,
            meta=progress.meta,
            time=progress.time,
            warnings=warnings,
        )

    async def _run(
        self,
        identifier: str,
        endpoint_override: Optional[str],
        progress: _Progress,
        request_logger: RequestLogger,
    ) -> Outcome:
        # An enforced endpoint replaces graph-store discovery for this request,
        # mappers and the relational store come from whatever is already known
        view = self.registry.with_override(self.registry.current, endpoint_override)
        if view.enforced is not None:
            request_logger.log("discovery", f"Enforcing endpoint {view.enforced.url}")
        else:
            try:
                snapshot = await self.registry.snapshot()
            except DiscoveryError as error:
                request_logger.log("discovery", str(error), "error")
                return Outcome(kind=OutcomeKind.FAILED, description=error.description)
            view = RegistryView(snapshot=snapshot)

        # STEP 1: CLASS
        resolution = await self.resolver.resolve(identifier, view)
        if resolution.status == ResolutionStatus.ERROR:
            request_logger.log("class", resolution.reason or "unknown", "error")
            return Outcome(kind=OutcomeKind.FAILED, description=CLASS_ERROR)
        if resolution.status == ResolutionStatus.NO_MATCH:
            request_logger.log("class", "No classes found")
            return Outcome(kind=OutcomeKind.NO_CLASS_FOUND, description=NO_CLASSES)

        class_id = resolution.class_id
        request_logger.log("class", f"Matched {class_id}")

        templates = self.config.templates
        if class_id not in templates:
            error = NotConfigured(class_id)
            request_logger.log("class", str(error), "error")
            return Outcome(kind=OutcomeKind.CONFIG_INVALID, description=error.description)

        hours = self.config.lookback_hours(self.default_hours)

        # STEP 2: METADATA + TIMESERIES
        meta_error, time_error = await asyncio.gather(
            self._fetch_meta(identifier, class_id, templates, view, progress, request_logger),
            self._fetch_time(
                identifier, class_id, templates, view, hours, progress, request_logger
            ),
        )

        if meta_error is not None and time_error is not None:
            return Outcome(kind=OutcomeKind.FAILED, description=_describe(meta_error))

        if meta_error is not None:
            progress.warnings.append(f"Metadata unavailable: {_describe(meta_error)}")
        if time_error is not None:
            progress.warnings.append(f"Time series unavailable: {_describe(time_error)}")

        return Outcome(
            kind=OutcomeKind.SUCCESS,
            meta=progress.meta if progress.meta is not None else [],
            time=progress.time,
            warnings=progress.warnings,
        )

    async def _fetch_meta(
        self, identifier, class_id, templates, view: RegistryView, progress, request_logger
    ) -> Optional[BaseException]:
        request_logger.log("metadata", "Running query to gather metadata...")
        try:
            progress.meta = await self.metadata.fetch(identifier, class_id, templates, view)
        except FeatureInfoError as error:
            request_logger.log("metadata", str(error), "error")
            return error
        except Exception as error:
            logger.exception(f"[{identifier}] metadata stage failed unexpectedly")
            return error

        request_logger.log("metadata", f"...have result, contains {len(progress.meta)} entries.")
        return None

    async def _fetch_time(
        self, identifier, class_id, templates, view: RegistryView, hours, progress, request_logger
    ) -> Optional[BaseException]:
        request_logger.log("timeseries", "Running query to gather timeseries...")
        try:
            result = await self.timeseries.fetch(identifier, class_id, templates, view, hours)
        except FeatureInfoError as error:
            request_logger.log("timeseries", str(error), "error")
            progress.time_done = True
            return error
        except Exception as error:
            logger.exception(f"[{identifier}] time-series stage failed unexpectedly")
            progress.time_done = True
            return error

        progress.time_done = True
        if result is None:
            request_logger.log("timeseries", "Time series unavailable, section omitted")
            return None

        progress.time = result.merged()
        request_logger.log("timeseries", f"...have result, contains {len(progress.time)} entries.")
        return None
