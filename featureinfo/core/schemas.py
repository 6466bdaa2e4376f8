from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


# =========================
# Enums
# =========================
class EndpointKind(str, Enum):
    GRAPH_STORE = "graph_store"
    VIRTUAL_MAPPER = "virtual_mapper"
    RELATIONAL_STORE = "relational_store"


class ResolutionStatus(str, Enum):
    MATCHED = "matched"
    NO_MATCH = "no_match"
    ERROR = "error"


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    BAD_INPUT = "bad_input"
    NO_CLASS_FOUND = "no_class_found"
    CONFIG_INVALID = "config_invalid"
    FAILED = "failed"


class OutcomeCode(str, Enum):
    OK = "OK"
    BAD_INPUT = "BAD_INPUT"
    NO_CONTENT = "NO_CONTENT"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    UNSUPPORTED_ROUTE = "UNSUPPORTED_ROUTE"


# =========================
# ENDPOINTS
# =========================
class Credentials(BaseModel):
    user: str
    secret: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class Endpoint(BaseModel):
    """
    One queryable backend: a graph-store namespace, a virtual mapper or the
    relational store. Immutable once created.
    """

    id: str
    url: str
    kind: EndpointKind
    credentials: Optional[Credentials] = None

    model_config = ConfigDict(frozen=True)


# =========================
# QUERY TEMPLATES
# =========================
class ClassQueryTemplate(BaseModel):
    class_id: str
    metadata_query: str
    timeseries_query: Optional[str] = None
    # Data for this class is served by the virtual mapper as well
    mapped: bool = False

    model_config = ConfigDict(frozen=True)


class QueryEntry(BaseModel):
    """One entry of the 'queries' array in the configuration document."""

    class_name: str = Field(alias="class", min_length=1)
    meta_file: str = Field(alias="metaFile", min_length=1)
    time_file: Optional[str] = Field(default=None, alias="timeFile")
    mapped: Optional[bool] = None

    model_config = ConfigDict(populate_by_name=True)


class ConfigDocument(BaseModel):
    queries: List[QueryEntry]

    # Everything besides 'queries' is an open settings map
    model_config = ConfigDict(extra="allow")


# =========================
# RESOLUTION
# =========================
class ResolutionResult(BaseModel):
    status: ResolutionStatus
    class_id: Optional[str] = None
    reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @classmethod
    def matched(cls, class_id: str) -> "ResolutionResult":
        return cls(status=ResolutionStatus.MATCHED, class_id=class_id)

    @classmethod
    def no_match(cls) -> "ResolutionResult":
        return cls(status=ResolutionStatus.NO_MATCH)

    @classmethod
    def error(cls, reason: str) -> "ResolutionResult":
        return cls(status=ResolutionStatus.ERROR, reason=reason)


# =========================
# TIMESERIES
# =========================
class StreamRef(BaseModel):
    stream_id: str
    name: Optional[str] = None
    unit: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class TimeseriesRecord(BaseModel):
    stream_id: str
    name: Optional[str] = None
    unit: Optional[str] = None
    samples: List[Tuple[datetime, Any]] = []


class TaggedSample(BaseModel):
    time: datetime
    value: Any
    stream: str
    name: Optional[str] = None
    unit: Optional[str] = None


class TimeseriesResult(BaseModel):
    streams: List[TimeseriesRecord] = []

    def merged(self) -> List[TaggedSample]:
        """
        Flatten every stream into one list ordered by timestamp.
        Ties keep stream discovery order (sorted() is stable).
        """
        tagged = [
            TaggedSample(
                time=timestamp,
                value=value,
                stream=record.stream_id,
                name=record.name,
                unit=record.unit,
            )
            for record in self.streams
            for timestamp, value in record.samples
        ]
        return sorted(tagged, key=lambda sample: sample.time)


# =========================
# REQUEST / RESPONSE
# =========================
class FeatureRequest(BaseModel):
    iri: Optional[str] = None
    endpoint: Optional[str] = None


class Outcome(BaseModel):
    kind: OutcomeKind
    meta: Optional[List[Dict[str, Any]]] = None
    time: Optional[List[TaggedSample]] = None
    warnings: List[str] = []
    description: Optional[str] = None

    @property
    def code(self) -> OutcomeCode:
        return {
            OutcomeKind.SUCCESS: OutcomeCode.OK,
            OutcomeKind.BAD_INPUT: OutcomeCode.BAD_INPUT,
            OutcomeKind.NO_CLASS_FOUND: OutcomeCode.NO_CONTENT,
            OutcomeKind.CONFIG_INVALID: OutcomeCode.INTERNAL_ERROR,
            OutcomeKind.FAILED: OutcomeCode.INTERNAL_ERROR,
        }[self.kind]


class FeatureResponse(BaseModel):
    meta: List[Dict[str, Any]]
    time: Optional[List[TaggedSample]] = None
    warnings: Optional[List[str]] = None


class ErrorResponse(BaseModel):
    description: str
    outcome: OutcomeCode


class StatusResponse(BaseModel):
    description: str
    endpoints: Dict[str, int] = {}
