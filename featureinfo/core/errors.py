"""
Exception taxonomy for the feature info service.

Every error carries a fixed, caller-safe ``description``. The message passed
to the constructor is the internal detail and only ever goes to the log.
"""


class FeatureInfoError(Exception):
    """Base class for all service errors."""

    description = "Internal error occurred."


class ConfigError(FeatureInfoError):
    """Configuration document is missing, unreadable or malformed."""

    description = "Could not initialise agent instance!"


class DiscoveryError(FeatureInfoError):
    """The canonical graph-store namespace could not be located."""

    description = "Could not discover the knowledge graph endpoints."


class NotConfigured(FeatureInfoError):
    """A class was resolved but has no query templates."""

    description = "No queries are configured for the matched class."

    def __init__(self, class_id: str):
        super().__init__(f"No query templates configured for class: {class_id}")
        self.class_id = class_id


class QueryExecutionError(FeatureInfoError):
    """Template malformed, endpoint unreachable or answer unreadable."""

    description = "Could not query the knowledge graph endpoints."


class TimeseriesStoreError(FeatureInfoError):
    """Relational time-series store unreachable or query failed."""

    description = "Could not read time-series data."
