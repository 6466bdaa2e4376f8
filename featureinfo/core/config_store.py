# featureinfo/core/config_store.py
"""
CONFIG STORE - Read the configuration document and its query templates

The document is JSON:

    {
        "queries": [
            {"class": "https://.../Building", "metaFile": "building-meta.sparql", "timeFile": "building-time.sparql"}
        ],
        "hours": 24,
        "database_name": "postgres"
    }

Query files are resolved as absolute paths first, then relative to the
directory holding the document. Every template is read once at load time, the
resulting store is never mutated afterwards.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from featureinfo.core.errors import ConfigError
from featureinfo.core.federation.sparql import ONTOP_PLACEHOLDER
from featureinfo.core.schemas import ClassQueryTemplate, ConfigDocument, QueryEntry

logger = logging.getLogger(__name__)


class ConfigStore:
    """Immutable view of the loaded configuration document."""

    def __init__(
        self,
        templates: Mapping[str, ClassQueryTemplate],
        settings: Mapping[str, Any],
        location: Optional[Path] = None,
    ):
        self._templates = dict(templates)
        self._settings = dict(settings)
        self.location = location

    @property
    def templates(self) -> Dict[str, ClassQueryTemplate]:
        return dict(self._templates)

    def template_for(self, class_id: str) -> Optional[ClassQueryTemplate]:
        return self._templates.get(class_id)

    def get_setting(self, key: str, default: Any = None) -> Any:
        return self._settings.get(key, default)

    def lookback_hours(self, default: int = 24) -> int:
        """Trailing window for time-series reads, from the 'hours' setting."""
        hours = self._settings.get("hours")
        return default if hours is None else hours

    @property
    def database_name(self) -> Optional[str]:
        return self._settings.get("database_name")


def resolve_query_path(file_name: str, config_dir: Optional[Path]) -> Path:
    """
    Find a query file referenced from the configuration document.

    Args:
        file_name: Path as written in the document
        config_dir: Directory of the document (None when loaded from a string)

    Returns:
        Absolute path if it exists, otherwise the path relative to config_dir

    Example:
        resolve_query_path("meta.sparql", Path("/config")) -> /config/meta.sparql
    """
    path = Path(file_name)
    if path.exists() or config_dir is None:
        return path
    return config_dir / file_name


def _check_hours(value: Any) -> int:
    # bool is an int subclass, "hours": true is still a mistake
    if isinstance(value, bool):
        raise ConfigError(f"Setting 'hours' is not an integer: {value!r}")
    try:
        hours = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Setting 'hours' is not an integer: {value!r}")
    if hours <= 0:
        raise ConfigError(f"Setting 'hours' must be positive, got {hours}")
    return hours


def _read_query(file_name: str, config_dir: Optional[Path]) -> str:
    path = resolve_query_path(file_name, config_dir)
    try:
        return path.read_text(encoding="utf-8")
    except OSError as error:
        raise ConfigError(f"Could not read query file at {path}: {error}") from error


def _to_template(entry: QueryEntry, config_dir: Optional[Path]) -> ClassQueryTemplate:
    metadata_query = _read_query(entry.meta_file, config_dir)
    timeseries_query = (
        _read_query(entry.time_file, config_dir) if entry.time_file else None
    )

    mapped = entry.mapped
    if mapped is None:
        mapped = ONTOP_PLACEHOLDER in metadata_query

    return ClassQueryTemplate(
        class_id=entry.class_name,
        metadata_query=metadata_query,
        timeseries_query=timeseries_query,
        mapped=mapped,
    )


def parse_config(
    content: str, config_dir: Optional[Path] = None, location: Optional[Path] = None
) -> ConfigStore:
    """
    Parse raw document content into a ConfigStore.

    Raises:
        ConfigError: not JSON, no 'queries' array, bad entry, unreadable query file
            or an 'hours' setting that is not a positive integer
    """
    try:
        raw = json.loads(content)
    except json.JSONDecodeError as error:
        raise ConfigError(f"Configuration is not valid JSON: {error}") from error

    if not isinstance(raw, dict) or "queries" not in raw:
        raise ConfigError("Could not find required 'queries' node in configuration.")

    try:
        document = ConfigDocument.model_validate(raw)
    except ValidationError as error:
        raise ConfigError(f"Configuration entries are malformed: {error}") from error

    templates: Dict[str, ClassQueryTemplate] = {}
    for entry in document.queries:
        if entry.class_name in templates:
            logger.warning(f"Class {entry.class_name} configured twice, last entry wins")
        templates[entry.class_name] = _to_template(entry, config_dir)

    other_settings = {key: value for key, value in raw.items() if key != "queries"}
    if other_settings.get("hours") is not None:
        other_settings["hours"] = _check_hours(other_settings["hours"])

    logger.info(f"Have parsed a total of {len(templates)} configuration entries.")
    return ConfigStore(templates, other_settings, location)


def load_config(location: Optional[str]) -> ConfigStore:
    """
    Load the configuration document from disk.

    Why: the service cannot become ready without knowing which queries to run.

    Raises:
        ConfigError: location unset, missing, not a regular file or unreadable
    """
    if not location or not location.strip():
        raise ConfigError("Cannot find value for the 'FIA_CONFIG_FILE' setting.")

    config_file = Path(location)
    if not config_file.exists():
        raise ConfigError(f"Could not find configuration file at: {config_file}")
    if not config_file.is_file():
        raise ConfigError("Configuration file does not appear to be regular file.")

    try:
        content = config_file.read_text(encoding="utf-8")
    except OSError as error:
        raise ConfigError(f"Configuration file exists, but is not readable: {error}") from error

    store = parse_config(content, config_file.parent, config_file)
    logger.info("Configuration settings have been loaded into memory.")
    return store
