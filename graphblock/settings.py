"""Plugin settings: record shape, defaults, migration and persistence.

Purpose
-------
The settings record is persisted verbatim as JSON and has this shape::

    {
      "version": "0.1.0",
      "use_legacy_external_api": false,
      "cache": {"enabled": true, "location": "Memory", "directory": "..."},
      "graph_settings": {"width": 600, "height": 400, "left": -7, ...}
    }

``graph_settings`` supplies every option a graph block does not override.

Migration
---------
A record written by another program version is passed through
:func:`migrate_settings`, a pure function that only *adds* fields that are
missing. Existing fields, including unknown ones from newer versions, are
kept as they are.

Persistence
-----------
:class:`JsonDataStore` is the ``load_data``/``save_data`` pair the host would
otherwise provide. It stores one JSON document per plugin.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

from .graph import GraphOptions

__all__ = [
    "CacheLocation",
    "CacheSettings",
    "Settings",
    "default_settings",
    "migrate_settings",
    "load_settings",
    "save_settings",
    "JsonDataStore",
    "DEFAULT_GRAPH_SETTINGS",
]

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


class CacheLocation(str, Enum):
    """Where rendered graphs are cached."""

    MEMORY = "Memory"
    FILESYSTEM = "Filesystem"


DEFAULT_GRAPH_SETTINGS = GraphOptions()

# Field name used by records written before the engine became pluggable.
_LEGACY_API_KEY = "use_legacy_desmos_api"


@dataclass(frozen=True)
class CacheSettings:
    """The ``cache`` block of the settings record."""

    enabled: bool = True
    location: CacheLocation = CacheLocation.MEMORY
    directory: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"enabled": self.enabled, "location": self.location.value}
        if self.directory is not None:
            data["directory"] = self.directory
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CacheSettings":
        return cls(
            enabled=bool(data.get("enabled", True)),
            location=CacheLocation(data.get("location", CacheLocation.MEMORY.value)),
            directory=data.get("directory"),
        )


@dataclass(frozen=True)
class Settings:
    """Typed view of the persisted settings record.

    Parameters
    ----------
    version : str
        Program version the record was created by.
    use_legacy_external_api : bool
        Use the engine's offline mode. For the Plotly engine this inlines the
        JavaScript bundle in every artifact instead of loading it from a CDN.
    cache : CacheSettings
        Cache configuration.
    graph_settings : GraphOptions
        Default options for every graph.
    raw : dict
        The record this was loaded from. Keys the typed fields do not cover
        (legacy names, fields of newer versions) are written back unchanged
        by :meth:`to_dict`.
    """

    version: str
    use_legacy_external_api: bool = False
    cache: CacheSettings = field(default_factory=CacheSettings)
    graph_settings: GraphOptions = DEFAULT_GRAPH_SETTINGS
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = copy.deepcopy(self.raw)
        data["version"] = self.version
        data["use_legacy_external_api"] = self.use_legacy_external_api
        data["cache"] = _overlay(data.get("cache"), self.cache.to_dict())
        data["graph_settings"] = _overlay(
            data.get("graph_settings"), self.graph_settings.to_dict()
        )
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Settings":
        """Build settings from a (migrated) record.

        Invalid ``graph_settings`` are replaced by the built-in defaults and an
        invalid ``cache`` block by the default cache settings; both cases are
        logged as warnings.
        """
        try:
            graph_settings = GraphOptions.from_dict(
                _require_mapping(data.get("graph_settings", {}), "graph_settings")
            ).validate()
        except (TypeError, ValueError) as exc:
            logger.warning("Invalid graph_settings in settings record, using defaults: %s", exc)
            graph_settings = DEFAULT_GRAPH_SETTINGS
        try:
            cache = CacheSettings.from_dict(_require_mapping(data.get("cache", {}), "cache"))
        except (TypeError, ValueError) as exc:
            logger.warning("Invalid cache settings in settings record, using defaults: %s", exc)
            cache = CacheSettings()
        return cls(
            version=str(data.get("version", "")),
            use_legacy_external_api=bool(data.get("use_legacy_external_api", False)),
            cache=cache,
            graph_settings=graph_settings,
            raw=copy.deepcopy(dict(data)),
        )


def _require_mapping(value: Any, name: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise TypeError(f"'{name}' must be an object, got {type(value).__name__}")
    return value


def _overlay(stored: Any, current: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``stored`` updated with ``current``, keeping keys only it has."""
    if not isinstance(stored, Mapping):
        return current
    merged = dict(stored)
    merged.update(current)
    return merged


def default_settings(version: str) -> Dict[str, Any]:
    """Return the default settings record for program ``version``."""
    return Settings(version=version).to_dict()


def migrate_settings(record: Mapping[str, Any], version: str) -> Dict[str, Any]:
    """Return ``record`` with every field introduced since it was written.

    The migration is additive: missing fields get their documented defaults,
    and nothing already present is removed or rewritten. ``record`` itself is
    not modified.

    Parameters
    ----------
    record : Mapping
        Settings record as loaded from storage.
    version : str
        Running program version. Used only when the record lacks a version.

    Returns
    -------
    dict
        Migrated copy of the record.
    """
    migrated: Dict[str, Any] = copy.deepcopy(dict(record))
    defaults = default_settings(version)

    migrated.setdefault("version", version)

    if "use_legacy_external_api" not in migrated:
        if _LEGACY_API_KEY in migrated:
            migrated["use_legacy_external_api"] = bool(migrated[_LEGACY_API_KEY])
        else:
            migrated["use_legacy_external_api"] = defaults["use_legacy_external_api"]

    cache = migrated.setdefault("cache", {})
    if isinstance(cache, dict):
        for key, value in defaults["cache"].items():
            cache.setdefault(key, value)

    graph_settings = migrated.setdefault("graph_settings", {})
    if isinstance(graph_settings, dict):
        for key, value in defaults["graph_settings"].items():
            graph_settings.setdefault(key, value)

    return migrated


class JsonDataStore:
    """Persist one settings record as a JSON file.

    Parameters
    ----------
    path : str or Path
        Location of the JSON document (for example ``<plugin dir>/data.json``).
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)

    def load_data(self) -> Optional[Dict[str, Any]]:
        """Return the stored record, or ``None`` if there is none.

        A missing, unreadable or malformed file is treated as "no record".
        """
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Could not read settings from %s: %s", self.path, exc)
            return None
        if not isinstance(data, dict):
            logger.warning("Settings file %s does not hold a JSON object", self.path)
            return None
        return data

    def save_data(self, data: Mapping[str, Any]) -> None:
        """Write ``data`` atomically, replacing the previous record."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise


def load_settings(store: JsonDataStore, version: str) -> Settings:
    """Load settings, falling back to defaults and migrating older records."""
    record = store.load_data()
    if record is None:
        record = default_settings(version)
    elif record.get("version") != version:
        logger.info(
            "Migrating settings from version %s to %s", record.get("version"), version
        )
        record = migrate_settings(record, version)
    return Settings.from_dict(record)


def save_settings(store: JsonDataStore, settings: Settings) -> None:
    store.save_data(settings.to_dict())
