"""Configuration loading and validation for YAML-based probectl settings."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, fields, replace
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from probectl.core.errors import ConfigLoadError, ConfigValidationError
from probectl.core.model import OverflowPolicy, SessionConfig

_UUID_RE = re.compile(r"^[0-9a-f]{4}$|^[0-9a-f]{8}$|^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
_FIELD_NAMES = {f.name for f in fields(SessionConfig)}
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedConfig:
    config: SessionConfig
    source: Path | None


def _load_schema_validator() -> Any:
    schema_text = resources.files("probectl.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def default_config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "probectl/config.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Config file {path} must contain a mapping at root")
    return loaded


def _normalize_uuid(value: str, *, context: str) -> str:
    normalized = value.strip().lower()
    if not _UUID_RE.match(normalized):
        raise ConfigValidationError(
            f"{context} must be a 16-bit, 32-bit, or 128-bit UUID string"
        )
    return normalized


def _build_config(doc: dict[str, Any], source: Path | str) -> SessionConfig:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc

    values = dict(doc)
    if values.get("address"):
        values["address"] = values["address"].strip().upper()
    if values.get("service_uuid"):
        values["service_uuid"] = _normalize_uuid(values["service_uuid"], context="service_uuid")
    if "overflow_policy" in values:
        values["overflow_policy"] = OverflowPolicy(values["overflow_policy"])
    for key in ("connect_timeout_s", "scan_timeout_s", "backoff_base_s", "backoff_cap_s", "backoff_factor"):
        if key in values:
            values[key] = float(values[key])

    config = replace(SessionConfig(), **values)
    if config.backoff_cap_s < config.backoff_base_s:
        raise ConfigValidationError(
            f"backoff_cap_s ({config.backoff_cap_s}) must not be below backoff_base_s ({config.backoff_base_s}) in {source}"
        )
    return config


def load_config(path: Path | None = None, overrides: dict[str, Any] | None = None) -> LoadedConfig:
    """Load settings from `path`, or the XDG default file if it exists.

    Keys in `overrides` whose value is None are ignored, so CLI options can be
    passed straight through.
    """
    source: Path | None = None
    doc: dict[str, Any] = {}

    if path is not None:
        source = path
        doc = _read_yaml(path)
    else:
        candidate = default_config_path()
        if candidate.is_file():
            source = candidate
            doc = _read_yaml(candidate)
        else:
            LOGGER.debug("No config file at %s, using defaults", candidate)

    for key, value in (overrides or {}).items():
        if key not in _FIELD_NAMES:
            raise ConfigValidationError(f"Unknown configuration option '{key}'")
        if value is not None:
            doc[key] = value

    config = _build_config(doc, source or "<defaults>")
    if source is not None:
        LOGGER.info("Configuration loaded from %s", source)
    return LoadedConfig(config=config, source=source)
