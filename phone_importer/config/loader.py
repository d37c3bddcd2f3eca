from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

"""Configuration loader for the phone workbook importer.

Responsibilities:
- Load YAML config (default: config/import.yml)
- Validate against the packaged JSON schema (config_schema.json)
- Apply defaults for every optional section
"""

SCHEMA_PATH = Path(__file__).with_name("config_schema.json")

DEFAULT_CONFIG_PATH = Path("config/import.yml")


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class DatabaseConfig:
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None


@dataclass(frozen=True)
class NationalFormatConfig:
    """Shape of a national subscriber number (Singapore by default)."""
    country_code: str = "65"
    local_length: int = 8
    leading_digits: str = "689"


@dataclass(frozen=True)
class DetectionConfig:
    header_scan_rows: int = 10  # rows scanned for a header candidate
    sample_rows: int = 10  # data rows sampled by the pattern fallbacks
    phone_ratio_threshold: float = 0.5  # strictly greater than
    id_min_samples: int = 3
    role_cache_size: int = 256


@dataclass(frozen=True)
class SyncConfig:
    raw_page_size: int = 500
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    promote: bool = True  # write to the validated store after the raw store


@dataclass(frozen=True)
class PipelineConfig:
    source_directory: str = "./data"
    source_glob: str = "*.xlsx"
    mode: str = "adaptive"
    national_format: NationalFormatConfig = field(default_factory=NationalFormatConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    placeholders: tuple[str, ...] = ()
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    @classmethod
    def default(cls) -> PipelineConfig:
        return cls()


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the packaged JSON schema.

    Raises:
        ConfigError: if the schema file is missing or unreadable, or if the
            config data violates it (missing keys, wrong types, unknown keys).
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")

    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def config_from_dict(data: dict[str, Any]) -> PipelineConfig:
    """Build a PipelineConfig from an already-parsed mapping (schema checked)."""
    _validate_config_schema(data)

    fmt = NationalFormatConfig(**data.get("national_format", {}))
    if len(fmt.country_code) + fmt.local_length > 17:
        raise ConfigError("national_format: country_code + local_length too long")

    db_raw = data.get("database", {}) or {}
    return PipelineConfig(
        source_directory=data["source_directory"],
        source_glob=data.get("source_glob", "*.xlsx"),
        mode=data.get("mode", "adaptive"),
        national_format=fmt,
        detection=DetectionConfig(**data.get("detection", {})),
        sync=SyncConfig(**data.get("sync", {})),
        placeholders=tuple(data.get("placeholders", [])),
        database=DatabaseConfig(
            host=db_raw.get("host"),
            port=db_raw.get("port"),
            user=db_raw.get("user"),
            password=db_raw.get("password"),
            database=db_raw.get("database"),
            dsn=db_raw.get("dsn"),
        ),
    )


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> PipelineConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config root must be a mapping, got {type(data).__name__}")
    return config_from_dict(data)
