"""Configuration: ``.cataloger/config.yml`` sections with built-in defaults."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from typing import TYPE_CHECKING, Any

import yaml

from cataloger.errors import ConfigurationError

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_DIR = ".cataloger"
CONFIG_FILE = "config.yml"
DEFAULT_KB_PATH = f"{CONFIG_DIR}/cataloger.db"


@dataclass(frozen=True)
class ScanningConfig:
    max_concurrent_repositories: int = 5
    max_concurrent_files: int = 20
    included_extensions: tuple[str, ...] = (".cs",)
    excluded_directories: tuple[str, ...] = ("bin", "obj", "node_modules", ".git", ".vs")
    max_file_size_mb: int = 10


@dataclass(frozen=True)
class AnalysisConfig:
    # Substrings of attribute names that mark a serialized document type.
    serialization_markers: tuple[str, ...] = ("Bson", "MongoDB", "Collection")
    # Substrings of base or member types that mark document-store code.
    document_type_markers: tuple[str, ...] = (
        "MongoDB",
        "Bson",
        "IMongoCollection",
        "IMongoDatabase",
        "ObjectId",
    )
    accessor_methods: tuple[str, ...] = ("GetCollection",)
    collection_suffixes: tuple[str, ...] = ("Entity", "Model", "Document", "Record")


@dataclass(frozen=True)
class SamplingConfig:
    enabled: bool = False
    connection_string: str | None = None
    database: str | None = None
    max_documents_per_collection: int = 100
    max_collections: int = 100
    connection_timeout_ms: int = 30000
    enum_max_distinct: int = 10
    enum_max_ratio: float = 0.5


_DEFAULT_PII_PATTERNS: dict[str, str] = {
    "email": r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
    "ssn": r"\b\d{3}-\d{2}-\d{4}\b",
    "phone": r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{4}\b",
    "hex_blob": r"\b[A-Fa-f0-9]{32,}\b",
    "base64_blob": r"\b[A-Za-z0-9+/]{40,}={0,2}",
}


@dataclass(frozen=True)
class PiiConfig:
    enabled: bool = True
    field_names: tuple[str, ...] = (
        "email",
        "phone",
        "ssn",
        "token",
        "key",
        "address",
        "name",
        "ip",
        "jwt",
        "credit",
        "password",
        "secret",
        "private",
        "personal",
        "sensitive",
        "confidential",
    )
    value_patterns: dict[str, str] = field(default_factory=lambda: dict(_DEFAULT_PII_PATTERNS))
    redaction_value: str = "[REDACTED]"


@dataclass(frozen=True)
class CatalogerConfig:
    scanning: ScanningConfig = field(default_factory=ScanningConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    pii: PiiConfig = field(default_factory=PiiConfig)
    # Config/environment key -> collection name.
    collections: dict[str, str] = field(default_factory=dict)
    knowledge_base_path: str = DEFAULT_KB_PATH


def _coerce(section: str, name: str, value: Any, default: Any) -> Any:
    """Convert a YAML value to the type of the dataclass default."""
    where = f"{section}.{name}"
    if isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigurationError(f"{where} must be a boolean")
        return value
    if isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"{where} must be an integer")
        if value < 0:
            raise ConfigurationError(f"{where} must not be negative")
        return value
    if isinstance(default, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationError(f"{where} must be a number")
        return float(value)
    if isinstance(default, tuple):
        if not isinstance(value, list):
            raise ConfigurationError(f"{where} must be a list")
        return tuple(str(v) for v in value)
    if isinstance(default, dict):
        if not isinstance(value, dict):
            raise ConfigurationError(f"{where} must be a mapping")
        return {str(k): str(v) for k, v in value.items()}
    if value is not None and not isinstance(value, str):
        raise ConfigurationError(f"{where} must be a string")
    return value


def _merge_section(name: str, cls: type[Any], data: Any) -> Any:
    defaults = cls()
    if data is None:
        return defaults
    if not isinstance(data, dict):
        raise ConfigurationError(f"{name} must be a mapping")
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name in data:
            kwargs[f.name] = _coerce(name, f.name, data[f.name], getattr(defaults, f.name))
    return replace(defaults, **kwargs)


def parse_config(data: Any) -> CatalogerConfig:
    """Build a config from an already-parsed YAML document."""
    if data is None:
        return CatalogerConfig()
    if not isinstance(data, dict):
        raise ConfigurationError("config root must be a mapping")

    collections = data.get("collections") or {}
    if not isinstance(collections, dict):
        raise ConfigurationError("collections must be a mapping")

    kb = data.get("knowledge_base") or {}
    if not isinstance(kb, dict):
        raise ConfigurationError("knowledge_base must be a mapping")
    kb_path = kb.get("path", DEFAULT_KB_PATH)
    if not isinstance(kb_path, str):
        raise ConfigurationError("knowledge_base.path must be a string")

    pii = _merge_section("pii", PiiConfig, data.get("pii"))
    if "value_patterns" in (data.get("pii") or {}):
        # Configured patterns extend the built-in ones.
        pii = replace(pii, value_patterns={**_DEFAULT_PII_PATTERNS, **pii.value_patterns})

    return CatalogerConfig(
        scanning=_merge_section("scanning", ScanningConfig, data.get("scanning")),
        analysis=_merge_section("analysis", AnalysisConfig, data.get("analysis")),
        sampling=_merge_section("sampling", SamplingConfig, data.get("sampling")),
        pii=pii,
        collections={str(k): str(v) for k, v in collections.items()},
        knowledge_base_path=kb_path,
    )


def load_config(project_root: Path, config_path: Path | None = None) -> CatalogerConfig:
    """Load configuration for *project_root*.

    Reads *config_path* when given, else ``.cataloger/config.yml``.  A missing
    file yields defaults; malformed YAML or wrongly typed values raise
    :class:`ConfigurationError`.
    """
    path = config_path or project_root / CONFIG_DIR / CONFIG_FILE
    if not path.is_file():
        if config_path is not None:
            raise ConfigurationError(f"config file not found: {path}")
        return CatalogerConfig()

    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in {path}: {exc}") from exc

    config = parse_config(data)
    logger.debug("Loaded configuration from %s", path)
    return config


def with_sampling(config: CatalogerConfig, **overrides: Any) -> CatalogerConfig:
    """Return *config* with sampling/PII overrides applied (``None`` = keep)."""
    sampling_fields = {f.name for f in fields(SamplingConfig)}
    sampling_kwargs = {
        k: v for k, v in overrides.items() if k in sampling_fields and v is not None
    }
    sampling = replace(config.sampling, **sampling_kwargs)
    pii = config.pii
    if overrides.get("pii_enabled") is not None:
        pii = replace(pii, enabled=bool(overrides["pii_enabled"]))
    return replace(config, sampling=sampling, pii=pii)
