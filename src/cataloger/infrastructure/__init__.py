"""Infrastructure domain: configuration, database layer, git, files and health checks."""

from cataloger.infrastructure.config import CatalogerConfig, load_config, with_sampling
from cataloger.infrastructure.db import (
    SCHEMA_VERSION,
    create_schema,
    get_meta,
    open_db,
    set_meta,
)
from cataloger.infrastructure.health import (
    HealthReport,
    HealthSnapshot,
    check_integrity,
    get_latest_snapshots,
    take_snapshot,
)

__all__ = [
    "SCHEMA_VERSION",
    "CatalogerConfig",
    "HealthReport",
    "HealthSnapshot",
    "check_integrity",
    "create_schema",
    "get_latest_snapshots",
    "get_meta",
    "load_config",
    "open_db",
    "set_meta",
    "take_snapshot",
    "with_sampling",
]
