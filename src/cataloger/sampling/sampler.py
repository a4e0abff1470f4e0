"""Runtime sampler: bounded random samples from the live database.

Sampling is opt-in and read-only.  Every network call is bounded by the
configured connection timeout, and a caller-supplied ``threading.Event``
cancels the run between collections.  Connection-level failures surface as
:class:`SamplingError` / :class:`SamplingTimeoutError`; a single collection
that cannot be read is logged and skipped.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pymongo import MongoClient
from pymongo.errors import (
    ConfigurationError as MongoConfigurationError,
)
from pymongo.errors import (
    ConnectionFailure,
    ExecutionTimeout,
    NetworkTimeout,
    OperationFailure,
    PyMongoError,
    ServerSelectionTimeoutError,
)

from cataloger.errors import SamplingError, SamplingTimeoutError
from cataloger.infrastructure.config import SamplingConfig
from cataloger.sampling.pii import PiiDetector
from cataloger.sampling.profiler import profile_documents

if TYPE_CHECKING:
    import threading
    from collections.abc import Callable, Iterable

    from cataloger.models import ObservedSchema, ScanContext

logger = logging.getLogger(__name__)

_SYSTEM_PREFIX = "system."


class MongoSampler:
    """Draw ``$sample`` documents per collection and profile them."""

    def __init__(
        self,
        config: SamplingConfig | None = None,
        detector: PiiDetector | None = None,
        *,
        client_factory: Callable[..., Any] = MongoClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config or SamplingConfig()
        self.detector = detector or PiiDetector()
        self.client_factory = client_factory
        self.logger = logger or logging.getLogger(__name__)

    @property
    def active(self) -> bool:
        return self.config.enabled and bool(self.config.connection_string)

    def sample(
        self,
        collection_names: Iterable[str],
        context: ScanContext,
        cancel: threading.Event | None = None,
    ) -> list[ObservedSchema]:
        """Observed schemas for *collection_names* (all collections when empty)."""
        if not self.active:
            self.logger.debug("Sampling disabled or no connection string; skipping")
            return []

        timeout = self.config.connection_timeout_ms
        try:
            client = self.client_factory(
                self.config.connection_string,
                serverSelectionTimeoutMS=timeout,
                connectTimeoutMS=timeout,
                socketTimeoutMS=timeout,
                readPreference="secondaryPreferred",
            )
        except MongoConfigurationError as exc:
            raise SamplingError(f"invalid sampling connection: {exc}") from exc

        try:
            database = self._database(client)
            names = sorted(set(collection_names)) or sorted(database.list_collection_names())
            names = [n for n in names if not n.startswith(_SYSTEM_PREFIX)]
            names = names[: self.config.max_collections]

            schemas: list[ObservedSchema] = []
            for name in names:
                if cancel is not None and cancel.is_set():
                    raise SamplingTimeoutError("sampling cancelled")
                schema = self._sample_collection(database, name, context)
                if schema is not None:
                    schemas.append(schema)
            return schemas
        except (ServerSelectionTimeoutError, NetworkTimeout, ExecutionTimeout) as exc:
            raise SamplingTimeoutError(f"sampling timed out after {timeout} ms") from exc
        except ConnectionFailure as exc:
            raise SamplingError(f"cannot connect to sampling database: {exc}") from exc
        except PyMongoError as exc:
            raise SamplingError(f"sampling failed: {exc}") from exc
        finally:
            client.close()

    def _database(self, client: Any) -> Any:
        if self.config.database:
            return client.get_database(self.config.database)
        try:
            return client.get_default_database()
        except MongoConfigurationError as exc:
            raise SamplingError(
                "no database configured and none named in the connection string"
            ) from exc

    def _sample_collection(
        self, database: Any, name: str, context: ScanContext
    ) -> ObservedSchema | None:
        size = self.config.max_documents_per_collection
        try:
            documents = list(
                database[name].aggregate(
                    [{"$sample": {"size": size}}],
                    maxTimeMS=self.config.connection_timeout_ms,
                )
            )
        except OperationFailure as exc:
            if isinstance(exc, ExecutionTimeout):
                raise
            self.logger.warning("Cannot sample collection %s: %s", name, exc)
            return None

        self.logger.debug("Sampled %d documents from %s", len(documents), name)
        provenance = context.provenance(f"db:{database.name}", name, 0)
        return profile_documents(
            documents[:size],
            name,
            provenance,
            context.timestamp,
            detector=self.detector,
            sampling=self.config,
        )
