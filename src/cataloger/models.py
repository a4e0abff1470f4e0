"""Domain model: extracted entities, inferred relationships and observed schemas.

Every entity is an immutable dataclass carrying a ``Provenance``.  Enumerated
kinds are ``str`` enums so they serialize to their value in JSON and SQLite.
"""

from __future__ import annotations

import hashlib
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

_ID_SEPARATOR = "\x1f"


def make_id(kind: str, *parts: object) -> str:
    """Deterministic id from an entity kind and its logical identity."""
    raw = _ID_SEPARATOR.join([kind, *(str(p) for p in parts)])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]


class ResolutionMethod(str, Enum):
    LITERAL = "Literal"
    CONSTANT = "Constant"
    CONFIG = "Config"
    INFERRED = "Inferred"
    ENVIRONMENT = "Environment"
    DEPENDENCY_INJECTION = "DependencyInjection"
    UNKNOWN = "Unknown"


class OperationKind(str, Enum):
    FIND = "Find"
    INSERT = "Insert"
    UPDATE = "Update"
    REPLACE = "Replace"
    DELETE = "Delete"
    AGGREGATE = "Aggregate"
    COUNT = "Count"
    DISTINCT = "Distinct"
    FIND_ONE_AND_UPDATE = "FindOneAndUpdate"
    FIND_ONE_AND_REPLACE = "FindOneAndReplace"
    FIND_ONE_AND_DELETE = "FindOneAndDelete"


class RelationshipKind(str, Enum):
    REFERS_TO = "REFERS_TO"
    LOOKUP = "LOOKUP"
    EMBEDDED = "EMBEDDED"
    INHERITANCE = "INHERITANCE"
    COMPOSITION = "COMPOSITION"
    AGGREGATION = "AGGREGATION"


class Cardinality(str, Enum):
    ONE_TO_ONE = "OneToOne"
    ONE_TO_MANY = "OneToMany"
    MANY_TO_ONE = "ManyToOne"
    MANY_TO_MANY = "ManyToMany"
    UNKNOWN = "Unknown"


class EvidenceKind(str, Enum):
    FILTER = "Filter"
    LOOKUP = "Lookup"
    NAMING_CONVENTION = "NamingConvention"
    FIELD_TYPE = "FieldType"
    BSON_ATTRIBUTE = "BSONAttribute"
    AGGREGATION = "Aggregation"
    DOCUMENTATION = "Documentation"
    DATA_PATTERN = "DataPattern"


class ScanType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    INTEGRITY = "integrity"


class RunStatus(str, Enum):
    STARTED = "Started"
    SCANNING = "Scanning"
    RECONCILING = "Reconciling"
    COMPLETED = "Completed"
    PARTIAL_FAILURE = "PartialFailure"


class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    UNHEALTHY = "Unhealthy"


# ---------------------------------------------------------------------------
# Provenance
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Provenance:
    """Origin of an extracted fact."""

    repository: str
    file_path: str
    symbol_name: str
    line_start: int
    line_end: int
    commit_sha: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "repository": self.repository,
            "file_path": self.file_path,
            "symbol_name": self.symbol_name,
            "line_start": self.line_start,
            "line_end": self.line_end,
            "commit_sha": self.commit_sha,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Provenance:
        return cls(
            repository=data["repository"],
            file_path=data["file_path"],
            symbol_name=data["symbol_name"],
            line_start=int(data["line_start"]),
            line_end=int(data["line_end"]),
            commit_sha=data["commit_sha"],
            timestamp=data["timestamp"],
        )


@dataclass(frozen=True)
class SourceLocation:
    file_path: str
    line: int
    column: int = 0
    symbol_name: str = ""
    method_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "line": self.line,
            "column": self.column,
            "symbol_name": self.symbol_name,
            "method_name": self.method_name,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SourceLocation:
        return cls(
            file_path=data["file_path"],
            line=int(data["line"]),
            column=int(data.get("column", 0)),
            symbol_name=data.get("symbol_name", ""),
            method_name=data.get("method_name", ""),
        )


# ---------------------------------------------------------------------------
# Code types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SerializationTag:
    """A serialization attribute: short name plus its first argument."""

    name: str
    value: str = "true"


@dataclass(frozen=True)
class FieldInfo:
    name: str
    declared_type: str
    nullable: bool = False
    required: bool = False
    tags: tuple[SerializationTag, ...] = ()
    documentation: str = ""

    def tag(self, name: str) -> SerializationTag | None:
        for t in self.tags:
            if t.name == name:
                return t
        return None

    @property
    def element_name(self) -> str:
        """Name of the stored document element for this field."""
        element = self.tag("BsonElement")
        if element is not None and element.value != "true":
            return element.value
        if self.tag("BsonId") is not None or self.name == "Id":
            return "_id"
        return self.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "declared_type": self.declared_type,
            "nullable": self.nullable,
            "required": self.required,
            "tags": [{"name": t.name, "value": t.value} for t in self.tags],
            "documentation": self.documentation,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FieldInfo:
        return cls(
            name=data["name"],
            declared_type=data["declared_type"],
            nullable=bool(data.get("nullable", False)),
            required=bool(data.get("required", False)),
            tags=tuple(SerializationTag(t["name"], t["value"]) for t in data.get("tags", [])),
            documentation=data.get("documentation", ""),
        )


@dataclass(frozen=True)
class CodeType:
    """A declared type with document-store characteristics."""

    id: str
    fqn: str
    name: str
    namespace: str
    fields: tuple[FieldInfo, ...]
    provenance: Provenance
    discriminators: tuple[str, ...] = ()
    tags: tuple[SerializationTag, ...] = ()
    base_types: tuple[str, ...] = ()
    documentation: str = ""

    def field_named(self, name: str) -> FieldInfo | None:
        lowered = name.lower()
        for f in self.fields:
            if f.name.lower() == lowered:
                return f
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fqn": self.fqn,
            "name": self.name,
            "namespace": self.namespace,
            "fields": [f.to_dict() for f in self.fields],
            "discriminators": list(self.discriminators),
            "tags": [{"name": t.name, "value": t.value} for t in self.tags],
            "base_types": list(self.base_types),
            "documentation": self.documentation,
            "provenance": self.provenance.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CodeType:
        return cls(
            id=data["id"],
            fqn=data["fqn"],
            name=data["name"],
            namespace=data.get("namespace", ""),
            fields=tuple(FieldInfo.from_dict(f) for f in data.get("fields", [])),
            provenance=Provenance.from_dict(data["provenance"]),
            discriminators=tuple(data.get("discriminators", [])),
            tags=tuple(SerializationTag(t["name"], t["value"]) for t in data.get("tags", [])),
            base_types=tuple(data.get("base_types", [])),
            documentation=data.get("documentation", ""),
        )


# ---------------------------------------------------------------------------
# Collections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccessorSite:
    """One place where code obtains a collection handle for a type."""

    type_name: str
    collection_name: str | None
    method: ResolutionMethod
    confidence: float
    context: str
    location: SourceLocation

    def to_dict(self) -> dict[str, Any]:
        return {
            "type_name": self.type_name,
            "collection_name": self.collection_name,
            "method": self.method.value,
            "confidence": self.confidence,
            "context": self.context,
            "location": self.location.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AccessorSite:
        return cls(
            type_name=data["type_name"],
            collection_name=data.get("collection_name"),
            method=ResolutionMethod(data["method"]),
            confidence=float(data["confidence"]),
            context=data.get("context", ""),
            location=SourceLocation.from_dict(data["location"]),
        )


@dataclass(frozen=True)
class CollectionMapping:
    id: str
    type_id: str
    type_fqn: str
    collection_name: str
    method: ResolutionMethod
    confidence: float
    is_primary: bool
    provenance: Provenance
    alternatives: tuple[str, ...] = ()
    context: str = ""

    @property
    def collection_id(self) -> str:
        return collection_id(self.collection_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type_id": self.type_id,
            "type_fqn": self.type_fqn,
            "collection_name": self.collection_name,
            "collection_id": self.collection_id,
            "method": self.method.value,
            "confidence": self.confidence,
            "is_primary": self.is_primary,
            "alternatives": list(self.alternatives),
            "context": self.context,
            "provenance": self.provenance.to_dict(),
        }


def collection_id(name: str) -> str:
    return make_id("collection", name)


# ---------------------------------------------------------------------------
# Query operations
# ---------------------------------------------------------------------------


StageValue = Any


def _freeze(value: Any) -> StageValue:
    if isinstance(value, StageBody):
        return value
    if isinstance(value, Mapping):
        return StageBody.from_mapping(value)
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: StageValue) -> Any:
    if isinstance(value, StageBody):
        return value.to_dict()
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class StageBody:
    """Immutable key/value view of a document literal or aggregation stage."""

    items: tuple[tuple[str, StageValue], ...] = ()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> StageBody:
        return cls(tuple((str(k), _freeze(v)) for k, v in data.items()))

    def __contains__(self, key: object) -> bool:
        return any(k == key for k, _ in self.items)

    def __len__(self) -> int:
        return len(self.items)

    def keys(self) -> list[str]:
        return [k for k, _ in self.items]

    def get(self, key: str, default: StageValue = None) -> StageValue:
        for k, v in self.items:
            if k == key:
                return v
        return default

    def get_str(self, key: str) -> str | None:
        value = self.get(key)
        return value if isinstance(value, str) else None

    def get_int(self, key: str) -> int | None:
        value = self.get(key)
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value

    def to_dict(self) -> dict[str, Any]:
        return {k: _thaw(v) for k, v in self.items}


@dataclass(frozen=True)
class FilterTerm:
    """One decomposed filter predicate."""

    field_path: str
    operator: str
    value: Any = None
    negated: bool = False


UNPARSED_FIELD = "<unparsed>"


@dataclass(frozen=True)
class Projection:
    field_path: str
    included: bool = True
    expression: str | None = None


@dataclass(frozen=True)
class SortKey:
    field_path: str
    direction: int = 1
    priority: int = 0


@dataclass(frozen=True)
class UpdateTerm:
    operator: str
    field_path: str
    value: Any = None


@dataclass(frozen=True)
class AggregationStage:
    name: str
    body: StageBody
    order: int


@dataclass(frozen=True)
class QueryOperation:
    """A database call site and the shape of its query."""

    id: str
    collection_id: str
    collection_name: str
    kind: OperationKind
    location: SourceLocation
    provenance: Provenance
    filters: tuple[FilterTerm, ...] = ()
    projections: tuple[Projection, ...] = ()
    sort: tuple[SortKey, ...] = ()
    limit: int | None = None
    skip: int | None = None
    pipeline: tuple[AggregationStage, ...] = ()
    updates: tuple[UpdateTerm, ...] = ()
    method_name: str = ""
    has_read_preference: bool = False
    has_write_concern: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "collection_id": self.collection_id,
            "collection_name": self.collection_name,
            "kind": self.kind.value,
            "filters": [
                {
                    "field_path": f.field_path,
                    "operator": f.operator,
                    "value": _thaw(f.value),
                    "negated": f.negated,
                }
                for f in self.filters
            ],
            "projections": [
                {"field_path": p.field_path, "included": p.included, "expression": p.expression}
                for p in self.projections
            ],
            "sort": [
                {"field_path": s.field_path, "direction": s.direction, "priority": s.priority}
                for s in self.sort
            ],
            "limit": self.limit,
            "skip": self.skip,
            "pipeline": [
                {"name": s.name, "body": s.body.to_dict(), "order": s.order}
                for s in self.pipeline
            ],
            "updates": [
                {"operator": u.operator, "field_path": u.field_path, "value": _thaw(u.value)}
                for u in self.updates
            ],
            "method_name": self.method_name,
            "has_read_preference": self.has_read_preference,
            "has_write_concern": self.has_write_concern,
            "location": self.location.to_dict(),
            "provenance": self.provenance.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> QueryOperation:
        return cls(
            id=data["id"],
            collection_id=data["collection_id"],
            collection_name=data["collection_name"],
            kind=OperationKind(data["kind"]),
            location=SourceLocation.from_dict(data["location"]),
            provenance=Provenance.from_dict(data["provenance"]),
            filters=tuple(
                FilterTerm(f["field_path"], f["operator"], _freeze(f.get("value")), f["negated"])
                for f in data.get("filters", [])
            ),
            projections=tuple(
                Projection(p["field_path"], p["included"], p.get("expression"))
                for p in data.get("projections", [])
            ),
            sort=tuple(
                SortKey(s["field_path"], s["direction"], s["priority"])
                for s in data.get("sort", [])
            ),
            limit=data.get("limit"),
            skip=data.get("skip"),
            pipeline=tuple(
                AggregationStage(s["name"], StageBody.from_mapping(s["body"]), s["order"])
                for s in data.get("pipeline", [])
            ),
            updates=tuple(
                UpdateTerm(u["operator"], u["field_path"], _freeze(u.get("value")))
                for u in data.get("updates", [])
            ),
            method_name=data.get("method_name", ""),
            has_read_preference=bool(data.get("has_read_preference", False)),
            has_write_concern=bool(data.get("has_write_concern", False)),
        )


# ---------------------------------------------------------------------------
# Relationships
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Evidence:
    kind: EvidenceKind
    description: str
    confidence: float
    location: SourceLocation

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "description": self.description,
            "confidence": self.confidence,
            "location": self.location.to_dict(),
        }


@dataclass(frozen=True)
class DataRelationship:
    id: str
    source_type_id: str
    target_type_id: str
    source_fqn: str
    target_fqn: str
    kind: RelationshipKind
    confidence: float
    field_path: str
    cardinality: Cardinality
    provenance: Provenance
    evidence: tuple[Evidence, ...] = ()
    is_bidirectional: bool = False
    is_required: bool = False

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (self.source_type_id, self.target_type_id, self.kind.value, self.field_path)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_type_id": self.source_type_id,
            "target_type_id": self.target_type_id,
            "source_fqn": self.source_fqn,
            "target_fqn": self.target_fqn,
            "kind": self.kind.value,
            "confidence": self.confidence,
            "field_path": self.field_path,
            "cardinality": self.cardinality.value,
            "is_bidirectional": self.is_bidirectional,
            "is_required": self.is_required,
            "evidence": [e.to_dict() for e in self.evidence],
            "provenance": self.provenance.to_dict(),
        }


# ---------------------------------------------------------------------------
# Observed schemas
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StringFormat:
    field_path: str
    format: str
    frequency: float
    confidence: float


@dataclass(frozen=True)
class EnumCandidate:
    field_path: str
    values: tuple[str, ...]
    distinct_count: int
    confidence: float


@dataclass(frozen=True)
class PiiDetection:
    field_path: str
    kind: str
    method: str
    count: int


@dataclass(frozen=True)
class ObservedSchema:
    """Statistics derived from a bounded sample of one collection."""

    id: str
    collection_id: str
    collection_name: str
    field_types: dict[str, dict[str, float]]
    required_fields: tuple[str, ...]
    sample_size: int
    pii_redacted: bool
    sampled_at: str
    provenance: Provenance
    string_formats: tuple[StringFormat, ...] = ()
    enum_candidates: tuple[EnumCandidate, ...] = ()
    pii_detections: tuple[PiiDetection, ...] = ()
    schema: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "collection_id": self.collection_id,
            "collection_name": self.collection_name,
            "field_types": self.field_types,
            "required_fields": list(self.required_fields),
            "string_formats": [
                {
                    "field_path": s.field_path,
                    "format": s.format,
                    "frequency": s.frequency,
                    "confidence": s.confidence,
                }
                for s in self.string_formats
            ],
            "enum_candidates": [
                {
                    "field_path": e.field_path,
                    "values": list(e.values),
                    "distinct_count": e.distinct_count,
                    "confidence": e.confidence,
                }
                for e in self.enum_candidates
            ],
            "pii_detections": [
                {"field_path": p.field_path, "kind": p.kind, "method": p.method, "count": p.count}
                for p in self.pii_detections
            ],
            "sample_size": self.sample_size,
            "pii_redacted": self.pii_redacted,
            "sampled_at": self.sampled_at,
            "schema": self.schema,
            "provenance": self.provenance.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ObservedSchema:
        return cls(
            id=data["id"],
            collection_id=data["collection_id"],
            collection_name=data["collection_name"],
            field_types={k: dict(v) for k, v in data.get("field_types", {}).items()},
            required_fields=tuple(data.get("required_fields", [])),
            sample_size=int(data.get("sample_size", 0)),
            pii_redacted=bool(data.get("pii_redacted", False)),
            sampled_at=data.get("sampled_at", ""),
            provenance=Provenance.from_dict(data["provenance"]),
            string_formats=tuple(
                StringFormat(s["field_path"], s["format"], s["frequency"], s["confidence"])
                for s in data.get("string_formats", [])
            ),
            enum_candidates=tuple(
                EnumCandidate(
                    e["field_path"], tuple(e["values"]), e["distinct_count"], e["confidence"]
                )
                for e in data.get("enum_candidates", [])
            ),
            pii_detections=tuple(
                PiiDetection(p["field_path"], p["kind"], p["method"], p["count"])
                for p in data.get("pii_detections", [])
            ),
            schema=dict(data.get("schema", {})),
        )


# ---------------------------------------------------------------------------
# Knowledge base projection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KnowledgeBaseEntry:
    """Search-optimized projection of one entity."""

    id: str
    entity_type: str
    entity_id: str
    title: str
    searchable_text: str
    provenance: Provenance
    tags: tuple[str, ...] = ()
    relevance: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScanContext:
    """Repository, commit and time stamped onto every fact of one scan."""

    repository: str
    commit_sha: str
    timestamp: str

    def provenance(
        self, file_path: str, symbol_name: str, line_start: int, line_end: int | None = None
    ) -> Provenance:
        return Provenance(
            repository=self.repository,
            file_path=file_path,
            symbol_name=symbol_name,
            line_start=line_start,
            line_end=line_end if line_end is not None else line_start,
            commit_sha=self.commit_sha,
            timestamp=self.timestamp,
        )
