"""Observed-schema statistics over a sample of documents.

PII is classified and redacted per value *before* any statistic is taken, so
neither the schema, the string formats nor the enum candidates can contain a
literal sampled value that was flagged.  A redacted field still counts towards
presence and type frequencies.
"""

from __future__ import annotations

import re
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from bson import Decimal128, ObjectId

from cataloger.infrastructure.config import SamplingConfig
from cataloger.models import (
    EnumCandidate,
    ObservedSchema,
    PiiDetection,
    StringFormat,
    collection_id,
    make_id,
)
from cataloger.sampling.pii import PiiDetector

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

    from cataloger.models import Provenance

FORMAT_THRESHOLD = 0.5

_UUID = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
_ISO_DATE = r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$"

_FORMATS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("uuid", re.compile(_UUID)),
    ("email", re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")),
    ("url", re.compile(r"^https?://\S+$")),
    ("date", re.compile(_ISO_DATE)),
    ("phone", re.compile(r"^\+?[\d\s\-()]{7,}$")),
    ("objectid", re.compile(r"^[0-9a-fA-F]{24}$")),
    ("hex", re.compile(r"^[0-9a-fA-F]{16,}$")),
)


def bson_type(value: Any) -> str:
    """Stable type label for a decoded BSON value."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, (float, Decimal, Decimal128)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, datetime):
        return "datetime"
    if isinstance(value, ObjectId):
        return "objectid"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, (bytes, bytearray)):
        return "binary"
    return "unknown"


def classify_string(value: str) -> str | None:
    for name, pattern in _FORMATS:
        if pattern.match(value):
            return name
    return None


def iter_fields(document: Mapping[str, Any], prefix: str = "") -> Iterator[tuple[str, Any]]:
    """Yield ``(dotted_path, value)`` for every field, recursing into
    sub-documents and documents inside arrays."""
    for key, value in document.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        yield path, value
        if isinstance(value, dict):
            yield from iter_fields(value, path)
        elif isinstance(value, (list, tuple)):
            for item in value:
                if isinstance(item, dict):
                    yield from iter_fields(item, path)


@dataclass
class _FieldStats:
    occurrences: int = 0
    documents: int = 0
    types: Counter[str] = field(default_factory=Counter)
    strings: int = 0
    formats: Counter[str] = field(default_factory=Counter)
    scalars: Counter[str] = field(default_factory=Counter)
    pii: Counter[tuple[str, str]] = field(default_factory=Counter)


def profile_documents(
    documents: Sequence[Mapping[str, Any]],
    collection_name: str,
    provenance: Provenance,
    sampled_at: str,
    *,
    detector: PiiDetector | None = None,
    sampling: SamplingConfig | None = None,
) -> ObservedSchema:
    """Derive an :class:`ObservedSchema` from *documents*."""
    detector = detector or PiiDetector()
    sampling = sampling or SamplingConfig()
    stats: dict[str, _FieldStats] = defaultdict(_FieldStats)

    for document in documents:
        seen: set[str] = set()
        for path, value in iter_fields(document):
            entry = stats[path]
            entry.occurrences += 1
            if path not in seen:
                entry.documents += 1
                seen.add(path)
            entry.types[bson_type(value)] += 1

            detection = detector.detect(path, value)
            if detection is not None:
                entry.pii[detection] += 1
                if isinstance(value, str):
                    entry.strings += 1
                    # Only the detection label is counted; never the value.
                    entry.formats[detection[0]] += 1
                continue

            if isinstance(value, str):
                entry.strings += 1
                fmt = classify_string(value)
                if fmt is not None:
                    entry.formats[fmt] += 1
            if isinstance(value, (str, int, bool)):
                entry.scalars[str(value)] += 1

    total = len(documents)
    field_types = {
        path: {
            name: round(count / entry.occurrences, 4)
            for name, count in sorted(entry.types.items(), key=lambda kv: (-kv[1], kv[0]))
        }
        for path, entry in sorted(stats.items())
    }
    required = tuple(
        path for path, entry in sorted(stats.items()) if total and entry.documents == total
    )

    formats: list[StringFormat] = []
    enums: list[EnumCandidate] = []
    detections: list[PiiDetection] = []
    schema_properties: dict[str, dict[str, Any]] = {}

    for path, entry in sorted(stats.items()):
        prop: dict[str, Any] = {
            "types": list(field_types[path]),
            "required": path in required,
        }
        if entry.strings and entry.formats:
            fmt, count = max(entry.formats.items(), key=lambda kv: (kv[1], kv[0]))
            frequency = round(count / entry.strings, 4)
            if frequency >= FORMAT_THRESHOLD:
                formats.append(StringFormat(path, fmt, frequency, frequency))
                prop["format"] = fmt

        if entry.pii:
            for (kind, method), count in sorted(entry.pii.items()):
                detections.append(PiiDetection(path, kind, method, count))
            prop["pii"] = sorted({kind for kind, _ in entry.pii})
            prop["redacted"] = detector.redaction_value
        else:
            candidate = _enum_candidate(path, entry.scalars, sampling)
            if candidate is not None:
                enums.append(candidate)
                prop["enum"] = list(candidate.values)
        schema_properties[path] = prop

    schema = {
        "type": "object",
        "sample_size": total,
        "required": list(required),
        "properties": schema_properties,
    }
    return ObservedSchema(
        id=make_id("schema", provenance.repository, collection_name),
        collection_id=collection_id(collection_name),
        collection_name=collection_name,
        field_types=field_types,
        required_fields=required,
        sample_size=total,
        pii_redacted=detector.enabled,
        sampled_at=sampled_at,
        provenance=provenance,
        string_formats=tuple(formats),
        enum_candidates=tuple(enums),
        pii_detections=tuple(detections),
        schema=schema,
    )


def _enum_candidate(
    path: str, values: Counter[str], sampling: SamplingConfig
) -> EnumCandidate | None:
    observed = sum(values.values())
    distinct = len(values)
    if observed == 0 or distinct < 2 or distinct > sampling.enum_max_distinct:
        return None
    if distinct / observed > sampling.enum_max_ratio:
        return None
    confidence = round(max(0.1, 1.0 - distinct / observed), 4)
    return EnumCandidate(path, tuple(sorted(values)), distinct, confidence)
