"""Schema drift: declared type shape vs the schema observed by sampling."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cataloger.models import CodeType, FieldInfo, ObservedSchema

_INTEGERS = {"int", "long", "short", "byte", "sbyte", "uint", "ulong", "ushort", "Int32", "Int64"}
_NUMBERS = {"double", "float", "decimal", "Double", "Decimal", "Decimal128", "Single"}
_COLLECTION = re.compile(r"(\[\]$)|^(I?List|I?Collection|I?Enumerable|HashSet|ISet|Set)<")


@dataclass(frozen=True)
class TypeMismatch:
    field: str
    declared: str
    expected: tuple[str, ...]
    observed: tuple[str, ...]


@dataclass(frozen=True)
class SchemaDrift:
    type_fqn: str
    collection_name: str
    declared_only: tuple[str, ...] = ()
    observed_only: tuple[str, ...] = ()
    type_mismatches: tuple[TypeMismatch, ...] = ()
    requirement_mismatches: tuple[str, ...] = ()

    @property
    def has_drift(self) -> bool:
        return bool(
            self.declared_only
            or self.observed_only
            or self.type_mismatches
            or self.requirement_mismatches
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "type_fqn": self.type_fqn,
            "collection_name": self.collection_name,
            "declared_only": list(self.declared_only),
            "observed_only": list(self.observed_only),
            "type_mismatches": [
                {
                    "field": m.field,
                    "declared": m.declared,
                    "expected": list(m.expected),
                    "observed": list(m.observed),
                }
                for m in self.type_mismatches
            ],
            "requirement_mismatches": list(self.requirement_mismatches),
        }


def expected_types(f: FieldInfo) -> set[str]:
    """Stored type labels a field declared as ``f.declared_type`` may produce."""
    declared = f.declared_type.strip().rstrip("?")
    base = declared.split(".")[-1]
    expected: set[str]
    representation = f.tag("BsonRepresentation")
    if representation is not None and representation.value.endswith("ObjectId"):
        expected = {"objectid", "string"}
    elif _COLLECTION.search(declared):
        expected = {"array"}
    elif base in ("string", "String"):
        expected = {"string"}
    elif base in ("bool", "Boolean"):
        expected = {"boolean"}
    elif base in _INTEGERS:
        expected = {"integer"}
    elif base in _NUMBERS:
        expected = {"number", "integer"}
    elif base in ("DateTime", "DateTimeOffset", "DateOnly"):
        expected = {"datetime"}
    elif base == "ObjectId":
        expected = {"objectid"}
    elif base == "Guid":
        expected = {"binary", "string"}
    elif base.startswith("Dictionary<") or base in ("BsonDocument", "object"):
        expected = {"object"}
    else:
        expected = {"object", "string", "integer"}  # enums and embedded documents
    if f.nullable:
        expected.add("null")
    return expected


def compute_drift(code_type: CodeType, observed: ObservedSchema) -> SchemaDrift:
    """Compare top-level fields of *code_type* with *observed*.

    Fields are matched on their stored element name (``BsonElement`` and the
    ``Id`` -> ``_id`` convention).
    """
    declared = {f.element_name: f for f in code_type.fields}
    observed_fields = {p: t for p, t in observed.field_types.items() if "." not in p}
    required = set(observed.required_fields)

    mismatches: list[TypeMismatch] = []
    requirement: list[str] = []
    for name, f in sorted(declared.items()):
        if name not in observed_fields:
            continue
        seen = set(observed_fields[name])
        allowed = expected_types(f)
        if not seen <= allowed:
            mismatches.append(
                TypeMismatch(name, f.declared_type, tuple(sorted(allowed)), tuple(sorted(seen)))
            )
        declared_required = f.required or not f.nullable
        if declared_required and name not in required:
            requirement.append(f"{name}: declared required, optional in sample")
        elif not declared_required and name in required and "null" not in seen:
            requirement.append(f"{name}: declared optional, present in every sampled document")

    return SchemaDrift(
        type_fqn=code_type.fqn,
        collection_name=observed.collection_name,
        declared_only=tuple(sorted(n for n in declared if n not in observed_fields)),
        observed_only=tuple(sorted(n for n in observed_fields if n not in declared)),
        type_mismatches=tuple(mismatches),
        requirement_mismatches=tuple(requirement),
    )
