"""Relationship inferencer: confidence-scored links between document types.

Four independent passes propose candidates:

1. filter fields shaped like foreign keys (``userId`` on ``orders``),
2. explicit ``$lookup`` joins,
3. ``{Type}Id`` / ``{Type}_id`` field naming,
4. fields whose declared type names another document type.

Candidates are merged by ``(source, target, kind, field_path)``.  The merged
record keeps the highest confidence and one evidence item per pass kind.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from cataloger.models import (
    UNPARSED_FIELD,
    Cardinality,
    DataRelationship,
    Evidence,
    EvidenceKind,
    RelationshipKind,
    SourceLocation,
    make_id,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from cataloger.models import (
        CodeType,
        CollectionMapping,
        FieldInfo,
        Provenance,
        QueryOperation,
    )

logger = logging.getLogger(__name__)

FILTER_BASE_CONFIDENCE = 0.5
EQUALITY_BONUS = 0.2
ID_SUFFIX_BONUS = 0.2
OBJECT_ID_BONUS = 0.1
LOOKUP_CONFIDENCE = 0.9
NAMING_CONFIDENCE = 0.6
FIELD_TYPE_CONFIDENCE = 0.7

_FOREIGN_KEY_RE = re.compile(r"^(?P<stem>.+?)_?id$", re.IGNORECASE)
_OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")
_GENERIC_HEAD_RE = re.compile(r"^(?:[\w.]+\.)?(?P<name>\w+)\s*<")
_COLLECTION_GENERICS = frozenset(
    {
        "List",
        "IList",
        "IReadOnlyList",
        "ICollection",
        "IReadOnlyCollection",
        "Collection",
        "ReadOnlyCollection",
        "ObservableCollection",
        "IEnumerable",
        "HashSet",
        "ISet",
        "IReadOnlySet",
        "SortedSet",
        "LinkedList",
        "Queue",
        "Stack",
        "Dictionary",
        "IDictionary",
        "IReadOnlyDictionary",
        "SortedDictionary",
        "ImmutableArray",
        "ImmutableList",
        "ImmutableHashSet",
    }
)


def filter_confidence(field_path: str, operator: str, value: object) -> float:
    """Base 0.5, +0.2 equality, +0.2 ``...Id`` path, +0.1 ObjectId-shaped value."""
    score = FILTER_BASE_CONFIDENCE
    if operator == "eq":
        score += EQUALITY_BONUS
    if field_path.endswith("Id"):
        score += ID_SUFFIX_BONUS
    if isinstance(value, str) and _OBJECT_ID_RE.match(value):
        score += OBJECT_ID_BONUS
    return round(min(score, 1.0), 4)


def is_collection_type(type_text: str) -> bool:
    """Arrays and generic collection shapes such as ``List<T>`` or ``IEnumerable<T>``."""
    text = type_text.strip().rstrip("?")
    if text.endswith("]"):
        return True
    match = _GENERIC_HEAD_RE.match(text)
    return match is not None and match.group("name") in _COLLECTION_GENERICS


def references_type(type_text: str, type_name: str) -> bool:
    """True when *type_text* names *type_name* as a whole identifier."""
    return re.search(rf"(?<![\w]){re.escape(type_name)}(?![\w])", type_text) is not None


@dataclass
class _Candidate:
    source: CodeType
    target: CodeType
    kind: RelationshipKind
    field_path: str
    confidence: float
    cardinality: Cardinality
    provenance: Provenance
    evidence: list[Evidence] = field(default_factory=list)
    is_required: bool = False


def _type_location(code_type: CodeType) -> SourceLocation:
    prov = code_type.provenance
    return SourceLocation(prov.file_path, prov.line_start, symbol_name=code_type.fqn)


class RelationshipInferencer:
    """Run the four inference passes and merge their candidates."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)

    def infer(
        self,
        types: Sequence[CodeType],
        operations: Iterable[QueryOperation],
        mappings: Iterable[CollectionMapping],
    ) -> list[DataRelationship]:
        operations = list(operations)
        by_collection = _types_by_collection(types, mappings)
        by_stem = _types_by_stem(types)

        candidates: list[_Candidate] = []
        candidates.extend(self._from_filters(operations, by_collection, by_stem))
        candidates.extend(self._from_lookups(operations, by_collection))
        candidates.extend(self._from_naming(types))
        candidates.extend(self._from_field_types(types))

        relationships = merge_candidates(candidates)
        self.logger.debug(
            "Inferred %d relationships from %d candidates", len(relationships), len(candidates)
        )
        return relationships

    # ---- Pass 1: filters ----

    def _from_filters(
        self,
        operations: list[QueryOperation],
        by_collection: dict[str, list[CodeType]],
        by_stem: dict[str, CodeType],
    ) -> list[_Candidate]:
        result: list[_Candidate] = []
        for op in operations:
            sources = by_collection.get(op.collection_name, [])
            if not sources:
                continue
            for term in op.filters:
                if term.field_path == UNPARSED_FIELD:
                    continue
                leaf = term.field_path.rsplit(".", 1)[-1]
                match = _FOREIGN_KEY_RE.match(leaf)
                if match is None:
                    continue
                stem = match.group("stem").rstrip("_").lower()
                target = by_stem.get(stem)
                if not stem or target is None:
                    continue
                confidence = filter_confidence(term.field_path, term.operator, term.value)
                evidence = Evidence(
                    EvidenceKind.FILTER,
                    f"Filter expression '{term.field_path} {term.operator} {term.value}'",
                    confidence,
                    op.location,
                )
                for source in sources:
                    if source.id == target.id:
                        continue
                    result.append(
                        _Candidate(
                            source,
                            target,
                            RelationshipKind.REFERS_TO,
                            term.field_path,
                            confidence,
                            Cardinality.MANY_TO_ONE,
                            op.provenance,
                            [evidence],
                        )
                    )
        return result

    # ---- Pass 2: joins ----

    def _from_lookups(
        self,
        operations: list[QueryOperation],
        by_collection: dict[str, list[CodeType]],
    ) -> list[_Candidate]:
        result: list[_Candidate] = []
        for op in operations:
            for stage in op.pipeline:
                if stage.name != "$lookup":
                    continue
                source_name = stage.body.get_str("from")
                local = stage.body.get_str("localField")
                foreign = stage.body.get_str("foreignField")
                if not (source_name and local and foreign):
                    self.logger.debug("Unresolvable $lookup in %s", op.location.file_path)
                    continue
                evidence = Evidence(
                    EvidenceKind.LOOKUP,
                    f"$lookup from '{source_name}' on '{local}' = '{foreign}'",
                    LOOKUP_CONFIDENCE,
                    op.location,
                )
                for source in by_collection.get(op.collection_name, []):
                    for target in by_collection.get(source_name, []):
                        if source.id == target.id:
                            continue
                        result.append(
                            _Candidate(
                                source,
                                target,
                                RelationshipKind.LOOKUP,
                                f"{local} -> {foreign}",
                                LOOKUP_CONFIDENCE,
                                Cardinality.ONE_TO_MANY,
                                op.provenance,
                                [evidence],
                            )
                        )
        return result

    # ---- Pass 3: naming convention ----

    def _from_naming(self, types: Sequence[CodeType]) -> list[_Candidate]:
        result: list[_Candidate] = []
        for i, first in enumerate(types):
            for second in types[i + 1 :]:
                if first.id == second.id:
                    continue
                for source, target in ((first, second), (second, first)):
                    fk = _foreign_key_field(source, target.name)
                    if fk is None:
                        continue
                    result.append(
                        _Candidate(
                            source,
                            target,
                            RelationshipKind.REFERS_TO,
                            fk.element_name,
                            NAMING_CONFIDENCE,
                            Cardinality.MANY_TO_ONE,
                            source.provenance,
                            [
                                Evidence(
                                    EvidenceKind.NAMING_CONVENTION,
                                    f"Field '{fk.name}' follows foreign key naming "
                                    f"convention for '{target.name}'",
                                    NAMING_CONFIDENCE,
                                    _type_location(source),
                                )
                            ],
                            is_required=not fk.nullable,
                        )
                    )
        return result

    # ---- Pass 4: field types ----

    def _from_field_types(self, types: Sequence[CodeType]) -> list[_Candidate]:
        result: list[_Candidate] = []
        for source in types:
            for info in source.fields:
                if is_collection_type(info.declared_type):
                    continue
                for target in types:
                    if target.id == source.id:
                        continue
                    if not references_type(info.declared_type, target.name):
                        continue
                    result.append(
                        _Candidate(
                            source,
                            target,
                            RelationshipKind.REFERS_TO,
                            info.element_name,
                            FIELD_TYPE_CONFIDENCE,
                            Cardinality.ONE_TO_ONE,
                            source.provenance,
                            [
                                Evidence(
                                    EvidenceKind.FIELD_TYPE,
                                    f"Field '{info.name}' of type '{info.declared_type}' "
                                    f"references '{target.name}'",
                                    FIELD_TYPE_CONFIDENCE,
                                    _type_location(source),
                                )
                            ],
                            is_required=not info.nullable,
                        )
                    )
        return result


def merge_candidates(candidates: Iterable[_Candidate]) -> list[DataRelationship]:
    """Collapse candidates sharing ``(source, target, kind, field_path)``."""
    merged: dict[tuple[str, str, str, str], _Candidate] = {}
    for cand in candidates:
        if cand.source.id == cand.target.id:
            continue
        key = (cand.source.id, cand.target.id, cand.kind.value, cand.field_path)
        current = merged.get(key)
        if current is None:
            merged[key] = replace(cand, evidence=list(cand.evidence))
            continue
        if cand.confidence > current.confidence:
            current.confidence = cand.confidence
            current.cardinality = cand.cardinality
            current.provenance = cand.provenance
        current.is_required = current.is_required or cand.is_required
        current.evidence.extend(cand.evidence)

    relationships = []
    for (source_id, target_id, kind, field_path), cand in merged.items():
        relationships.append(
            DataRelationship(
                id=make_id("relationship", source_id, target_id, kind, field_path),
                source_type_id=source_id,
                target_type_id=target_id,
                source_fqn=cand.source.fqn,
                target_fqn=cand.target.fqn,
                kind=cand.kind,
                confidence=max(0.0, min(1.0, cand.confidence)),
                field_path=field_path,
                cardinality=cand.cardinality,
                provenance=cand.provenance,
                evidence=_best_evidence(cand.evidence),
                is_bidirectional=(target_id, source_id, kind, field_path) in merged,
                is_required=cand.is_required,
            )
        )
    relationships.sort(key=lambda r: (r.source_fqn, r.target_fqn, r.kind.value, r.field_path))
    return relationships


def _best_evidence(items: Iterable[Evidence]) -> tuple[Evidence, ...]:
    """One evidence item per kind, the most confident one."""
    best: dict[EvidenceKind, Evidence] = {}
    for item in items:
        current = best.get(item.kind)
        if current is None or item.confidence > current.confidence:
            best[item.kind] = item
    return tuple(best.values())


def _foreign_key_field(source: CodeType, target_name: str) -> FieldInfo | None:
    expected = {f"{target_name}id".lower(), f"{target_name}_id".lower()}
    for info in source.fields:
        if info.name.lower() in expected:
            return info
    return None


def _types_by_collection(
    types: Sequence[CodeType], mappings: Iterable[CollectionMapping]
) -> dict[str, list[CodeType]]:
    """Collection name -> types stored in it.

    Primary mappings win; alternatives only count for collections that are
    nobody's primary.
    """
    by_id = {t.id: t for t in types}
    primary: dict[str, list[CodeType]] = {}
    secondary: dict[str, list[CodeType]] = {}
    for mapping in sorted(mappings, key=lambda m: -m.confidence):
        code_type = by_id.get(mapping.type_id)
        if code_type is None:
            continue
        index = primary if mapping.is_primary else secondary
        bucket = index.setdefault(mapping.collection_name, [])
        if all(t.id != code_type.id for t in bucket):
            bucket.append(code_type)
    for name, bucket in secondary.items():
        primary.setdefault(name, bucket)
    return primary


def _types_by_stem(types: Sequence[CodeType]) -> dict[str, CodeType]:
    """Lower-cased type name -> type, for matching foreign-key stems."""
    index: dict[str, CodeType] = {}
    for code_type in types:
        index.setdefault(code_type.name.lower(), code_type)
    return index
