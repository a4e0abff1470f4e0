"""Type analyzer: declared document types and their field shapes."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from cataloger.analysis.syntax import short_type_name
from cataloger.infrastructure.config import AnalysisConfig
from cataloger.models import CodeType, FieldInfo, SerializationTag, make_id

if TYPE_CHECKING:
    from collections.abc import Iterable

    from cataloger.analysis.syntax import Declaration, Member, SourceFile
    from cataloger.models import ScanContext

_DOCUMENT_KINDS = frozenset({"class", "record", "struct"})
_IGNORED_ATTRIBUTES = frozenset({"BsonIgnore", "JsonIgnore"})
_REQUIRED_ATTRIBUTES = frozenset({"BsonRequired", "Required"})
_DISCRIMINATOR_ATTRIBUTE = "BsonDiscriminator"


class TypeAnalyzer:
    """Extract :class:`CodeType` records from one parsed source file.

    A declaration qualifies when it (or one of its members) carries a
    serialization attribute, derives from a document-store base type
    (directly, or through another qualifying type), or declares a member
    whose type is document-store related.
    """

    def __init__(
        self,
        config: AnalysisConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config or AnalysisConfig()
        self.logger = logger or logging.getLogger(__name__)

    def analyze(
        self,
        source: SourceFile,
        context: ScanContext,
        known_types: Iterable[str] = (),
    ) -> list[CodeType]:
        """Return the document types declared in *source*.

        *known_types* are short names of document types found elsewhere, so
        that a subclass in this file of a type declared in another file still
        qualifies.
        """
        known = set(known_types)
        qualified: list[Declaration] = []
        pending = [d for d in source.declarations if d.kind in _DOCUMENT_KINDS]

        # Iterate until no new declaration qualifies through inheritance.
        changed = True
        while changed:
            changed = False
            for decl in list(pending):
                if self._qualifies(decl, known):
                    qualified.append(decl)
                    known.add(decl.name)
                    pending.remove(decl)
                    changed = True

        types: list[CodeType] = []
        for decl in sorted(qualified, key=lambda d: d.line_start):
            try:
                types.append(self._build(decl, source.path, context))
            except Exception as exc:  # noqa: BLE001
                self.logger.warning(
                    "Skipping declaration %s in %s: %s", decl.fqn, source.path, exc
                )
        return types

    def _qualifies(self, decl: Declaration, known: set[str]) -> bool:
        markers = self.config.serialization_markers
        doc_markers = self.config.document_type_markers

        if decl.has_attribute(*markers):
            return True
        for member in decl.members:
            if any(m in a.name for a in member.attributes for m in markers):
                return True
        for base in decl.base_types:
            if short_type_name(base) in known or any(m in base for m in doc_markers):
                return True
        return any(m in member.type_text for member in decl.members for m in doc_markers)

    def _build(self, decl: Declaration, path: str, context: ScanContext) -> CodeType:
        fields = tuple(self._field(m) for m in decl.members if _is_persisted(m))
        discriminators = tuple(
            a.first_value for a in decl.attributes if a.short_name == _DISCRIMINATOR_ATTRIBUTE
        )
        fqn = decl.fqn
        return CodeType(
            id=make_id("type", context.repository, fqn),
            fqn=fqn,
            name=decl.name,
            namespace=decl.namespace,
            fields=fields,
            provenance=context.provenance(path, fqn, decl.line_start, decl.line_end),
            discriminators=discriminators,
            tags=tuple(SerializationTag(a.short_name, a.first_value) for a in decl.attributes),
            base_types=decl.base_types,
            documentation=decl.doc,
        )

    @staticmethod
    def _field(member: Member) -> FieldInfo:
        tags = tuple(SerializationTag(a.short_name, a.first_value) for a in member.attributes)
        required = member.required or any(t.name in _REQUIRED_ATTRIBUTES for t in tags)
        return FieldInfo(
            name=member.name,
            declared_type=member.type_text,
            nullable=member.nullable,
            required=required,
            tags=tags,
            documentation=member.doc,
        )


def _is_persisted(member: Member) -> bool:
    if member.is_static:
        return False
    return not any(a.short_name in _IGNORED_ATTRIBUTES for a in member.attributes)
