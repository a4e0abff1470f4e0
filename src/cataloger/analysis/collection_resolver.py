"""Collection resolver: which named collection(s) a document type lives in.

Resolution works in two steps.  :meth:`CollectionResolver.find_accessor_sites`
records, per file, every place a collection handle is obtained for a type and
how its name was determined.  :meth:`CollectionResolver.resolve` then ranks the
sites of every file of a repository for one type into ``CollectionMapping``
records, falling back to a naming convention when nothing names a collection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cataloger.analysis.syntax import (
    Binary,
    Call,
    MemberAccess,
    Name,
    generic_arguments,
    short_type_name,
    string_value,
    walk,
)
from cataloger.infrastructure.config import AnalysisConfig
from cataloger.models import (
    AccessorSite,
    CollectionMapping,
    Provenance,
    ResolutionMethod,
    SourceLocation,
    make_id,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from cataloger.analysis.syntax import Expr, SourceFile
    from cataloger.models import CodeType, ScanContext

_CONFIG_MARKERS = ("configuration", "settings", "options", "getsection", "getvalue", "config")
_ENV_MARKERS = ("getenvironmentvariable", "environment")
_UNTYPED_DOCUMENTS = frozenset({"BsonDocument", "RawBsonDocument", "object", "dynamic"})
_MAX_DEPTH = 6

CONFIDENCE: dict[ResolutionMethod, float] = {
    ResolutionMethod.LITERAL: 1.0,
    ResolutionMethod.CONSTANT: 0.9,
    ResolutionMethod.CONFIG: 0.7,
    ResolutionMethod.ENVIRONMENT: 0.7,
    ResolutionMethod.INFERRED: 0.5,
    ResolutionMethod.DEPENDENCY_INJECTION: 0.4,
    ResolutionMethod.UNKNOWN: 0.1,
}

# Non-readonly variable assigned a literal: weaker than a declared constant.
_BOUND_VARIABLE_CONFIDENCE = 0.8

# Tie-break between equally confident techniques.
_PRIORITY = {method: index for index, method in enumerate(CONFIDENCE)}


def pluralize(word: str) -> str:
    if not word:
        return word
    lower = word.lower()
    if lower.endswith("y") and len(word) > 1 and lower[-2] not in "aeiou":
        return word[:-1] + "ies"
    if lower.endswith(("s", "x", "z", "ch", "sh")):
        return word + "es"
    return word + "s"


def collection_name_for(type_name: str, suffixes: Iterable[str] = ()) -> str:
    """Conventional collection name: ``OrderEntity`` -> ``orders``."""
    name = short_type_name(type_name)
    for suffix in suffixes:
        if name.endswith(suffix) and len(name) > len(suffix):
            name = name[: -len(suffix)]
            break
    return pluralize(name[:1].lower() + name[1:])


@dataclass(frozen=True)
class NameResolution:
    name: str | None
    method: ResolutionMethod
    confidence: float
    context: str


class CollectionResolver:
    def __init__(
        self,
        config: AnalysisConfig | None = None,
        collections: Mapping[str, str] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config or AnalysisConfig()
        self.collections = dict(collections or {})
        self.logger = logger or logging.getLogger(__name__)

    # ---- Name evaluation ----

    def evaluate(
        self, expr: Expr, source: SourceFile, type_name: str, depth: int = 0
    ) -> NameResolution:
        """Evaluate the collection-name argument of an accessor call."""
        literal = string_value(expr)
        if literal is not None:
            return NameResolution(literal, ResolutionMethod.LITERAL, 1.0, expr.text or literal)
        if depth >= _MAX_DEPTH:
            return NameResolution(None, ResolutionMethod.UNKNOWN, 0.1, expr.text)

        if isinstance(expr, Binary) and expr.op == "+":
            parts = self._concat(expr, source, depth)
            if parts is not None:
                return NameResolution(
                    "".join(parts), ResolutionMethod.CONSTANT, 0.9, expr.text
                )

        if isinstance(expr, Call) and expr.method == "nameof" and expr.args:
            arg = expr.args[0]
            ident = arg.member if isinstance(arg, MemberAccess) else ""
            if isinstance(arg, Name):
                ident = arg.identifier
            if ident:
                return NameResolution(ident, ResolutionMethod.CONSTANT, 0.9, expr.text)

        if isinstance(expr, (Name, MemberAccess)):
            resolved = self._symbol(expr, source, type_name, depth)
            if resolved is not None:
                return resolved

        text = expr.text.lower()
        if any(m in text for m in _ENV_MARKERS):
            return self._lookup(expr, ResolutionMethod.ENVIRONMENT, type_name)
        if any(m in text for m in _CONFIG_MARKERS):
            return self._lookup(expr, ResolutionMethod.CONFIG, type_name)
        return NameResolution(None, ResolutionMethod.UNKNOWN, 0.1, expr.text)

    def _symbol(
        self, expr: Name | MemberAccess, source: SourceFile, type_name: str, depth: int
    ) -> NameResolution | None:
        constant = source.lookup_constant(expr)
        if constant is not None:
            inner = self.evaluate(constant.value, source, type_name, depth + 1)
            if inner.name is not None and inner.method in (
                ResolutionMethod.LITERAL,
                ResolutionMethod.CONSTANT,
            ):
                owner = constant.name
                if constant.container:
                    owner = f"{constant.container}.{constant.name}"
                return NameResolution(inner.name, ResolutionMethod.CONSTANT, 0.9, owner)
            if inner.name is not None:
                return inner

        if isinstance(expr, Name):
            bound = source.bindings.get(expr.identifier)
            if bound is not None:
                inner = self.evaluate(bound, source, type_name, depth + 1)
                if inner.method is ResolutionMethod.LITERAL:
                    return NameResolution(
                        inner.name,
                        ResolutionMethod.CONSTANT,
                        _BOUND_VARIABLE_CONFIDENCE,
                        expr.identifier,
                    )
                if inner.name is not None:
                    return inner
        return None

    def _concat(self, expr: Expr, source: SourceFile, depth: int) -> list[str] | None:
        if isinstance(expr, Binary) and expr.op == "+":
            left = self._concat(expr.left, source, depth + 1)
            right = self._concat(expr.right, source, depth + 1)
            if left is None or right is None:
                return None
            return left + right
        resolved = self.evaluate(expr, source, "", depth + 1)
        if resolved.name is None or resolved.method not in (
            ResolutionMethod.LITERAL,
            ResolutionMethod.CONSTANT,
        ):
            return None
        return [resolved.name]

    def _lookup(self, expr: Expr, method: ResolutionMethod, type_name: str) -> NameResolution:
        key = next((string_value(e) for e in walk(expr) if string_value(e) is not None), None)
        if key is None and isinstance(expr, MemberAccess):
            key = expr.member
        name = self.collections.get(key) if key else None
        if name is None:
            if not type_name:
                return NameResolution(None, ResolutionMethod.UNKNOWN, 0.1, expr.text)
            name = collection_name_for(type_name, self.config.collection_suffixes)
        return NameResolution(name, method, CONFIDENCE[method], expr.text or key or "")

    # ---- Per-file facts ----

    def find_accessor_sites(self, source: SourceFile) -> list[AccessorSite]:
        """Every collection handle obtained in *source*, with its evaluated name."""
        accessors = self.config.accessor_methods
        sites: list[AccessorSite] = []

        for site in source.calls:
            call = site.call
            if call.method not in accessors or not call.type_args:
                continue
            type_name = short_type_name(call.type_args[0])
            if type_name in _UNTYPED_DOCUMENTS:
                continue
            if call.args:
                scoped = source.scoped(site.container, site.method_name)
                resolution = self.evaluate(call.args[0], scoped, type_name)
            else:
                resolution = NameResolution(None, ResolutionMethod.UNKNOWN, 0.1, call.text)
            if resolution.method is ResolutionMethod.UNKNOWN:
                self.logger.debug(
                    "Unresolved collection name for %s at %s:%d", type_name, source.path, call.line
                )
            sites.append(
                AccessorSite(
                    type_name=type_name,
                    collection_name=resolution.name,
                    method=resolution.method,
                    confidence=resolution.confidence,
                    context=resolution.context,
                    location=SourceLocation(
                        source.path, call.line, call.column, site.container, site.method_name
                    ),
                )
            )

        # Injected collection handles never obtained through an accessor call.
        for symbol, type_text in sorted(source.symbol_types.items()):
            if short_type_name(type_text) != "IMongoCollection":
                continue
            args = generic_arguments(type_text)
            if not args:
                continue
            bound = source.any_binding(symbol)
            if isinstance(bound, Call) and bound.method in accessors:
                continue
            type_name = short_type_name(args[0])
            if type_name in _UNTYPED_DOCUMENTS:
                continue
            sites.append(
                AccessorSite(
                    type_name=type_name,
                    collection_name=collection_name_for(
                        type_name, self.config.collection_suffixes
                    ),
                    method=ResolutionMethod.DEPENDENCY_INJECTION,
                    confidence=CONFIDENCE[ResolutionMethod.DEPENDENCY_INJECTION],
                    context=f"{type_text} {symbol}",
                    location=SourceLocation(source.path, source.symbol_lines.get(symbol, 1)),
                )
            )
        return sites

    # ---- Repository-wide resolution ----

    def resolve(
        self,
        code_type: CodeType,
        sites: Iterable[AccessorSite],
        context: ScanContext,
    ) -> list[CollectionMapping]:
        """Rank every candidate collection for *code_type*.

        One mapping per distinct name, highest confidence first; the first is
        primary and every mapping lists the other names as alternatives.
        """
        candidates: list[tuple[str, ResolutionMethod, float, str, Provenance]] = []

        for tag in code_type.tags:
            if "Collection" in tag.name and tag.value != "true":
                candidates.append(
                    (
                        tag.value,
                        ResolutionMethod.LITERAL,
                        1.0,
                        f"[{tag.name}]",
                        code_type.provenance,
                    )
                )

        for site in sites:
            if site.type_name != code_type.name or site.collection_name is None:
                continue
            loc = site.location
            candidates.append(
                (
                    site.collection_name,
                    site.method,
                    site.confidence,
                    site.context,
                    context.provenance(loc.file_path, code_type.fqn, loc.line),
                )
            )

        if not candidates:
            candidates.append(
                (
                    collection_name_for(code_type.name, self.config.collection_suffixes),
                    ResolutionMethod.INFERRED,
                    CONFIDENCE[ResolutionMethod.INFERRED],
                    "naming convention",
                    code_type.provenance,
                )
            )

        best: dict[str, tuple[str, ResolutionMethod, float, str, Provenance]] = {}
        for cand in candidates:
            current = best.get(cand[0])
            if current is None or (cand[2], -_PRIORITY[cand[1]]) > (
                current[2],
                -_PRIORITY[current[1]],
            ):
                best[cand[0]] = cand

        ordered = sorted(best.values(), key=lambda c: (-c[2], _PRIORITY[c[1]], c[0]))
        names = [c[0] for c in ordered]
        return [
            CollectionMapping(
                id=make_id("mapping", code_type.id, name),
                type_id=code_type.id,
                type_fqn=code_type.fqn,
                collection_name=name,
                method=method,
                confidence=confidence,
                is_primary=index == 0,
                provenance=provenance,
                alternatives=tuple(n for n in names if n != name),
                context=ctx,
            )
            for index, (name, method, confidence, ctx, provenance) in enumerate(ordered)
        ]


def primary_collections(mappings: Iterable[CollectionMapping]) -> dict[str, str]:
    """Type short name -> primary collection name."""
    index: dict[str, str] = {}
    for mapping in mappings:
        if mapping.is_primary:
            index.setdefault(short_type_name(mapping.type_fqn), mapping.collection_name)
    return index
