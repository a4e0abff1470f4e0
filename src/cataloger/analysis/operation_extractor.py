"""Operation extractor: database call sites and the shape of their queries.

A call qualifies when its method is a known operation verb and its receiver
can be traced back, through local bindings, fields or typed symbols, to a
collection accessor.  Call sites whose collection cannot be determined are
skipped, never guessed.

Filters are decomposed best-effort into ``FilterTerm`` triples; anything the
decomposer does not understand becomes a single placeholder term so the
operation is still recorded.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from cataloger.analysis.collection_resolver import CollectionResolver
from cataloger.analysis.syntax import (
    ArrayExpr,
    Binary,
    Call,
    DocumentExpr,
    Lambda,
    Literal,
    MemberAccess,
    Name,
    New,
    Unary,
    generic_arguments,
    short_type_name,
    string_value,
)
from cataloger.models import (
    UNPARSED_FIELD,
    AggregationStage,
    FilterTerm,
    OperationKind,
    Projection,
    QueryOperation,
    SortKey,
    SourceLocation,
    StageBody,
    UpdateTerm,
    collection_id,
    make_id,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from cataloger.analysis.syntax import CallSite, Expr, SourceFile
    from cataloger.models import ScanContext

logger = logging.getLogger(__name__)

_BASE_VERBS: dict[str, OperationKind] = {
    "Find": OperationKind.FIND,
    "FindSync": OperationKind.FIND,
    "FindOne": OperationKind.FIND,
    "AsQueryable": OperationKind.FIND,
    "FindOneAndUpdate": OperationKind.FIND_ONE_AND_UPDATE,
    "FindOneAndReplace": OperationKind.FIND_ONE_AND_REPLACE,
    "FindOneAndDelete": OperationKind.FIND_ONE_AND_DELETE,
    "InsertOne": OperationKind.INSERT,
    "InsertMany": OperationKind.INSERT,
    "UpdateOne": OperationKind.UPDATE,
    "UpdateMany": OperationKind.UPDATE,
    "ReplaceOne": OperationKind.REPLACE,
    "DeleteOne": OperationKind.DELETE,
    "DeleteMany": OperationKind.DELETE,
    "Aggregate": OperationKind.AGGREGATE,
    "Count": OperationKind.COUNT,
    "CountDocuments": OperationKind.COUNT,
    "EstimatedDocumentCount": OperationKind.COUNT,
    "Distinct": OperationKind.DISTINCT,
}

VERBS: dict[str, OperationKind] = {
    **_BASE_VERBS,
    **{f"{verb}Async": kind for verb, kind in _BASE_VERBS.items() if verb != "AsQueryable"},
}

_FILTER_FIRST = frozenset(
    {
        OperationKind.FIND,
        OperationKind.DELETE,
        OperationKind.COUNT,
        OperationKind.REPLACE,
        OperationKind.FIND_ONE_AND_DELETE,
        OperationKind.FIND_ONE_AND_REPLACE,
    }
)
_UPDATE_KINDS = frozenset({OperationKind.UPDATE, OperationKind.FIND_ONE_AND_UPDATE})

_READ_PREFERENCE = "WithReadPreference"
_WRITE_CONCERN = "WithWriteConcern"
_PASSTHROUGH = frozenset({_READ_PREFERENCE, _WRITE_CONCERN, "WithReadConcern"})

_BUILDER_OPERATORS = {
    "Eq": "eq",
    "AnyEq": "eq",
    "Ne": "ne",
    "AnyNe": "ne",
    "Gt": "gt",
    "Gte": "gte",
    "Lt": "lt",
    "Lte": "lte",
    "In": "in",
    "AnyIn": "in",
    "Nin": "nin",
    "AnyNin": "nin",
    "Exists": "exists",
    "Regex": "regex",
    "ElemMatch": "elemMatch",
    "Size": "size",
    "Type": "type",
    "All": "all",
}
_COMPARISONS = {"==": "eq", "!=": "ne", ">": "gt", ">=": "gte", "<": "lt", "<=": "lte"}
_MIRRORED = {"gt": "lt", "gte": "lte", "lt": "gt", "lte": "gte"}
_STRING_MATCHERS = frozenset({"Contains", "StartsWith", "EndsWith"})

_UPDATE_OPERATORS = frozenset(
    {
        "Set",
        "SetOnInsert",
        "Unset",
        "Inc",
        "Mul",
        "Min",
        "Max",
        "Rename",
        "CurrentDate",
        "Push",
        "PushEach",
        "Pull",
        "PullAll",
        "PullFilter",
        "AddToSet",
        "AddToSetEach",
        "PopFirst",
        "PopLast",
    }
)

# Fluent aggregate stages whose arguments are decomposed.
_FLUENT_STAGES = {
    "Match": "$match",
    "Lookup": "$lookup",
    "Group": "$group",
    "Project": "$project",
    "Sort": "$sort",
    "SortBy": "$sort",
    "SortByDescending": "$sort",
    "Limit": "$limit",
    "Skip": "$skip",
    "Unwind": "$unwind",
    "Count": "$count",
    "Sample": "$sample",
}
# Fluent aggregate stages kept opaque.
_OPAQUE_STAGES = {
    "ReplaceRoot": "$replaceRoot",
    "ReplaceWith": "$replaceWith",
    "Facet": "$facet",
    "Bucket": "$bucket",
    "BucketAuto": "$bucketAuto",
    "GraphLookup": "$graphLookup",
    "SortByCount": "$sortByCount",
    "Out": "$out",
    "Merge": "$merge",
    "AppendStage": "$stage",
}

_OBJECT_ID_RE = re.compile(r'ObjectId\(\s*"([^"]*)"\s*\)')
_SINGLE_QUOTED_RE = re.compile(r"'((?:[^'\\]|\\.)*)'")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_$][\w$.]*)\s*:")


def parse_relaxed_json(text: str) -> Any | None:
    """Parse shell-style JSON (bare keys, single quotes, ``ObjectId("...")``)."""
    try:
        return json.loads(text)
    except ValueError:
        pass
    converted = _OBJECT_ID_RE.sub(r'"\1"', text)
    converted = _SINGLE_QUOTED_RE.sub(lambda m: json.dumps(m.group(1)), converted)
    converted = _BARE_KEY_RE.sub(r'\1"\2":', converted)
    try:
        return json.loads(converted)
    except ValueError:
        return None


def _unwrap_extended(value: Any) -> Any:
    """``{"$oid": "..."}`` -> ``"..."`` (extended JSON scalars)."""
    if isinstance(value, dict) and len(value) == 1:
        key = next(iter(value))
        if key in ("$oid", "$date", "$numberLong", "$numberInt", "$numberDecimal"):
            return value[key]
    return value


def _placeholder(expr: Expr) -> FilterTerm:
    return FilterTerm(UNPARSED_FIELD, "unknown", expr.text, False)


@dataclass(frozen=True)
class _Target:
    name: str
    read_preference: bool = False
    write_concern: bool = False


class OperationExtractor:
    """Turn a file's call sites into :class:`QueryOperation` records."""

    def __init__(
        self,
        resolver: CollectionResolver | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.resolver = resolver or CollectionResolver()
        self.logger = logger or logging.getLogger(__name__)

    def extract(
        self,
        source: SourceFile,
        type_collections: Mapping[str, str],
        context: ScanContext,
    ) -> list[QueryOperation]:
        """Operations in *source*.

        *type_collections* maps type short names to their primary collection;
        it resolves accessors whose name argument cannot be evaluated and
        injected ``IMongoCollection<T>`` handles.
        """
        operations: list[QueryOperation] = []
        for site in source.calls:
            call = site.call
            kind = VERBS.get(call.method)
            if kind is None or call.target is None:
                continue
            scoped = source.scoped(site.container, site.method_name)
            target = self._resolve_target(call.target, scoped, type_collections, 0)
            if target is None:
                self.logger.debug(
                    "Skipping %s at %s:%d: collection not resolvable",
                    call.method,
                    source.path,
                    call.line,
                )
                continue
            operations.append(self._operation(site, kind, target, scoped, context))
        return operations

    # ---- Receiver resolution ----

    def _resolve_target(
        self,
        expr: Expr,
        source: SourceFile,
        type_collections: Mapping[str, str],
        depth: int,
    ) -> _Target | None:
        if depth > 8:
            return None
        if isinstance(expr, Call):
            if expr.method in self.resolver.config.accessor_methods:
                type_name = short_type_name(expr.type_args[0]) if expr.type_args else ""
                if expr.args:
                    resolved = self.resolver.evaluate(expr.args[0], source, type_name)
                    if resolved.name is not None:
                        return _Target(resolved.name)
                name = type_collections.get(type_name) if type_name else None
                return _Target(name) if name else None
            if expr.method in _PASSTHROUGH and expr.target is not None:
                inner = self._resolve_target(expr.target, source, type_collections, depth + 1)
                if inner is None:
                    return None
                return _Target(
                    inner.name,
                    inner.read_preference or expr.method == _READ_PREFERENCE,
                    inner.write_concern or expr.method == _WRITE_CONCERN,
                )
            return None

        symbol: str | None = None
        if isinstance(expr, Name) and expr.identifier != "this":
            symbol = expr.identifier
        elif isinstance(expr, MemberAccess):
            symbol = expr.member
        if symbol is None:
            return None

        bound = source.bindings.get(symbol)
        if bound is not None and bound != expr:
            resolved_target = self._resolve_target(bound, source, type_collections, depth + 1)
            if resolved_target is not None:
                return resolved_target

        type_text = source.symbol_types.get(symbol, "")
        if short_type_name(type_text) == "IMongoCollection":
            args = generic_arguments(type_text)
            if args:
                name = type_collections.get(short_type_name(args[0]))
                if name:
                    return _Target(name)
        return None

    # ---- Operation assembly ----

    def _operation(
        self,
        site: CallSite,
        kind: OperationKind,
        target: _Target,
        source: SourceFile,
        context: ScanContext,
    ) -> QueryOperation:
        call = site.call
        args = call.args
        filters: list[FilterTerm] = []
        updates: list[UpdateTerm] = []
        projections: list[Projection] = []
        sort: list[SortKey] = []
        stages: list[AggregationStage] = []
        limit: int | None = None
        skip: int | None = None

        if kind in _FILTER_FIRST and args:
            filters.extend(self.filters(args[0], source))
        elif kind in _UPDATE_KINDS:
            if args:
                filters.extend(self.filters(args[0], source))
            if len(args) > 1:
                updates.extend(self.updates(args[1], source))
        elif kind is OperationKind.DISTINCT:
            if args:
                projections.append(Projection(self._field_path(args[0])))
            if len(args) > 1:
                filters.extend(self.filters(args[1], source))
        elif kind is OperationKind.AGGREGATE and args:
            stages.extend(self.pipeline(args[0], source))

        if kind is OperationKind.AGGREGATE:
            for stage in stages:
                if stage.name == "$match":
                    filters.extend(self._document_filter(stage.body.to_dict()))
            for chained in site.chain:
                fluent = self._fluent_stage(chained, len(stages), source)
                if fluent is None:
                    continue
                stages.append(fluent)
                if chained.method == "Match" and chained.args:
                    filters.extend(self.filters(chained.args[0], source))
            for stage in stages:
                if stage.name == "$limit":
                    limit = stage.body.get_int("value")
                elif stage.name == "$skip":
                    skip = stage.body.get_int("value")
        else:
            for chained in site.chain:
                method = chained.method
                first = chained.args[0] if chained.args else None
                if method in ("Sort", "OrderBy") and first is not None:
                    if method == "OrderBy":
                        sort.append(SortKey(self._field_path(first), 1, len(sort)))
                    else:
                        sort.extend(self.sort_keys(first, source, len(sort)))
                elif method in ("SortBy", "ThenBy") and first is not None:
                    sort.append(SortKey(self._field_path(first), 1, len(sort)))
                elif method in (
                    "SortByDescending",
                    "ThenByDescending",
                    "OrderByDescending",
                ) and first is not None:
                    sort.append(SortKey(self._field_path(first), -1, len(sort)))
                elif method in ("Limit", "Take") and first is not None:
                    limit = self._int(first, source)
                elif method == "Skip" and first is not None:
                    skip = self._int(first, source)
                elif method in ("Project", "Select") and first is not None:
                    projections.extend(self.projections(first, source))
                elif method == "Where" and first is not None:
                    filters.extend(self.filters(first, source))

        location = SourceLocation(
            source.path, call.line, call.column, site.container, site.method_name
        )
        symbol = ".".join(p for p in (site.container, site.method_name) if p) or source.path
        return QueryOperation(
            id=make_id(
                "operation",
                context.repository,
                source.path,
                call.line,
                call.column,
                kind.value,
                target.name,
            ),
            collection_id=collection_id(target.name),
            collection_name=target.name,
            kind=kind,
            location=location,
            provenance=context.provenance(source.path, symbol, call.line),
            filters=tuple(filters),
            projections=tuple(projections),
            sort=tuple(sort),
            limit=limit,
            skip=skip,
            pipeline=tuple(stages),
            updates=tuple(updates),
            method_name=call.method,
            has_read_preference=target.read_preference,
            has_write_concern=target.write_concern,
        )

    # ---- Values and paths ----

    def value(self, expr: Expr, source: SourceFile | None = None, depth: int = 0) -> Any:
        """Best-effort Python value of a document-literal expression."""
        if depth > 16:
            return expr.text
        if isinstance(expr, Literal):
            return expr.value
        if isinstance(expr, DocumentExpr):
            return {k: self.value(v, source, depth + 1) for k, v in expr.entries}
        if isinstance(expr, ArrayExpr):
            return [self.value(v, source, depth + 1) for v in expr.items]
        if isinstance(expr, New):
            if expr.args and short_type_name(expr.type_name) in (
                "ObjectId",
                "BsonObjectId",
                "BsonString",
                "BsonInt32",
                "BsonInt64",
                "BsonBoolean",
                "BsonRegularExpression",
            ):
                return self.value(expr.args[0], source, depth + 1)
            return expr.text
        if isinstance(expr, Call) and expr.args:
            owner = expr.target.text if expr.target is not None else ""
            if expr.method == "Parse" and owner.endswith("ObjectId"):
                return self.value(expr.args[0], source, depth + 1)
            if expr.method == "Parse" and owner.endswith("BsonDocument"):
                text = string_value(expr.args[0])
                if text is not None:
                    parsed = parse_relaxed_json(text)
                    return parsed if parsed is not None else expr.text
            if expr.method == "Create" and owner.startswith("Bson"):
                return self.value(expr.args[0], source, depth + 1)
        if isinstance(expr, Unary) and expr.op == "-" and isinstance(expr.operand, Literal):
            if isinstance(expr.operand.value, (int, float)):
                return -expr.operand.value
        if source is not None and isinstance(expr, (Name, MemberAccess)):
            constant = source.lookup_constant(expr)
            if constant is not None and isinstance(constant.value, Literal):
                return constant.value.value
        return expr.text

    def _document(self, expr: Expr, source: SourceFile) -> Any:
        """Document literal, JSON string or bound name -> Python value."""
        if isinstance(expr, Name):
            bound = source.bindings.get(expr.identifier)
            if bound is not None and bound != expr:
                return self._document(bound, source)
        text = string_value(expr)
        if text is not None:
            return parse_relaxed_json(text)
        value = self.value(expr, source)
        return value if isinstance(value, (dict, list)) else None

    @staticmethod
    def _member_path(expr: Expr, param: str) -> str | None:
        """``x.Address.City`` with param ``x`` -> ``Address.City``."""
        parts: list[str] = []
        node = expr
        while isinstance(node, MemberAccess):
            parts.append(node.member)
            node = node.target
        if isinstance(node, Name) and node.identifier == param and parts:
            return ".".join(reversed(parts))
        return None

    def _field_path(self, expr: Expr) -> str:
        text = string_value(expr)
        if text is not None:
            return text
        if isinstance(expr, Lambda) and expr.params:
            path = self._member_path(expr.body, expr.params[0])
            if path is not None:
                return path
        return expr.text

    def _int(self, expr: Expr, source: SourceFile) -> int | None:
        value = self.value(expr, source)
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value

    def _builder_kind(self, expr: Expr | None, source: SourceFile, depth: int = 0) -> str | None:
        """``Builders<T>.Filter`` (possibly via a variable) -> ``"Filter"``."""
        if expr is None or depth > 8:
            return None
        if isinstance(expr, MemberAccess):
            if isinstance(expr.target, Name) and expr.target.identifier == "Builders":
                return expr.member
            return None
        if isinstance(expr, Call):
            return self._builder_kind(expr.target, source, depth + 1)
        if isinstance(expr, Name):
            bound = source.bindings.get(expr.identifier)
            if bound is not None and bound != expr:
                return self._builder_kind(bound, source, depth + 1)
        return None

    # ---- Filters ----

    def filters(
        self, expr: Expr, source: SourceFile, negated: bool = False, depth: int = 0
    ) -> list[FilterTerm]:
        """Decompose a filter expression into terms."""
        if depth > 16:
            return [_placeholder(expr)]
        if isinstance(expr, Lambda):
            param = expr.params[0] if expr.params else ""
            return self._lambda_filter(expr.body, param, negated, source)
        if isinstance(expr, MemberAccess) and expr.member == "Empty":
            return []
        if isinstance(expr, Binary) and expr.op in ("&", "&&", "|", "||"):
            return self.filters(expr.left, source, negated, depth + 1) + self.filters(
                expr.right, source, negated, depth + 1
            )
        if isinstance(expr, Unary) and expr.op == "!":
            return self.filters(expr.operand, source, not negated, depth + 1)
        if isinstance(expr, Name):
            bound = source.bindings.get(expr.identifier)
            if bound is not None and bound != expr:
                return self.filters(bound, source, negated, depth + 1)
            return [_placeholder(expr)]
        if isinstance(expr, Call) and self._builder_kind(expr.target, source) == "Filter":
            return self._builder_filter(expr, source, negated, depth)

        document = self._document(expr, source)
        if isinstance(document, dict):
            return self._document_filter(document, negated)
        return [_placeholder(expr)]

    def _builder_filter(
        self, call: Call, source: SourceFile, negated: bool, depth: int
    ) -> list[FilterTerm]:
        method = call.method
        if method in ("And", "Or", "Nor"):
            terms: list[FilterTerm] = []
            items: list[Expr] = []
            for arg in call.args:
                items.extend(arg.items if isinstance(arg, ArrayExpr) else (arg,))
            for item in items:
                terms.extend(
                    self.filters(item, source, negated ^ (method == "Nor"), depth + 1)
                )
            return terms
        if method == "Not" and call.args:
            return self.filters(call.args[0], source, not negated, depth + 1)
        if method == "Where" and call.args:
            return self.filters(call.args[0], source, negated, depth + 1)
        operator = _BUILDER_OPERATORS.get(method)
        if operator is None or not call.args:
            return [_placeholder(call)]
        field = self._field_path(call.args[0])
        value = self.value(call.args[1], source) if len(call.args) > 1 else None
        if operator == "exists" and value is None:
            value = True
        return [FilterTerm(field, operator, value, negated)]

    def _lambda_filter(
        self, body: Expr, param: str, negated: bool, source: SourceFile
    ) -> list[FilterTerm]:
        if isinstance(body, Binary) and body.op in ("&&", "||", "&", "|"):
            return self._lambda_filter(body.left, param, negated, source) + self._lambda_filter(
                body.right, param, negated, source
            )
        if isinstance(body, Unary) and body.op == "!":
            return self._lambda_filter(body.operand, param, not negated, source)
        if isinstance(body, Binary) and body.op in _COMPARISONS:
            operator = _COMPARISONS[body.op]
            left = self._member_path(body.left, param)
            if left is not None:
                return [FilterTerm(left, operator, self.value(body.right, source), negated)]
            right = self._member_path(body.right, param)
            if right is not None:
                mirrored = _MIRRORED.get(operator, operator)
                return [FilterTerm(right, mirrored, self.value(body.left, source), negated)]
            return [_placeholder(body)]
        if isinstance(body, Call) and body.method in _STRING_MATCHERS and body.target is not None:
            field = self._member_path(body.target, param)
            if field is not None and body.args:
                return [FilterTerm(field, "regex", self.value(body.args[0], source), negated)]
            if body.method == "Contains" and body.args:
                field = self._member_path(body.args[0], param)
                if field is not None:
                    return [FilterTerm(field, "in", body.target.text, negated)]
        path = self._member_path(body, param)
        if path is not None:
            # Boolean member used as a predicate.
            return [FilterTerm(path, "eq", True, negated)]
        return [_placeholder(body)]

    def _document_filter(
        self, document: dict[str, Any], negated: bool = False
    ) -> list[FilterTerm]:
        terms: list[FilterTerm] = []
        for key, raw in document.items():
            value = _unwrap_extended(raw)
            if key in ("$and", "$or", "$nor") and isinstance(value, list):
                for sub in value:
                    if isinstance(sub, dict):
                        terms.extend(self._document_filter(sub, negated ^ (key == "$nor")))
            elif key.startswith("$"):
                terms.append(FilterTerm(UNPARSED_FIELD, "unknown", json.dumps(value), negated))
            elif isinstance(value, dict) and value and all(k.startswith("$") for k in value):
                for op, operand in value.items():
                    if op == "$not" and isinstance(operand, dict):
                        for inner_op, inner in operand.items():
                            terms.append(
                                FilterTerm(key, inner_op.lstrip("$"), inner, not negated)
                            )
                    else:
                        terms.append(
                            FilterTerm(key, op.lstrip("$"), _unwrap_extended(operand), negated)
                        )
            else:
                terms.append(FilterTerm(key, "eq", value, negated))
        return terms

    # ---- Updates, sorts, projections ----

    def updates(self, expr: Expr, source: SourceFile, depth: int = 0) -> list[UpdateTerm]:
        if depth > 16:
            return [UpdateTerm("unknown", UNPARSED_FIELD, expr.text)]
        if isinstance(expr, Name):
            bound = source.bindings.get(expr.identifier)
            if bound is not None and bound != expr:
                return self.updates(bound, source, depth + 1)
        if isinstance(expr, Call) and self._builder_kind(expr.target, source) == "Update":
            terms: list[UpdateTerm] = []
            if isinstance(expr.target, Call):
                terms.extend(self.updates(expr.target, source, depth + 1))
            if expr.method == "Combine":
                for arg in expr.args:
                    for item in arg.items if isinstance(arg, ArrayExpr) else (arg,):
                        terms.extend(self.updates(item, source, depth + 1))
            elif expr.method in _UPDATE_OPERATORS and expr.args:
                operator = "$" + expr.method[0].lower() + expr.method[1:]
                value = self.value(expr.args[1], source) if len(expr.args) > 1 else None
                terms.append(UpdateTerm(operator, self._field_path(expr.args[0]), value))
            return terms
        document = self._document(expr, source)
        if isinstance(document, dict) and document:
            terms = []
            for op, body in document.items():
                if op.startswith("$") and isinstance(body, dict):
                    terms.extend(UpdateTerm(op, field, v) for field, v in body.items())
            if terms:
                return terms
        return [UpdateTerm("unknown", UNPARSED_FIELD, expr.text)]

    def sort_keys(
        self, expr: Expr, source: SourceFile, start: int = 0, depth: int = 0
    ) -> list[SortKey]:
        if depth > 16:
            return []
        if isinstance(expr, Call) and self._builder_kind(expr.target, source) == "Sort":
            keys: list[SortKey] = []
            if isinstance(expr.target, Call):
                keys.extend(self.sort_keys(expr.target, source, start, depth + 1))
            if expr.method in ("Ascending", "Descending") and expr.args:
                direction = 1 if expr.method == "Ascending" else -1
                keys.append(
                    SortKey(self._field_path(expr.args[0]), direction, start + len(keys))
                )
            elif expr.method == "Combine":
                for arg in expr.args:
                    keys.extend(self.sort_keys(arg, source, start + len(keys), depth + 1))
            return keys
        document = self._document(expr, source)
        if isinstance(document, dict):
            return [
                SortKey(field, -1 if direction == -1 else 1, start + i)
                for i, (field, direction) in enumerate(document.items())
            ]
        return []

    def projections(self, expr: Expr, source: SourceFile, depth: int = 0) -> list[Projection]:
        if depth > 16:
            return []
        if isinstance(expr, Call) and self._builder_kind(expr.target, source) == "Projection":
            result: list[Projection] = []
            if isinstance(expr.target, Call):
                result.extend(self.projections(expr.target, source, depth + 1))
            if expr.method in ("Include", "Exclude") and expr.args:
                result.append(
                    Projection(self._field_path(expr.args[0]), expr.method == "Include")
                )
            elif expr.method == "Combine":
                for arg in expr.args:
                    result.extend(self.projections(arg, source, depth + 1))
            return result
        document = self._document(expr, source)
        if isinstance(document, dict):
            return [
                Projection(field, bool(flag) if isinstance(flag, (bool, int)) else True)
                for field, flag in document.items()
            ]
        return [Projection("<expression>", True, expr.text)]

    # ---- Aggregation ----

    def pipeline(self, expr: Expr, source: SourceFile) -> list[AggregationStage]:
        """Ordered stages of an explicit pipeline argument."""
        if isinstance(expr, Name):
            bound = source.bindings.get(expr.identifier)
            if bound is not None and bound != expr:
                return self.pipeline(bound, source)
        items: list[Any]
        if isinstance(expr, ArrayExpr):
            items = [self._document(item, source) for item in expr.items]
        else:
            document = self._document(expr, source)
            if isinstance(document, list):
                items = document
            elif isinstance(document, dict):
                items = [document]
            else:
                return []
        stages: list[AggregationStage] = []
        for item in items:
            if isinstance(item, dict) and len(item) == 1:
                name, body = next(iter(item.items()))
                if not isinstance(body, dict):
                    body = {"value": body}
                stages.append(
                    AggregationStage(str(name), StageBody.from_mapping(body), len(stages))
                )
        return stages

    def _fluent_stage(
        self, call: Call, order: int, source: SourceFile
    ) -> AggregationStage | None:
        method = call.method
        if method in _OPAQUE_STAGES:
            body = {"expression": ", ".join(a.text for a in call.args)}
            return AggregationStage(_OPAQUE_STAGES[method], StageBody.from_mapping(body), order)
        stage_name = _FLUENT_STAGES.get(method)
        if stage_name is None:
            return None
        args = call.args
        body: dict[str, Any]
        if method == "Match" and args:
            body = _terms_document(self.filters(args[0], source))
        elif method == "Lookup" and len(args) >= 3:
            body = {
                "from": self._lookup_source(args[0], source),
                "localField": self._field_path(args[1]),
                "foreignField": self._field_path(args[2]),
            }
            if len(args) > 3:
                body["as"] = self._field_path(args[3])
        elif method in ("Sort", "SortBy", "SortByDescending") and args:
            if method == "Sort":
                keys = self.sort_keys(args[0], source)
            else:
                direction = -1 if method == "SortByDescending" else 1
                keys = [SortKey(self._field_path(args[0]), direction)]
            body = {k.field_path: k.direction for k in keys}
        elif method in ("Limit", "Skip", "Sample") and args:
            body = {"value": self._int(args[0], source)}
        elif method == "Unwind" and args:
            body = {"path": "$" + self._field_path(args[0])}
        elif method == "Count":
            body = {"value": "count"}
        else:
            document = self._document(args[0], source) if args else None
            if isinstance(document, dict):
                body = document
            else:
                body = {"expression": ", ".join(a.text for a in args)}
        return AggregationStage(stage_name, StageBody.from_mapping(body), order)

    def _lookup_source(self, expr: Expr, source: SourceFile) -> str:
        name = string_value(expr)
        if name is not None:
            return name
        resolved = self.resolver.evaluate(expr, source, "")
        if resolved.name is not None:
            return resolved.name
        target = self._resolve_target(expr, source, {}, 0)
        return target.name if target is not None else expr.text


def _terms_document(terms: list[FilterTerm]) -> dict[str, Any]:
    document: dict[str, Any] = {}
    for term in terms:
        if term.field_path == UNPARSED_FIELD:
            document.setdefault("$expr", term.value)
        elif term.operator == "eq" and not term.negated:
            document[term.field_path] = term.value
        else:
            ops = document.setdefault(term.field_path, {})
            if isinstance(ops, dict):
                key = f"${term.operator}"
                if term.negated:
                    ops.setdefault("$not", {})[key] = term.value
                else:
                    ops[key] = term.value
    return document
