"""C# front end: tree-sitter parse tree -> neutral syntax model."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tree_sitter import Language, Parser

from cataloger.analysis.syntax import (
    ArrayExpr,
    Attribute,
    Binary,
    Call,
    CallSite,
    Constant,
    Declaration,
    DocumentExpr,
    Lambda,
    Literal,
    Member,
    MemberAccess,
    Name,
    New,
    Opaque,
    SourceFile,
    Unary,
    short_type_name,
    string_value,
)
from cataloger.errors import ExtractionError

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from tree_sitter import Node as TSNode

    from cataloger.analysis.syntax import Expr

logger = logging.getLogger(__name__)

_MODIFIER_WORDS = frozenset(
    {
        "public",
        "private",
        "protected",
        "internal",
        "static",
        "readonly",
        "const",
        "required",
        "virtual",
        "override",
        "abstract",
        "sealed",
        "partial",
        "new",
    }
)

_DOC_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class LangConfig:
    """Tree-sitter configuration for a source language."""

    language: Language
    type_declarations: dict[str, str]  # node_type -> declaration kind
    string_literals: frozenset[str]


# ---- Language loaders (lazy, handle ImportError) ----


def _load_csharp() -> LangConfig:
    import tree_sitter_c_sharp as tscsharp

    return LangConfig(
        language=Language(tscsharp.language()),
        type_declarations={
            "class_declaration": "class",
            "record_declaration": "record",
            "record_struct_declaration": "record",
            "struct_declaration": "struct",
            "interface_declaration": "interface",
        },
        string_literals=frozenset(
            {"string_literal", "verbatim_string_literal", "raw_string_literal"}
        ),
    )


_EXTENSION_LOADERS: dict[str, Callable[[], LangConfig]] = {
    ".cs": _load_csharp,
}

_LANG_CACHE: dict[str, LangConfig | None] = {}


def get_lang_config(extension: str) -> LangConfig | None:
    """Return the parser config for *extension*, or ``None`` if unavailable."""
    if extension in _LANG_CACHE:
        return _LANG_CACHE[extension]
    loader = _EXTENSION_LOADERS.get(extension)
    if loader is None:
        return None
    try:
        config: LangConfig | None = loader()
    except ImportError:
        logger.warning("Grammar for %s files is not installed; skipping them", extension)
        config = None
    _LANG_CACHE[extension] = config
    return config


def supported_extensions() -> frozenset[str]:
    """Extensions whose grammar package is importable."""
    return frozenset(ext for ext in _EXTENSION_LOADERS if get_lang_config(ext) is not None)


def clear_cache() -> None:
    _LANG_CACHE.clear()


def parse_source(path: str, source: bytes, extension: str = ".cs") -> SourceFile:
    """Parse *source* into a :class:`SourceFile` labelled with *path*."""
    config = get_lang_config(extension)
    if config is None:
        raise ExtractionError(path, f"unsupported language for {extension!r}")
    parser = Parser(config.language)
    tree = parser.parse(source)
    builder = _Builder(path, config)
    builder.visit(tree.root_node, "", "")
    return builder.build()


def parse_file(file_path: Path, rel_path: str) -> SourceFile:
    try:
        source = file_path.read_bytes()
    except OSError as exc:
        raise ExtractionError(rel_path, f"cannot read file: {exc}") from exc
    return parse_source(rel_path, source, file_path.suffix)


# ---- Node helpers ----


def _text(node: TSNode | None) -> str:
    if node is None or node.text is None:
        return ""
    return node.text.decode("utf-8", errors="replace")


def _line(node: TSNode) -> int:
    return node.start_point[0] + 1


def _same(a: TSNode | None, b: TSNode | None) -> bool:
    if a is None or b is None:
        return False
    return a.type == b.type and a.start_byte == b.start_byte and a.end_byte == b.end_byte


def _child_of_type(node: TSNode, *types: str) -> TSNode | None:
    for child in node.children:
        if child.type in types:
            return child
    return None


def _unquote(text: str) -> str:
    s = text
    if s.endswith("u8"):
        s = s[:-2]
    if s.startswith('"""'):
        return s.strip('"').strip()
    if s.startswith("@"):
        return s[2:-1].replace('""', '"')
    if s[:1] in ("\"", "'") and len(s) >= 2:
        return s[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return s


def _modifiers(node: TSNode) -> frozenset[str]:
    mods: set[str] = set()
    for child in node.children:
        if child.type == "modifier":
            mods.add(_text(child))
        elif not child.is_named and child.type in _MODIFIER_WORDS:
            mods.add(child.type)
    return frozenset(mods)


def _doc_comment(node: TSNode) -> str:
    lines: list[str] = []
    sibling = node.prev_sibling
    while sibling is not None and sibling.type == "comment":
        text = _text(sibling)
        if not text.startswith("///"):
            break
        lines.insert(0, text[3:].strip())
        sibling = sibling.prev_sibling
    doc = _DOC_TAG_RE.sub(" ", " ".join(lines))
    return _WS_RE.sub(" ", doc).strip()


def _declarator_value(declarator: TSNode) -> TSNode | None:
    """Initializer node of a ``variable_declarator`` (grammar-version tolerant)."""
    seen_equals = False
    for child in declarator.children:
        if child.type == "equals_value_clause":
            named = child.named_children
            return named[-1] if named else None
        if child.type == "=":
            seen_equals = True
            continue
        if seen_equals and child.is_named:
            return child
    return None


def _declarator_name(declarator: TSNode) -> str:
    name = declarator.child_by_field_name("name")
    if name is None:
        name = _child_of_type(declarator, "identifier")
    return _text(name)


def _name_parts(node: TSNode | None) -> tuple[str, tuple[str, ...]]:
    if node is None:
        return "", ()
    if node.type == "generic_name":
        ident = _child_of_type(node, "identifier")
        args_node = _child_of_type(node, "type_argument_list")
        type_args = tuple(_text(a) for a in args_node.named_children) if args_node else ()
        return _text(ident), type_args
    return _text(node), ()


def _is_nullable(type_text: str) -> bool:
    return type_text.endswith("?") or type_text.startswith("Nullable<")


# ---- Builder ----


class _Builder:
    """Accumulates declarations, call sites and symbol tables for one file."""

    def __init__(self, path: str, config: LangConfig) -> None:
        self.path = path
        self.config = config
        self.declarations: list[Declaration] = []
        self.calls: list[CallSite] = []
        self.bindings: dict[str, Expr] = {}
        self.local_bindings: dict[tuple[str, str], dict[str, Expr]] = {}
        self.local_names: dict[tuple[str, str], set[str]] = {}
        self.symbol_types: dict[str, str] = {}
        self.symbol_lines: dict[str, int] = {}
        self.constants: dict[str, Constant] = {}
        self.namespace = ""

    def build(self) -> SourceFile:
        return SourceFile(
            path=self.path,
            declarations=tuple(self.declarations),
            calls=tuple(self.calls),
            bindings=self.bindings,
            local_bindings=self.local_bindings,
            symbol_types=self.symbol_types,
            symbol_lines=self.symbol_lines,
            constants=self.constants,
            namespace=self.namespace,
        )

    def _declare(self, name: str, type_text: str, node: TSNode) -> None:
        self.symbol_types[name] = type_text
        self.symbol_lines[name] = _line(node)

    # -- Declarations --

    def visit(self, node: TSNode, namespace: str, container: str) -> None:
        for child in node.named_children:
            ctype = child.type
            if ctype == "namespace_declaration":
                name = _text(child.child_by_field_name("name"))
                ns = f"{namespace}.{name}" if namespace else name
                self.namespace = self.namespace or ns
                body = child.child_by_field_name("body") or _child_of_type(
                    child, "declaration_list"
                )
                if body is not None:
                    self.visit(body, ns, container)
            elif ctype == "file_scoped_namespace_declaration":
                name = _text(child.child_by_field_name("name"))
                namespace = f"{namespace}.{name}" if namespace else name
                self.namespace = self.namespace or namespace
                self.visit(child, namespace, container)
            elif ctype in self.config.type_declarations:
                self._declaration(child, namespace, container)
            elif ctype == "global_statement":
                self._scan(child, container, "")

    def _declaration(self, node: TSNode, namespace: str, container: str) -> None:
        name = _text(node.child_by_field_name("name"))
        members: list[Member] = []

        kind = self.config.type_declarations[node.type]
        params = node.child_by_field_name("parameters") or _child_of_type(node, "parameter_list")
        if params is not None:
            for param in params.named_children:
                if param.type != "parameter":
                    continue
                if kind == "record":
                    # Positional record parameters become properties.
                    members.append(self._parameter_member(param))
                else:
                    self._scan(param, name, "")

        body = node.child_by_field_name("body")
        if body is None or body.type != "declaration_list":
            body = _child_of_type(node, "declaration_list")
        inner_container = f"{container}.{name}" if container else name
        if body is not None:
            for member in body.named_children:
                mtype = member.type
                if mtype == "property_declaration":
                    members.append(self._property(member, name))
                    self._scan(member, name, "")
                elif mtype == "field_declaration":
                    members.extend(self._fields(member, name))
                    self._scan(member, name, "")
                elif mtype in self.config.type_declarations:
                    self._declaration(member, namespace, inner_container)
                elif mtype in ("method_declaration", "constructor_declaration"):
                    method = _text(member.child_by_field_name("name")) or name
                    self._scan(member, name, method)
                elif mtype != "comment":
                    self._scan(member, name, "")

        self.declarations.append(
            Declaration(
                name=name,
                kind=kind,
                namespace=namespace,
                attributes=self._attributes(node),
                base_types=self._base_types(node),
                members=tuple(members),
                doc=_doc_comment(node),
                line_start=_line(node),
                line_end=node.end_point[0] + 1,
                container=container,
            )
        )

    def _attributes(self, node: TSNode) -> tuple[Attribute, ...]:
        attrs: list[Attribute] = []
        for attr_list in node.children:
            if attr_list.type != "attribute_list":
                continue
            for attr in attr_list.named_children:
                if attr.type != "attribute":
                    continue
                name_node = attr.child_by_field_name("name") or (
                    attr.named_children[0] if attr.named_children else None
                )
                args: list[Expr] = []
                arg_list = _child_of_type(attr, "attribute_argument_list")
                if arg_list is not None:
                    for arg in arg_list.named_children:
                        if arg.type != "attribute_argument":
                            continue
                        if _child_of_type(arg, "name_equals") is not None:
                            continue
                        named = [c for c in arg.named_children if c.type != "name_colon"]
                        if named:
                            args.append(self._expr(named[-1]))
                attrs.append(Attribute(name=_text(name_node), args=tuple(args)))
        return tuple(attrs)

    def _base_types(self, node: TSNode) -> tuple[str, ...]:
        base_list = _child_of_type(node, "base_list")
        if base_list is None:
            return ()
        bases: list[str] = []
        for child in base_list.named_children:
            if child.type == "argument_list":
                continue
            if child.type == "primary_constructor_base_type" and child.named_children:
                bases.append(_text(child.named_children[0]))
            else:
                bases.append(_text(child))
        return tuple(bases)

    def _parameter_member(self, param: TSNode) -> Member:
        type_text = _text(param.child_by_field_name("type"))
        name = _text(param.child_by_field_name("name"))
        self._declare(name, type_text, param)
        return Member(
            name=name,
            kind="property",
            type_text=type_text.rstrip("?"),
            nullable=_is_nullable(type_text),
            required=not _is_nullable(type_text),
            attributes=self._attributes(param),
            line=_line(param),
        )

    def _property(self, node: TSNode, container: str) -> Member:
        type_text = _text(node.child_by_field_name("type"))
        name = _text(node.child_by_field_name("name"))
        mods = _modifiers(node)

        init_only = False
        accessors = node.child_by_field_name("accessors") or _child_of_type(node, "accessor_list")
        if accessors is not None:
            for acc in accessors.named_children:
                if acc.type == "accessor_declaration" and any(
                    c.type == "init" or _text(c) == "init" for c in acc.children
                ):
                    init_only = True

        initializer: Expr | None = None
        value = node.child_by_field_name("value")
        if value is not None:
            if value.type == "arrow_expression_clause":
                if value.named_children:
                    arrow = self._expr(value.named_children[-1])
                    if isinstance(arrow, Literal):
                        self.constants[name] = Constant(name, arrow, False, container)
            else:
                initializer = self._expr(value)
                self.bindings[name] = initializer

        self._declare(name, type_text, node)
        return Member(
            name=name,
            kind="property",
            type_text=type_text.rstrip("?"),
            nullable=_is_nullable(type_text),
            required="required" in mods or init_only,
            modifiers=mods,
            attributes=self._attributes(node),
            doc=_doc_comment(node),
            initializer=initializer,
            line=_line(node),
        )

    def _fields(self, node: TSNode, container: str) -> list[Member]:
        declaration = _child_of_type(node, "variable_declaration")
        if declaration is None:
            return []
        mods = _modifiers(node)
        type_text = _text(declaration.child_by_field_name("type"))
        attributes = self._attributes(node)
        doc = _doc_comment(node)

        members: list[Member] = []
        for declarator in declaration.named_children:
            if declarator.type != "variable_declarator":
                continue
            name = _declarator_name(declarator)
            value_node = _declarator_value(declarator)
            initializer = self._expr(value_node) if value_node is not None else None
            self._declare(name, type_text, declarator)
            if initializer is not None:
                self.bindings[name] = initializer
                if "const" in mods or "readonly" in mods:
                    self.constants[name] = Constant(name, initializer, "const" in mods, container)
            members.append(
                Member(
                    name=name,
                    kind="field",
                    type_text=type_text.rstrip("?"),
                    nullable=_is_nullable(type_text),
                    required="required" in mods,
                    modifiers=mods,
                    attributes=attributes,
                    doc=doc,
                    initializer=initializer,
                    line=_line(declarator),
                )
            )
        return members

    # -- Bodies --

    def _scan(self, root: TSNode, container: str, method: str) -> None:
        """Collect call sites, bindings and local symbols below *root*."""
        scope = (container, method)
        stack = [root]
        while stack:
            node = stack.pop()
            ntype = node.type
            if ntype in self.config.type_declarations and not _same(node, root):
                continue
            if ntype == "invocation_expression":
                call = self._expr(node)
                if isinstance(call, Call):
                    self.calls.append(CallSite(call, self._chain(node), container, method))
            elif ntype == "local_declaration_statement":
                self._local(node, scope)
            elif ntype == "assignment_expression":
                self._assignment(node, scope)
            elif ntype == "parameter":
                name = _text(node.child_by_field_name("name"))
                type_node = node.child_by_field_name("type")
                if name and method:
                    self.local_names.setdefault(scope, set()).add(name)
                if name and type_node is not None and name not in self.symbol_types:
                    self._declare(name, _text(type_node), node)
            stack.extend(reversed(node.named_children))

    def _local(self, node: TSNode, scope: tuple[str, str]) -> None:
        declaration = _child_of_type(node, "variable_declaration")
        if declaration is None:
            return
        is_const = "const" in _modifiers(node)
        type_text = _text(declaration.child_by_field_name("type"))
        for declarator in declaration.named_children:
            if declarator.type != "variable_declarator":
                continue
            name = _declarator_name(declarator)
            self.local_names.setdefault(scope, set()).add(name)
            if type_text and type_text != "var":
                self._declare(name, type_text, declarator)
            value_node = _declarator_value(declarator)
            if value_node is None:
                continue
            value = self._expr(value_node)
            self.local_bindings.setdefault(scope, {})[name] = value
            if is_const:
                self.constants[name] = Constant(name, value, True, scope[0])

    def _assignment(self, node: TSNode, scope: tuple[str, str]) -> None:
        operator = node.child_by_field_name("operator")
        op_text = _text(operator) if operator is not None else ""
        if not op_text:
            op_text = next((c.type for c in node.children if not c.is_named), "")
        if op_text != "=":
            return
        left = node.child_by_field_name("left")
        right = node.child_by_field_name("right")
        if left is None or right is None:
            return
        if left.type == "member_access_expression":
            name = _name_parts(left.child_by_field_name("name"))[0]
            if name:
                self.bindings[name] = self._expr(right)
            return
        name = _text(left)
        if not name:
            return
        if name in self.local_names.get(scope, ()):
            self.local_bindings.setdefault(scope, {})[name] = self._expr(right)
        else:
            self.bindings[name] = self._expr(right)

    def _chain(self, node: TSNode) -> tuple[Call, ...]:
        """Invocations chained on the result of *node* (``x.Find().Sort().Limit()``)."""
        chain: list[Call] = []
        current = node
        while True:
            parent = current.parent
            while parent is not None and parent.type in (
                "parenthesized_expression",
                "await_expression",
            ):
                current = parent
                parent = parent.parent
            if parent is None or parent.type != "member_access_expression":
                break
            if not _same(parent.child_by_field_name("expression"), current):
                break
            grand = parent.parent
            if grand is None or grand.type != "invocation_expression":
                break
            expr = self._expr(grand)
            if isinstance(expr, Call):
                chain.append(expr)
            current = grand
        return tuple(chain)

    # -- Expressions --

    def _arguments(self, node: TSNode | None) -> tuple[Expr, ...]:
        if node is None:
            return ()
        args: list[Expr] = []
        for arg in node.named_children:
            if arg.type != "argument":
                continue
            named = [c for c in arg.named_children if c.type != "name_colon"]
            if named:
                args.append(self._expr(named[-1]))
        return tuple(args)

    def _items(self, node: TSNode) -> tuple[Expr, ...]:
        if node.type in ("initializer_expression", "collection_expression"):
            init: TSNode | None = node
        else:
            init = _child_of_type(node, "initializer_expression")
        if init is None:
            return ()
        return tuple(self._expr(c) for c in init.named_children)

    def _expr(self, node: TSNode) -> Expr:  # noqa: C901
        ntype = node.type
        text = _text(node)
        line = _line(node)

        if ntype in self.config.string_literals:
            return Literal(_unquote(text), text, line)
        if ntype == "integer_literal":
            digits = text.rstrip("uUlL").replace("_", "")
            try:
                return Literal(int(digits, 0), text, line)
            except ValueError:
                return Literal(text, text, line)
        if ntype == "real_literal":
            try:
                return Literal(float(text.rstrip("fFdDmM").replace("_", "")), text, line)
            except ValueError:
                return Literal(text, text, line)
        if ntype == "boolean_literal":
            return Literal(text == "true", text, line)
        if ntype == "null_literal":
            return Literal(None, text, line)
        if ntype == "character_literal":
            return Literal(_unquote(text), text, line)
        if ntype in ("identifier", "predefined_type", "qualified_name"):
            return Name(text, (), text, line)
        if ntype == "generic_name":
            ident, type_args = _name_parts(node)
            return Name(ident, type_args, text, line)
        if ntype == "this_expression" or text == "this":
            return Name("this", (), text, line)
        if ntype == "member_access_expression":
            target = node.child_by_field_name("expression")
            member, _ = _name_parts(node.child_by_field_name("name"))
            if target is None:
                return Opaque(text, line)
            return MemberAccess(self._expr(target), member, text, line)
        if ntype == "invocation_expression":
            return self._invocation(node, text, line)
        if ntype in ("object_creation_expression", "implicit_object_creation_expression"):
            return self._creation(node, text, line)
        if ntype in (
            "array_creation_expression",
            "implicit_array_creation_expression",
            "collection_expression",
            "initializer_expression",
        ):
            return ArrayExpr(self._items(node), text, line)
        if ntype == "lambda_expression":
            return self._lambda(node, text, line)
        if ntype == "binary_expression":
            left = node.child_by_field_name("left")
            right = node.child_by_field_name("right")
            if left is None or right is None:
                return Opaque(text, line)
            operator = node.child_by_field_name("operator")
            op = _text(operator) if operator is not None else ""
            if not op:
                op = next((c.type for c in node.children if not c.is_named), "")
            return Binary(op, self._expr(left), self._expr(right), text, line)
        if ntype == "prefix_unary_expression":
            op = next((c.type for c in node.children if not c.is_named), "")
            if not node.named_children:
                return Opaque(text, line)
            return Unary(op, self._expr(node.named_children[-1]), text, line)
        if ntype in ("parenthesized_expression", "await_expression", "checked_expression"):
            if node.named_children:
                return self._expr(node.named_children[-1])
        if ntype == "cast_expression":
            value = node.child_by_field_name("value")
            if value is not None:
                return self._expr(value)
        return Opaque(text, line)

    def _invocation(self, node: TSNode, text: str, line: int) -> Expr:
        function = node.child_by_field_name("function")
        args = self._arguments(node.child_by_field_name("arguments"))
        column = node.start_point[1] + 1
        if function is None:
            return Opaque(text, line)
        if function.type == "member_access_expression":
            target_node = function.child_by_field_name("expression")
            method, type_args = _name_parts(function.child_by_field_name("name"))
            target = self._expr(target_node) if target_node is not None else None
            return Call(target, method, args, type_args, text, line, column)
        if function.type in ("identifier", "generic_name"):
            method, type_args = _name_parts(function)
            return Call(None, method, args, type_args, text, line, column)
        return Opaque(text, line)

    def _creation(self, node: TSNode, text: str, line: int) -> Expr:
        type_text = _text(node.child_by_field_name("type"))
        args = self._arguments(
            node.child_by_field_name("arguments") or _child_of_type(node, "argument_list")
        )
        init = node.child_by_field_name("initializer") or _child_of_type(
            node, "initializer_expression"
        )
        short = short_type_name(type_text) if type_text else ""

        if short == "BsonDocument":
            entries: list[tuple[str, Expr]] = []
            if len(args) >= 2:
                key = string_value(args[0])
                if key is not None:
                    entries.append((key, args[1]))
            if init is not None:
                for element in init.named_children:
                    pair = element.named_children
                    if element.type == "initializer_expression" and len(pair) >= 2:
                        key = string_value(self._expr(pair[0]))
                        if key is not None:
                            entries.append((key, self._expr(pair[1])))
            return DocumentExpr(tuple(entries), text, line)
        if short in ("BsonArray", "List") and init is not None:
            return ArrayExpr(self._items(init), text, line)
        return New(type_text, args, text, line)

    def _lambda(self, node: TSNode, text: str, line: int) -> Expr:
        params_node = node.child_by_field_name("parameters")
        if params_node is None and node.named_children:
            params_node = node.named_children[0]
        params: tuple[str, ...] = ()
        if params_node is not None:
            if params_node.type == "parameter_list":
                params = tuple(
                    _text(p.child_by_field_name("name"))
                    for p in params_node.named_children
                    if p.type == "parameter"
                )
            else:
                params = (_text(params_node),)

        body = node.child_by_field_name("body")
        if body is None and node.named_children:
            body = node.named_children[-1]
        if body is None:
            return Opaque(text, line)
        if body.type == "block":
            returned = _child_of_type(body, "return_statement")
            if returned is None or not returned.named_children:
                return Lambda(params, Opaque(_text(body), _line(body)), text, line)
            return Lambda(params, self._expr(returned.named_children[0]), text, line)
        return Lambda(params, self._expr(body), text, line)
