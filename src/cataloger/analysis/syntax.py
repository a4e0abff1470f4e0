"""Language-neutral syntax model consumed by the analyzers.

A front end (see :mod:`cataloger.analysis.csharp`) turns one source file into
a :class:`SourceFile`: its type declarations, every call site, and the symbol
tables needed to evaluate collection names.  Analyzers only ever see this
model, never a concrete parse tree.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from collections.abc import Iterator

# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: Any
    text: str = ""
    line: int = 0


@dataclass(frozen=True)
class Name:
    identifier: str
    type_args: tuple[str, ...] = ()
    text: str = ""
    line: int = 0


@dataclass(frozen=True)
class MemberAccess:
    target: Expr
    member: str
    text: str = ""
    line: int = 0


@dataclass(frozen=True)
class Call:
    """Method invocation; ``target`` is the receiver or ``None`` for a bare call."""

    target: Expr | None
    method: str
    args: tuple[Expr, ...] = ()
    type_args: tuple[str, ...] = ()
    text: str = ""
    line: int = 0
    column: int = 0


@dataclass(frozen=True)
class New:
    """Object creation other than document literals (``new ObjectId("...")``)."""

    type_name: str
    args: tuple[Expr, ...] = ()
    text: str = ""
    line: int = 0


@dataclass(frozen=True)
class DocumentExpr:
    """Document literal: ordered key/value entries."""

    entries: tuple[tuple[str, Expr], ...]
    text: str = ""
    line: int = 0

    def get(self, key: str) -> Expr | None:
        for k, v in self.entries:
            if k == key:
                return v
        return None


@dataclass(frozen=True)
class ArrayExpr:
    items: tuple[Expr, ...]
    text: str = ""
    line: int = 0


@dataclass(frozen=True)
class Lambda:
    params: tuple[str, ...]
    body: Expr
    text: str = ""
    line: int = 0


@dataclass(frozen=True)
class Binary:
    op: str
    left: Expr
    right: Expr
    text: str = ""
    line: int = 0


@dataclass(frozen=True)
class Unary:
    op: str
    operand: Expr
    text: str = ""
    line: int = 0


@dataclass(frozen=True)
class Opaque:
    text: str = ""
    line: int = 0


Expr = Union[
    Literal, Name, MemberAccess, Call, New, DocumentExpr, ArrayExpr, Lambda, Binary, Unary, Opaque
]


def children(expr: Expr) -> tuple[Expr, ...]:
    """Direct sub-expressions of *expr*."""
    if isinstance(expr, MemberAccess):
        return (expr.target,)
    if isinstance(expr, Call):
        head = (expr.target,) if expr.target is not None else ()
        return head + expr.args
    if isinstance(expr, New):
        return expr.args
    if isinstance(expr, DocumentExpr):
        return tuple(v for _, v in expr.entries)
    if isinstance(expr, ArrayExpr):
        return expr.items
    if isinstance(expr, Lambda):
        return (expr.body,)
    if isinstance(expr, Binary):
        return (expr.left, expr.right)
    if isinstance(expr, Unary):
        return (expr.operand,)
    return ()


def walk(expr: Expr) -> Iterator[Expr]:
    """Pre-order traversal of *expr* and all its sub-expressions."""
    stack = [expr]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(children(node)))


def string_value(expr: Expr | None) -> str | None:
    if isinstance(expr, Literal) and isinstance(expr.value, str):
        return expr.value
    return None


_GENERIC_RE = re.compile(r"<.*>$")


def short_type_name(type_text: str) -> str:
    """``MyApp.Models.User?`` -> ``User``; ``List<Order>`` -> ``List``."""
    text = type_text.strip().rstrip("?")
    text = _GENERIC_RE.sub("", text)
    return text.rsplit(".", 1)[-1]


_TYPE_ARGS_RE = re.compile(r"<(.+)>")


def generic_arguments(type_text: str) -> tuple[str, ...]:
    """``IMongoCollection<User>`` -> ``("User",)``."""
    match = _TYPE_ARGS_RE.search(type_text)
    if not match:
        return ()
    depth = 0
    parts: list[str] = []
    current: list[str] = []
    for ch in match.group(1):
        if ch == "<":
            depth += 1
        elif ch == ">":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(ch)
    parts.append("".join(current).strip())
    return tuple(p for p in parts if p)


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Attribute:
    name: str
    args: tuple[Expr, ...] = ()

    @property
    def short_name(self) -> str:
        return self.name.rsplit(".", 1)[-1]

    @property
    def first_value(self) -> str:
        """First constructor argument with quotes trimmed, else ``"true"``."""
        if not self.args:
            return "true"
        arg = self.args[0]
        if isinstance(arg, Literal) and arg.value is not None:
            return str(arg.value)
        return arg.text.strip().strip('"') or "true"


@dataclass(frozen=True)
class Member:
    """A property or field declared on a type."""

    name: str
    kind: str  # "property" | "field"
    type_text: str
    nullable: bool = False
    required: bool = False
    modifiers: frozenset[str] = frozenset()
    attributes: tuple[Attribute, ...] = ()
    doc: str = ""
    initializer: Expr | None = None
    line: int = 0

    @property
    def is_static(self) -> bool:
        return "static" in self.modifiers or "const" in self.modifiers


@dataclass(frozen=True)
class Declaration:
    name: str
    kind: str  # "class" | "record" | "struct" | "interface"
    namespace: str = ""
    attributes: tuple[Attribute, ...] = ()
    base_types: tuple[str, ...] = ()
    members: tuple[Member, ...] = ()
    doc: str = ""
    line_start: int = 0
    line_end: int = 0
    container: str = ""

    @property
    def fqn(self) -> str:
        parts = [p for p in (self.namespace, self.container, self.name) if p]
        return ".".join(parts)

    def has_attribute(self, *markers: str) -> bool:
        """True when any attribute name contains one of *markers*."""
        return any(m in a.name for a in self.attributes for m in markers)

    def attribute(self, short_name: str) -> Attribute | None:
        for a in self.attributes:
            if a.short_name == short_name:
                return a
        return None


@dataclass(frozen=True)
class Constant:
    """A ``const`` or ``readonly`` symbol and its initializer."""

    name: str
    value: Expr
    is_const: bool
    container: str = ""


@dataclass(frozen=True)
class CallSite:
    """One call with the method calls chained on its result."""

    call: Call
    chain: tuple[Call, ...] = ()
    container: str = ""
    method_name: str = ""


@dataclass(frozen=True)
class SourceFile:
    path: str
    declarations: tuple[Declaration, ...] = ()
    calls: tuple[CallSite, ...] = ()
    # Symbol name -> last assigned expression (fields, properties, top-level code).
    bindings: dict[str, Expr] = field(default_factory=dict)
    # (container, method) -> locals assigned inside that member body.
    local_bindings: dict[tuple[str, str], dict[str, Expr]] = field(default_factory=dict)
    # Symbol name -> declared type text (fields, properties, parameters, locals).
    symbol_types: dict[str, str] = field(default_factory=dict)
    symbol_lines: dict[str, int] = field(default_factory=dict)
    constants: dict[str, Constant] = field(default_factory=dict)
    namespace: str = ""

    def lookup_constant(self, expr: Expr) -> Constant | None:
        """Resolve ``Name`` or ``Owner.Name`` to a declared constant."""
        if isinstance(expr, Name):
            return self.constants.get(expr.identifier)
        if isinstance(expr, MemberAccess):
            return self.constants.get(expr.member)
        return None

    def scoped(self, container: str, method: str) -> SourceFile:
        """View of this file in which the locals of *method* shadow other bindings."""
        local = self.local_bindings.get((container, method))
        if not local:
            return self
        return replace(self, bindings={**self.bindings, **local})

    def any_binding(self, name: str) -> Expr | None:
        """The expression bound to *name* in any scope, file-level first."""
        if name in self.bindings:
            return self.bindings[name]
        for local in self.local_bindings.values():
            if name in local:
                return local[name]
        return None
