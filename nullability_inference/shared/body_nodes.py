"""
Implementation-body model read from symbol ledgers.

The external parser reduces each method body to a closed set of statement and
expression kinds. Anything outside the set parses to an Opaque node so the
extractor can record it as unanalyzable instead of failing.

Expressions:
    nil, new, literal, block, param, var, call, invoke, conditional, coalesce, opaque
Statements:
    return, guard, call, invoke, assign, raise, opaque
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

GUARD_TESTS = ('nil', 'nonnil', 'assert')


class SymbolLedgerError(ValueError):
    """A symbol ledger document is malformed beyond recovery."""


# =============================================================================
# Expressions
# =============================================================================

@dataclass(frozen=True)
class NilExpr:
    line: int = 0


@dataclass(frozen=True)
class NewExpr:
    """Newly constructed object: [[Foo alloc] init], [Foo new], @{...}."""
    type_name: str = ''
    line: int = 0


@dataclass(frozen=True)
class LiteralExpr:
    """Non-nil literal: @"text", @42, @[...]."""
    text: str = ''
    line: int = 0


@dataclass(frozen=True)
class BlockExpr:
    """Block literal ^{ ... }."""
    line: int = 0


@dataclass(frozen=True)
class ParamRef:
    name: str
    line: int = 0


@dataclass(frozen=True)
class VarRef:
    name: str
    line: int = 0


@dataclass(frozen=True)
class CallExpr:
    """Message send or function call; ``target`` is the resolved callee (Owner.selector)."""
    target: str | None
    receiver: Expr | None = None
    args: tuple[Expr, ...] = ()
    line: int = 0


@dataclass(frozen=True)
class InvokeExpr:
    """Invocation of a block held in ``block`` (a parameter or local name)."""
    block: str
    args: tuple[Expr, ...] = ()
    line: int = 0


@dataclass(frozen=True)
class ConditionalExpr:
    """Ternary: each branch is a possible value."""
    branches: tuple[Expr, ...] = ()
    line: int = 0


@dataclass(frozen=True)
class CoalesceExpr:
    """Null-coalescing substitution: value ?: fallback."""
    value: Expr
    fallback: Expr
    line: int = 0


@dataclass(frozen=True)
class OpaqueExpr:
    """Macro dispatch, reflection (performSelector:), or an unknown node kind."""
    detail: str = ''
    args: tuple[Expr, ...] = ()
    line: int = 0


Expr = Union[
    NilExpr, NewExpr, LiteralExpr, BlockExpr, ParamRef, VarRef,
    CallExpr, InvokeExpr, ConditionalExpr, CoalesceExpr, OpaqueExpr,
]

NONNIL_EXPRS = (NewExpr, LiteralExpr, BlockExpr)


# =============================================================================
# Statements
# =============================================================================

@dataclass(frozen=True)
class ReturnStmt:
    value: Expr | None = None
    line: int = 0


@dataclass(frozen=True)
class GuardStmt:
    """
    if-style guard on one subject.

    test:
        'nil'    - branch taken when subject is nil (``!x``, ``x == nil``)
        'nonnil' - branch taken when subject is non-nil (``x``, ``x != nil``)
        'assert' - assertion; execution continues only if subject is non-nil
    """
    subject: Expr
    test: str
    then: tuple[Stmt, ...] = ()
    orelse: tuple[Stmt, ...] = ()
    line: int = 0


@dataclass(frozen=True)
class ExprStmt:
    """Call or block invocation evaluated for its effect."""
    value: Expr
    line: int = 0


@dataclass(frozen=True)
class AssignStmt:
    target: str
    value: Expr
    line: int = 0


@dataclass(frozen=True)
class RaiseStmt:
    line: int = 0


@dataclass(frozen=True)
class OpaqueStmt:
    detail: str = ''
    args: tuple[Expr, ...] = ()
    line: int = 0


Stmt = Union[ReturnStmt, GuardStmt, ExprStmt, AssignStmt, RaiseStmt, OpaqueStmt]


# =============================================================================
# Parsing
# =============================================================================

def _line(data: dict[str, Any]) -> int:
    return int(data.get('line', 0) or 0)


def _exprs(items: list[Any] | None) -> tuple[Expr, ...]:
    return tuple(parse_expr(item) for item in (items or []))


def parse_expr(data: Any) -> Expr:
    """Parse one expression dict. Unknown shapes become OpaqueExpr."""
    if data is None:
        return NilExpr()
    if not isinstance(data, dict):
        return OpaqueExpr(detail=f"unparseable expression {data!r}")

    kind = data.get('kind')
    line = _line(data)

    if kind == 'nil':
        return NilExpr(line=line)
    if kind == 'new':
        return NewExpr(type_name=data.get('type', ''), line=line)
    if kind == 'literal':
        return LiteralExpr(text=str(data.get('value', '')), line=line)
    if kind == 'block':
        return BlockExpr(line=line)
    if kind == 'param':
        return ParamRef(name=data['name'], line=line)
    if kind == 'var':
        return VarRef(name=data['name'], line=line)
    if kind == 'call':
        receiver = data.get('receiver')
        return CallExpr(
            target=data.get('target'),
            receiver=parse_expr(receiver) if receiver is not None else None,
            args=_exprs(data.get('args')),
            line=line,
        )
    if kind == 'invoke':
        return InvokeExpr(block=data['block'], args=_exprs(data.get('args')), line=line)
    if kind == 'conditional':
        return ConditionalExpr(branches=_exprs(data.get('branches')), line=line)
    if kind == 'coalesce':
        return CoalesceExpr(value=parse_expr(data.get('value')), fallback=parse_expr(data.get('fallback')),
                            line=line)
    if kind == 'opaque':
        return OpaqueExpr(detail=data.get('detail', ''), args=_exprs(data.get('args')), line=line)

    return OpaqueExpr(detail=f"unknown expression kind '{kind}'", args=_exprs(data.get('args')), line=line)


def parse_stmt(data: Any) -> Stmt:
    """Parse one statement dict. Unknown shapes become OpaqueStmt."""
    if not isinstance(data, dict):
        return OpaqueStmt(detail=f"unparseable statement {data!r}")

    kind = data.get('kind')
    line = _line(data)

    if kind == 'return':
        value = data.get('value')
        return ReturnStmt(value=parse_expr(value) if 'value' in data and value is not None else None, line=line)
    if kind == 'guard':
        test = data.get('test', 'nonnil')
        if test not in GUARD_TESTS:
            return OpaqueStmt(detail=f"unknown guard test '{test}'", line=line)
        return GuardStmt(
            subject=parse_expr(data.get('subject')),
            test=test,
            then=parse_body(data.get('then')),
            orelse=parse_body(data.get('else')),
            line=line,
        )
    if kind in ('call', 'invoke'):
        return ExprStmt(value=parse_expr(data), line=line)
    if kind == 'assign':
        return AssignStmt(target=data['target'], value=parse_expr(data.get('value')), line=line)
    if kind == 'raise':
        return RaiseStmt(line=line)
    if kind == 'opaque':
        return OpaqueStmt(detail=data.get('detail', ''), args=_exprs(data.get('args')), line=line)

    return OpaqueStmt(detail=f"unknown statement kind '{kind}'", args=_exprs(data.get('args')), line=line)


def parse_body(items: list[Any] | None) -> tuple[Stmt, ...]:
    return tuple(parse_stmt(item) for item in (items or []))


def check_declaration(decl: dict[str, Any], where: str) -> None:
    """
    Reject declaration shapes the signature builder cannot read.

    Raises:
        SymbolLedgerError: If returns, params or a nested block has the wrong shape
    """
    returns = decl.get('returns')
    if returns is not None and not isinstance(returns, (dict, str)):
        raise SymbolLedgerError(f"{where}: 'returns' must be a mapping or a type string, got {returns!r}")

    params = decl.get('params')
    if params is None:
        return
    if not isinstance(params, list):
        raise SymbolLedgerError(f"{where}: 'params' must be a list, got {params!r}")
    for index, param in enumerate(params):
        if not isinstance(param, dict):
            raise SymbolLedgerError(f"{where}: param {index} must be a mapping, got {param!r}")
        block = param.get('block')
        if block is None:
            continue
        if not isinstance(block, dict):
            raise SymbolLedgerError(f"{where}: block of param {index} must be a mapping, got {block!r}")
        check_declaration(block, f"{where} param {index} block")


@dataclass
class SymbolSource:
    """One symbol as delivered by the parser: declaration plus optional body."""
    name: str
    owner: str
    kind: str
    unit: str
    declaration: dict[str, Any]
    body: tuple[Stmt, ...] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], unit: str = '') -> SymbolSource:
        if not isinstance(data, dict) or not data.get('name'):
            raise SymbolLedgerError(f"Symbol entry without a name in {unit or '<unknown unit>'}: {data!r}")
        check_declaration(data, f"{data.get('owner', '')}.{data['name']} in {unit or '<unknown unit>'}")
        try:
            body = parse_body(data['body']) if data.get('body') is not None else None
        except KeyError as e:
            raise SymbolLedgerError(
                f"Malformed body of {data.get('owner', '')}.{data['name']} in {unit}: missing {e}"
            ) from e
        return cls(
            name=data['name'],
            owner=data.get('owner', ''),
            kind=data.get('kind', 'method'),
            unit=data.get('unit', unit),
            declaration=data,
            body=body,
        )
