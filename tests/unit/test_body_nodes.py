import pytest

from nullability_inference.shared.body_nodes import (
    CallExpr,
    CoalesceExpr,
    ExprStmt,
    GuardStmt,
    InvokeExpr,
    NilExpr,
    OpaqueExpr,
    OpaqueStmt,
    ParamRef,
    ReturnStmt,
    SymbolLedgerError,
    SymbolSource,
    parse_body,
    parse_expr,
)


def test_parse_call_with_receiver_and_args() -> None:
    expr = parse_expr(
        {
            "kind": "call",
            "line": 7,
            "target": "Store.save:",
            "receiver": {"kind": "var", "name": "store"},
            "args": [{"kind": "param", "name": "item"}, {"kind": "nil"}],
        }
    )

    assert isinstance(expr, CallExpr)
    assert expr.target == "Store.save:"
    assert expr.args == (ParamRef("item"), NilExpr())
    assert expr.line == 7


def test_unknown_expression_kind_becomes_opaque() -> None:
    expr = parse_expr({"kind": "objc_msgSend", "args": [{"kind": "param", "name": "x"}]})

    assert isinstance(expr, OpaqueExpr)
    assert "objc_msgSend" in expr.detail
    assert expr.args == (ParamRef("x"),)


def test_coalesce_parses_value_and_fallback() -> None:
    expr = parse_expr({"kind": "coalesce", "value": {"kind": "param", "name": "a"}, "fallback": {"kind": "literal"}})

    assert isinstance(expr, CoalesceExpr)
    assert expr.value == ParamRef("a")


def test_guard_parses_both_branches() -> None:
    body = parse_body(
        [
            {
                "kind": "guard",
                "line": 2,
                "subject": {"kind": "param", "name": "input"},
                "test": "nil",
                "then": [{"kind": "return", "value": {"kind": "nil"}}],
                "else": [{"kind": "invoke", "block": "done", "args": []}],
            }
        ]
    )

    guard = body[0]
    assert isinstance(guard, GuardStmt)
    assert guard.test == "nil"
    assert guard.then == (ReturnStmt(value=NilExpr()),)
    assert isinstance(guard.orelse[0], ExprStmt)
    assert isinstance(guard.orelse[0].value, InvokeExpr)


def test_bare_return_has_no_value() -> None:
    assert parse_body([{"kind": "return"}]) == (ReturnStmt(value=None),)


def test_unknown_guard_test_and_statement_become_opaque() -> None:
    body = parse_body(
        [
            {"kind": "guard", "subject": {"kind": "param", "name": "x"}, "test": "kindOfClass"},
            {"kind": "switch", "line": 9},
        ]
    )

    assert all(isinstance(stmt, OpaqueStmt) for stmt in body)
    assert body[1].line == 9


def test_symbol_source_without_body_is_declaration_only() -> None:
    source = SymbolSource.from_dict({"name": "run", "owner": "Job", "returns": {"type": "void"}}, unit="Job.h")

    assert source.body is None
    assert source.kind == "method"
    assert source.unit == "Job.h"


def test_symbol_source_without_name_is_rejected() -> None:
    with pytest.raises(SymbolLedgerError, match="without a name"):
        SymbolSource.from_dict({"owner": "Job"}, unit="Job.m")


def test_malformed_body_node_is_rejected() -> None:
    with pytest.raises(SymbolLedgerError, match="Job.run"):
        SymbolSource.from_dict(
            {"name": "run", "owner": "Job", "body": [{"kind": "return", "value": {"kind": "param"}}]},
            unit="Job.m",
        )


@pytest.mark.parametrize(
    "declaration",
    [
        {"params": ["NSString *"]},
        {"params": {"name": "value"}},
        {"returns": ["id"]},
        {"params": [{"name": "done", "type": "void (^)(void)", "block": "void"}]},
        {"params": [{"name": "done", "type": "void (^)(id)", "block": {"params": [42]}}]},
    ],
)
def test_malformed_declaration_shape_is_rejected(declaration) -> None:
    with pytest.raises(SymbolLedgerError, match="Job.run"):
        SymbolSource.from_dict({"name": "run", "owner": "Job", **declaration}, unit="Job.m")


def test_well_formed_declaration_shapes_are_accepted() -> None:
    source = SymbolSource.from_dict(
        {"name": "run:", "owner": "Job", "returns": "void",
         "params": [{"name": "done", "type": "void (^)(id)",
                     "block": {"returns": {"type": "void"}, "params": [{"name": "value", "type": "id"}]}}]},
        unit="Job.m",
    )

    assert source.name == "run:"
