from pathlib import Path

from nullability_inference.shared.body_nodes import SymbolSource
from nullability_inference.shared.models import (
    HintKind,
    NullabilityState,
    SlotRef,
    SourceKind,
)
from nullability_inference.stages.stage1_extract_facts import (
    FactExtractor,
    discover_symbol_ledgers,
    extract_all,
    load_symbol_sources,
)

NULLABLE = NullabilityState.NULLABLE
NONNULL = NullabilityState.NONNULL
UNKNOWN = NullabilityState.UNKNOWN
UNSPECIFIED = NullabilityState.UNSPECIFIED


def _param(name: str) -> dict:
    return {"kind": "param", "name": name}


def _method(name: str, params: list[dict], body: list[dict], returns: str = "NSString *",
            owner: str = "Processor") -> dict:
    return {
        "name": name,
        "owner": owner,
        "kind": "method",
        "returns": {"type": returns},
        "params": params,
        "body": body,
    }


def _extract(symbol: dict):
    return FactExtractor().extract(SymbolSource.from_dict(symbol, unit="Test.m"))


def _kinds(slot) -> list[tuple[SourceKind, NullabilityState]]:
    return [(e.source_kind, e.implies) for e in slot.evidence]


def test_guarded_parameter_and_nil_return_path() -> None:
    facts = _extract(
        _method(
            "processInput:",
            [{"name": "input", "type": "NSString *"}],
            [
                {"kind": "guard", "line": 3, "subject": _param("input"), "test": "nil",
                 "then": [{"kind": "return", "line": 3, "value": {"kind": "nil"}}]},
                {"kind": "return", "line": 4,
                 "value": {"kind": "call", "target": "Processor.process:", "args": [_param("input")]}},
            ],
        )
    )

    signature = facts.signature
    assert _kinds(signature.find("param[0]")) == [(SourceKind.NIL_CHECK, NULLABLE)]

    returns = signature.find("return").evidence
    assert (returns[0].source_kind, returns[0].implies, returns[0].location) == (
        SourceKind.RETURN_PATH, NULLABLE, "Test.m:3")
    assert returns[1].is_deferred
    assert returns[1].ref == SlotRef("Processor.process:", "return")

    # The guard's early return makes input non-nil at the call
    call_site = facts.call_sites[0]
    assert call_site.callee == "Processor.process:"
    assert call_site.hint_for(0).kind is HintKind.NONNIL


def test_assertion_implies_nonnull_and_guards_later_uses() -> None:
    facts = _extract(
        _method(
            "store:",
            [{"name": "item", "type": "id"}],
            [
                {"kind": "guard", "line": 2, "subject": _param("item"), "test": "assert"},
                {"kind": "call", "line": 3, "target": "Cache.put:", "receiver": _param("item"), "args": []},
            ],
            returns="void",
        )
    )

    assert _kinds(facts.signature.find("param[0]")) == [(SourceKind.NIL_CHECK, NONNULL)]


def test_unguarded_receiver_suggests_nonnull() -> None:
    facts = _extract(
        _method(
            "lengthOf:",
            [{"name": "text", "type": "NSString *"}],
            [{"kind": "call", "line": 5, "target": "NSString.length", "receiver": _param("text"), "args": []}],
            returns="void",
        )
    )

    evidence = facts.signature.find("param[0]").evidence
    assert _kinds(facts.signature.find("param[0]")) == [(SourceKind.NIL_CHECK, NONNULL)]
    assert "without nil check" in evidence[0].detail


def test_coalesce_substitution_suggests_nullable() -> None:
    facts = _extract(
        _method(
            "titleFor:",
            [{"name": "name", "type": "NSString *"}],
            [{"kind": "return", "line": 2,
              "value": {"kind": "coalesce", "value": _param("name"), "fallback": {"kind": "literal", "value": "?"}}}],
        )
    )

    assert _kinds(facts.signature.find("param[0]")) == [(SourceKind.NIL_CHECK, NULLABLE)]
    assert _kinds(facts.signature.find("return")) == [(SourceKind.RETURN_PATH, NONNULL)]


def test_forwarded_parameter_references_callee_slot() -> None:
    facts = _extract(
        _method(
            "forward:",
            [{"name": "value", "type": "id"}],
            [{"kind": "call", "line": 8, "target": "Sink.accept:with:",
              "args": [{"kind": "new", "type": "NSObject"}, _param("value")]}],
            returns="void",
        )
    )

    evidence = facts.signature.find("param[0]").evidence
    assert len(evidence) == 1
    assert evidence[0].source_kind is SourceKind.FORWARDED_CALL
    assert evidence[0].ref == SlotRef("Sink.accept:with:", "param[1]")

    hints = facts.call_sites[0].args
    assert hints[0].kind is HintKind.NONNIL
    assert hints[1].kind is HintKind.PARAM
    assert hints[1].ref == SlotRef("Processor.forward:", "param[0]")


def test_local_variable_resolves_through_assignments() -> None:
    facts = _extract(
        _method(
            "build",
            [],
            [
                {"kind": "assign", "line": 2, "target": "result", "value": {"kind": "nil"}},
                {"kind": "assign", "line": 3, "target": "result",
                 "value": {"kind": "call", "target": "Factory.make"}},
                {"kind": "return", "line": 4, "value": {"kind": "var", "name": "result"}},
            ],
        )
    )

    evidence = facts.signature.find("return").evidence
    assert evidence[0].implies is NULLABLE
    assert evidence[1].ref == SlotRef("Factory.make", "return")


def test_conditional_return_classifies_each_branch() -> None:
    facts = _extract(
        _method(
            "pick:",
            [{"name": "fallback", "type": "NSString *"}],
            [{"kind": "return", "line": 2, "value": {"kind": "conditional", "branches": [
                {"kind": "literal", "value": "x"}, _param("fallback")]}}],
        )
    )

    evidence = facts.signature.find("return").evidence
    assert evidence[0].implies is NONNULL
    assert evidence[1].ref == SlotRef("Processor.pick:", "param[0]")


def test_opaque_construct_yields_zero_confidence_evidence() -> None:
    facts = _extract(
        _method(
            "dispatch:",
            [{"name": "target", "type": "id"}],
            [
                {"kind": "opaque", "line": 4, "detail": "performSelector:", "args": [_param("target")]},
                {"kind": "return", "line": 5, "value": {"kind": "opaque", "detail": "macro"}},
            ],
        )
    )

    for path in ("param[0]", "return"):
        evidence = facts.signature.find(path).evidence
        assert [(e.source_kind, e.implies, e.confidence) for e in evidence] == [
            (SourceKind.UNANALYZABLE, UNSPECIFIED, 0.0)
        ]


def _fetch(body: list[dict]) -> dict:
    return _method(
        "fetch:",
        [{
            "name": "completion",
            "type": "void (^)(NSData *, NSError *)",
            "block": {"returns": {"type": "void"}, "params": [
                {"name": "result", "type": "NSData *"},
                {"name": "failure", "type": "NSError *"},
            ]},
        }],
        body,
        returns="void",
        owner="Fetcher",
    )


def test_unguarded_block_invocation_and_arguments() -> None:
    facts = _extract(
        _fetch([
            {"kind": "invoke", "line": 4, "block": "completion", "args": [{"kind": "new", "type": "NSData"}, {"kind": "nil"}]},
            {"kind": "invoke", "line": 6, "block": "completion", "args": [{"kind": "nil"}, {"kind": "var", "name": "err"}]},
        ])
    )

    signature = facts.signature
    assert _kinds(signature.find("param[0]")) == [(SourceKind.NIL_CHECK, NONNULL)] * 2
    assert _kinds(signature.find("param[0].param[0]")) == [
        (SourceKind.CALL_SITE_LITERAL, NONNULL),
        (SourceKind.CALL_SITE_LITERAL, NULLABLE),
    ]
    assert _kinds(signature.find("param[0].param[1]")) == [
        (SourceKind.CALL_SITE_LITERAL, NULLABLE),
        (SourceKind.UNANALYZABLE, UNSPECIFIED),
    ]


def test_guarded_block_invocation_suggests_nullable_block() -> None:
    facts = _extract(
        _fetch([
            {"kind": "guard", "line": 2, "subject": _param("completion"), "test": "nonnil",
             "then": [{"kind": "invoke", "line": 3, "block": "completion", "args": []}]},
        ])
    )

    kinds = _kinds(facts.signature.find("param[0]"))
    assert kinds == [(SourceKind.NIL_CHECK, NULLABLE), (SourceKind.NIL_CHECK, NULLABLE)]


def test_extract_all_merges_duplicate_symbols(registry_for) -> None:
    declaration = {"name": "run:", "owner": "Job", "returns": {"type": "id"},
                   "params": [{"name": "arg", "type": "id"}]}
    implementation = dict(declaration, body=[
        {"kind": "call", "line": 3, "target": "Job.helper", "receiver": _param("arg")},
        {"kind": "return", "line": 4, "value": {"kind": "nil"}},
    ])

    registry = registry_for([declaration, implementation, implementation], workers=3)

    assert len(registry) == 1
    entry = registry.get("Job.run:")
    assert entry.has_body
    assert len(entry.signature.find("return").evidence) == 1
    assert len(entry.call_sites) == 1


def test_extract_all_is_independent_of_worker_count(registry_for) -> None:
    symbols = [
        _method(f"step{i}", [{"name": "x", "type": "id"}],
                [{"kind": "call", "line": i, "target": f"Processor.step{i + 1}", "args": [_param("x")]}])
        for i in range(6)
    ]

    assert registry_for(symbols, workers=1).to_dict() == registry_for(symbols, workers=4).to_dict()


def test_load_symbol_sources_skips_malformed_ledgers(tmp_path: Path, capsys) -> None:
    good = tmp_path / "a" / "Good.symbols.yaml"
    bad = tmp_path / "Bad.symbols.yaml"
    good.parent.mkdir()
    good.write_text(
        "docKind: symbols\n"
        "unit: Good.m\n"
        "symbols:\n"
        "  - {name: run, owner: Good, returns: {type: id}}\n",
        encoding="utf-8",
    )
    bad.write_text("docKind: symbols\nunit: Bad.m\nsymbols:\n  - {owner: Bad}\n", encoding="utf-8")

    paths = discover_symbol_ledgers(tmp_path)
    sources = load_symbol_sources(paths)

    assert [p.name for p in paths] == ["Bad.symbols.yaml", "Good.symbols.yaml"]
    assert [(s.owner, s.name, s.unit) for s in sources] == [("Good", "run", "Good.m")]
    assert "Skipping" in capsys.readouterr().err


def test_extract_all_registers_declaration_only_symbols() -> None:
    sources = [SymbolSource.from_dict({"name": "title", "owner": "Doc", "kind": "property", "type": "NSString *"})]

    registry = extract_all(sources, workers=1)

    entry = registry.get("Doc.title")
    assert not entry.has_body
    assert entry.signature.find("return").evidence == []


def test_load_symbol_sources_skips_unparseable_yaml(tmp_path: Path, capsys) -> None:
    (tmp_path / "Broken.symbols.yaml").write_text(
        "docKind: symbols\nsymbols:\n  - {name: run, owner: Broken\n", encoding="utf-8"
    )
    (tmp_path / "Ok.symbols.yaml").write_text(
        "docKind: symbols\nunit: Ok.m\nsymbols:\n  - {name: ok, owner: Ok, returns: {type: id}}\n",
        encoding="utf-8",
    )

    sources = load_symbol_sources(discover_symbol_ledgers(tmp_path))

    assert [s.name for s in sources] == ["ok"]
    assert "Could not load" in capsys.readouterr().err


def test_malformed_declaration_skips_only_that_symbol(tmp_path: Path, capsys) -> None:
    (tmp_path / "Mixed.symbols.yaml").write_text(
        "docKind: symbols\n"
        "unit: Mixed.m\n"
        "symbols:\n"
        "  - {name: \"bad:\", owner: Mixed, params: [\"NSString *\"]}\n"
        "  - {name: good, owner: Mixed, returns: {type: id},\n"
        "     body: [{kind: return, line: 1, value: {kind: nil}}]}\n",
        encoding="utf-8",
    )

    sources = load_symbol_sources(discover_symbol_ledgers(tmp_path))
    registry = extract_all(sources, workers=2)

    assert [s.name for s in sources] == ["good"]
    assert registry.slot(SlotRef("Mixed.good", "return")).evidence[0].implies is NULLABLE
    assert "Skipping symbol" in capsys.readouterr().err
