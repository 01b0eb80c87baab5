import pytest

from nullability_inference.shared.models import KnowledgeFact, NullabilityState, SlotRef
from nullability_inference.stages.stage4_annotate import (
    REVIEW_MARKER,
    annotate_registry,
    annotate_symbol,
    annotate_type,
    annotation_token,
)


@pytest.mark.parametrize(
    ("type_text", "token", "qualifier", "expected"),
    [
        ("NSString *", "nullable", False, "nullable NSString *"),
        ("NSString *", "unspecified", False, "null_unspecified NSString *"),
        ("NSError *", "nullable", True, "NSError * _Nullable"),
        ("NSError **", "nullable", True, "NSError ** _Nullable"),
        ("id", "nonnull", True, "id _Nonnull"),
        ("void (^)(void)", "nonnull", True, "void (^ _Nonnull)(void)"),
        ("CompletionHandler", "nullable", False, "nullable CompletionHandler"),
        ("NSError *error", "nullable", True, "NSError * _Nullable error"),
        ("id value", "nullable", True, "id _Nullable value"),
        ("void (^done)(void)", "nullable", True, "void (^ _Nullable done)(void)"),
    ],
)
def test_annotate_type_forms(type_text, token, qualifier, expected) -> None:
    assert annotate_type(type_text, token, qualifier) == expected


def test_conflicting_state_renders_as_unspecified() -> None:
    assert annotation_token(NullabilityState.CONFLICTING) == "unspecified"
    assert annotation_token(NullabilityState.UNKNOWN) == "unspecified"


def _declaration(result, name: str) -> str:
    return annotate_symbol(result.registry.get(name))["declaration"]


def test_method_declaration_uses_keyword_form(run_inference) -> None:
    symbol = {
        "name": "processInput:", "owner": "Processor", "returns": {"type": "NSString *"},
        "params": [{"name": "input", "type": "NSString *"}],
        "body": [
            {"kind": "guard", "line": 3, "subject": {"kind": "param", "name": "input"}, "test": "nil",
             "then": [{"kind": "return", "line": 3, "value": {"kind": "nil"}}]},
            {"kind": "return", "line": 4, "value": {"kind": "literal", "value": "ok"}},
        ],
    }

    result = run_inference([symbol])

    assert _declaration(result, "Processor.processInput:") == \
        "- (nullable NSString *)processInput:(nullable NSString *)input"


def test_block_parameters_use_qualifier_form(run_inference) -> None:
    symbol = {
        "name": "fetch:timeout:", "owner": "Fetcher", "kind": "class_method", "returns": {"type": "void"},
        "params": [
            {
                "name": "completion", "type": "void (^)(NSData *, NSError *)",
                "block": {"returns": {"type": "void"}, "params": [
                    {"name": "data", "type": "NSData *"},
                    {"name": "failure", "type": "NSError *"},
                ]},
            },
            {"name": "seconds", "type": "NSTimeInterval"},
        ],
        "body": [{"kind": "invoke", "line": 2, "block": "completion", "args": [{"kind": "nil"}, {"kind": "nil"}]}],
    }

    result = run_inference([symbol])

    assert _declaration(result, "Fetcher.fetch:timeout:") == (
        "+ (void)fetch:(nonnull void (^)(NSData * _Nullable, NSError * _Nullable))completion "
        "timeout:(NSTimeInterval)seconds"
    )


def test_property_declaration_adds_attribute(run_inference) -> None:
    prop = {"name": "title", "owner": "Doc", "kind": "property", "type": "NSString *",
            "attributes": ["nonatomic", "copy"]}
    clear = {"name": "clear", "owner": "Doc", "returns": {"type": "void"},
             "body": [{"kind": "call", "line": 3, "target": "Doc.title", "args": [{"kind": "nil"}]}]}

    result = run_inference([prop, clear])

    assert _declaration(result, "Doc.title") == "@property (nonatomic, copy, nullable) NSString *title;"
    assert _declaration(result, "Doc.clear") == "- (void)clear"


def test_block_typedef_declaration(run_inference) -> None:
    block_type = {"name": "ResultHandler", "kind": "block_type", "returns": {"type": "id"},
                  "params": [{"name": "value", "type": "NSString *"}]}

    result = run_inference([block_type], facts=[
        KnowledgeFact("ResultHandler", "param[0]", NullabilityState.NULLABLE),
        KnowledgeFact("ResultHandler", "return", NullabilityState.NONNULL),
    ])

    assert _declaration(result, "ResultHandler") == \
        "typedef id _Nonnull (^ResultHandler)(NSString * _Nullable value);"


def test_record_carries_trail_and_confidence(run_inference) -> None:
    symbol = {"name": "name", "owner": "User", "returns": {"type": "NSString *"},
              "body": [{"kind": "return", "line": 2, "value": {"kind": "nil"}}]}

    record = annotate_symbol(run_inference([symbol]).registry.get("User.name"))

    slot = record["slots"][0]
    assert (slot["path"], slot["token"], slot["confidence"]) == ("return", "nullable", "medium")
    assert slot["annotated_type"] == "nullable NSString *"
    assert slot["evidence"][0]["source_kind"] == "return_path"


def test_unfrozen_slots_are_refused(registry_for) -> None:
    registry = registry_for([{"name": "name", "owner": "User", "returns": {"type": "NSString *"}}])

    with pytest.raises(ValueError, match="not frozen"):
        annotate_symbol(registry.get("User.name"))


def test_review_list_collects_conflicts_and_warnings(run_inference) -> None:
    symbols = [
        {"name": "a", "owner": "Loop", "returns": {"type": "id"},
         "body": [{"kind": "return", "line": 1, "value": {"kind": "nil"}}]},
        {"name": "b", "owner": "Loop", "returns": {"type": "id"},
         "body": [{"kind": "return", "line": 1, "value": {"kind": "call", "target": "Loop.a"}}]},
        {"name": "c", "owner": "Loop", "returns": {"type": "id"},
         "body": [{"kind": "return", "line": 1, "value": {"kind": "call", "target": "Loop.b"}}]},
        {"name": "d", "owner": "Loop", "returns": {"type": "NSString *"}},
    ]
    facts = [
        KnowledgeFact("Loop.d", "return", NullabilityState.NONNULL, origin="a.knowledge.yaml"),
        KnowledgeFact("Loop.d", "return", NullabilityState.NULLABLE, origin="b.knowledge.yaml"),
    ]

    result = run_inference(symbols, facts=facts, max_rounds=2)
    output = annotate_registry(result.registry)

    review = {item["slot"]: item["reason"] for item in output["review"]}
    assert set(review) == {str(SlotRef("Loop.c", "return")), str(SlotRef("Loop.d", "return"))}
    assert "conflicting" in review["Loop.d#return"]
    assert output["summary"]["needs_review"] == 2

    d_record = next(r for r in output["symbols"] if r["symbol"] == "Loop.d")
    assert d_record["slots"][0]["token"] == "unspecified"
    assert d_record["slots"][0]["marker"] == REVIEW_MARKER
    assert REVIEW_MARKER in d_record["declaration"]


def test_typedef_named_block_parameter_keeps_its_typedef_name(run_inference) -> None:
    symbol = {
        "name": "load:", "owner": "Loader", "returns": {"type": "void"},
        "params": [{"name": "handler", "type": "CompletionHandler", "typedef": "CompletionHandler",
                    "block": {"returns": {"type": "void"}, "params": [{"name": "error", "type": "NSError *"}]}}],
        "body": [{"kind": "invoke", "line": 2, "block": "handler", "args": [{"kind": "nil"}]}],
    }

    assert _declaration(run_inference([symbol]), "Loader.load:") == \
        "- (void)load:(nonnull CompletionHandler)handler"


def test_block_text_keeps_declared_names_and_spacing(run_inference) -> None:
    symbol = {
        "name": "each:", "owner": "List", "returns": {"type": "void"},
        "params": [{
            "name": "visit", "type": "id (^)(NSString *key, id value)",
            "block": {"returns": {"type": "id"}, "params": [
                {"name": "key", "type": "NSString *"},
                {"name": "value", "type": "id"},
            ]},
        }],
    }

    result = run_inference([symbol], facts=[
        KnowledgeFact("List.each:", "param[0]", NullabilityState.NONNULL),
        KnowledgeFact("List.each:", "param[0].param[0]", NullabilityState.NONNULL),
        KnowledgeFact("List.each:", "param[0].param[1]", NullabilityState.NULLABLE),
        KnowledgeFact("List.each:", "param[0].return", NullabilityState.NULLABLE),
    ])

    assert _declaration(result, "List.each:") == \
        "- (void)each:(nonnull id _Nullable (^)(NSString * _Nonnull key, id _Nullable value))visit"


def test_block_typedef_slots_use_qualifier_form_in_records(run_inference) -> None:
    block_type = {"name": "ResultHandler", "kind": "block_type", "returns": {"type": "id"},
                  "params": [{"name": "value", "type": "NSString *"}]}

    result = run_inference([block_type], facts=[
        KnowledgeFact("ResultHandler", "return", NullabilityState.NONNULL),
    ])
    record = annotate_symbol(result.registry.get("ResultHandler"))

    annotated = {slot["path"]: slot["annotated_type"] for slot in record["slots"]}
    assert annotated["return"] == "id _Nonnull"
    assert annotated["param[0]"].startswith("NSString * _")
