import sys
from pathlib import Path

import pytest


def _add_root_to_path() -> None:
    root = Path(__file__).resolve().parents[1]
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))


_add_root_to_path()

from nullability_inference.shared.body_nodes import SymbolSource  # noqa: E402
from nullability_inference.shared.call_graph import build_call_graph  # noqa: E402
from nullability_inference.shared.knowledge_base import KnowledgeCorpus  # noqa: E402
from nullability_inference.stages.stage1_extract_facts import extract_all  # noqa: E402
from nullability_inference.stages.stage3_infer_nullability import infer  # noqa: E402


def make_sources(symbols: list[dict], unit: str = "Test.m") -> list[SymbolSource]:
    return [SymbolSource.from_dict(symbol, unit=unit) for symbol in symbols]


@pytest.fixture
def registry_for():
    def build(symbols: list[dict], workers: int = 1):
        return extract_all(make_sources(symbols), workers=workers)

    return build


@pytest.fixture
def run_inference(registry_for):
    def run(symbols: list[dict], facts=(), max_rounds: int = 32, workers: int = 2, conventions=None):
        registry = registry_for(symbols)
        graph = build_call_graph(registry)
        return infer(
            registry,
            graph,
            knowledge=KnowledgeCorpus(facts),
            conventions=conventions,
            max_rounds=max_rounds,
            workers=workers,
        )

    return run
