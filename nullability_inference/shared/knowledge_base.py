"""
Knowledge base of authoritative nullability facts.

Two corpora feed the same oracle with identical precedence:
  - SDK facts:        {symbol, slot, state}
  - Sibling types:    {symbol, slot, sibling_type}   (statically-typed declaration, e.g. Swift)

Corpus files are YAML documents with ``docKind: knowledge``:

    docKind: knowledge
    source: sdk
    facts:
      - {symbol: "NSDictionary.objectForKey:", slot: return, state: nullable}
      - {symbol: "Parser.parse:", slot: "param[0]", sibling_type: "Data"}

Also holds the default-convention table consulted when neither heuristics nor
facts say anything about a slot.
"""

from __future__ import annotations

import re
import sys
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Protocol

import yaml

from nullability_inference.shared.models import (
    KnowledgeFact,
    NullabilityState,
    Slot,
    SlotRole,
    Symbol,
)


class KnowledgeBaseUnavailable(RuntimeError):
    """The external oracle could not answer (unreachable, corrupt, overloaded)."""


class KnowledgeOracle(Protocol):
    def lookup(self, symbol: str, slot_path: str) -> KnowledgeFact | None:
        ...


# =============================================================================
# Corpus
# =============================================================================

def sibling_type_state(type_text: str) -> NullabilityState:
    """
    Map a sibling statically-typed declaration to a nullability state.

    Examples:
        'String?'  -> NULLABLE
        'Data!'    -> UNSPECIFIED   (implicitly unwrapped)
        'URL'      -> NONNULL
        'Optional<Int>' -> NULLABLE
    """
    text = type_text.strip()
    if text.endswith('?') or text.startswith('Optional<'):
        return NullabilityState.NULLABLE
    if text.endswith('!'):
        return NullabilityState.UNSPECIFIED
    return NullabilityState.NONNULL


def _fact_from_entry(entry: dict[str, Any], source: str, origin: str) -> KnowledgeFact | None:
    symbol = entry.get('symbol')
    slot = entry.get('slot', 'return')
    if not symbol:
        return None

    if 'sibling_type' in entry:
        state = sibling_type_state(str(entry['sibling_type']))
        source = 'sibling'
    else:
        try:
            state = NullabilityState(entry.get('state', ''))
        except ValueError:
            return None
        if state is NullabilityState.UNKNOWN:
            return None

    return KnowledgeFact(symbol=symbol, path=slot, state=state,
                         source=entry.get('source', source), origin=origin)


class KnowledgeCorpus:
    """
    Immutable (symbol, slot path) -> fact index.

    Facts that disagree for the same key are merged into one CONFLICTING fact
    at build time; lookups never raise.
    """

    def __init__(self, facts: Iterable[KnowledgeFact] = ()):
        merged: dict[tuple[str, str], KnowledgeFact] = {}
        for fact in facts:
            key = (fact.symbol, fact.path)
            existing = merged.get(key)
            if existing is None or existing.state is fact.state:
                merged.setdefault(key, fact)
                continue
            merged[key] = KnowledgeFact(
                symbol=fact.symbol,
                path=fact.path,
                state=NullabilityState.CONFLICTING,
                source=f"{existing.source}+{fact.source}",
                origin=f"{existing.origin} ({existing.state.value}) vs {fact.origin} ({fact.state.value})",
            )
        self._facts = MappingProxyType(merged)

    def __len__(self) -> int:
        return len(self._facts)

    def lookup(self, symbol: str, slot_path: str) -> KnowledgeFact | None:
        return self._facts.get((symbol, slot_path))

    def conflicts(self) -> list[KnowledgeFact]:
        return sorted(
            (f for f in self._facts.values() if f.state is NullabilityState.CONFLICTING),
            key=lambda f: (f.symbol, f.path),
        )

    @classmethod
    def from_documents(cls, documents: Iterable[tuple[dict[str, Any], str]]) -> KnowledgeCorpus:
        """Build from (document, origin) pairs."""
        facts: list[KnowledgeFact] = []
        for doc, origin in documents:
            if not doc or doc.get('docKind') != 'knowledge':
                continue
            source = doc.get('source', 'sdk')
            for entry in doc.get('facts') or []:
                fact = _fact_from_entry(entry, source, origin)
                if fact:
                    facts.append(fact)
        return cls(facts)

    @classmethod
    def from_paths(cls, paths: Iterable[Path], verbose: bool = False) -> KnowledgeCorpus:
        documents: list[tuple[dict[str, Any], str]] = []
        for path in paths:
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    for doc in yaml.safe_load_all(f):
                        documents.append((doc, path.name))
            except (OSError, yaml.YAMLError) as e:
                print(f"  WARNING: Could not load knowledge file {path}: {e}", file=sys.stderr)
                continue
        corpus = cls.from_documents(documents)
        if verbose:
            print(f"  Indexed {len(corpus)} knowledge fact(s) from {len(documents)} document(s)")
        return corpus


def discover_knowledge_files(root: Path) -> list[Path]:
    return sorted(root.glob('**/*.knowledge.yaml'))


class MemoizedKnowledgeBase:
    """
    Run-lifetime memo over any oracle.

    Every (symbol, slot path) is asked at most once, so the same fact is seen by
    all four phases. The oracle is called outside the lock; concurrent askers of
    the same key wait on its pending answer. A failing oracle counts as a miss
    for that key only.
    """

    def __init__(self, oracle: KnowledgeOracle):
        self._oracle = oracle
        self._cache: dict[tuple[str, str], Future] = {}
        self._lock = threading.Lock()
        self.warnings: list[str] = []
        self.oracle_calls = 0

    def lookup(self, symbol: str, slot_path: str) -> KnowledgeFact | None:
        key = (symbol, slot_path)
        with self._lock:
            pending = self._cache.get(key)
            owner = pending is None
            if owner:
                pending = self._cache[key] = Future()
                self.oracle_calls += 1

        if not owner:
            return pending.result()

        try:
            fact = self._oracle.lookup(symbol, slot_path)
        except (KnowledgeBaseUnavailable, TimeoutError) as e:
            with self._lock:
                self.warnings.append(f"Knowledge base lookup failed for {symbol}#{slot_path}: {e}")
            fact = None
        except Exception as e:
            pending.set_exception(e)
            raise
        pending.set_result(fact)
        return fact


# =============================================================================
# Default conventions
# =============================================================================

@dataclass(frozen=True)
class Convention:
    """
    One row of the default-convention table. Empty patterns match anything.
    Lower priority values are consulted first.
    """
    name: str
    priority: int
    state: NullabilityState
    role: SlotRole | None = None
    name_pattern: str = ''
    type_pattern: str = ''
    selector_pattern: str = ''

    def matches(self, symbol: Symbol, slot: Slot) -> bool:
        if self.role is not None and slot.role is not self.role:
            return False
        if self.name_pattern and not re.search(self.name_pattern, slot.name):
            return False
        if self.type_pattern and not re.search(self.type_pattern, slot.type_text):
            return False
        if self.selector_pattern and not re.search(self.selector_pattern, symbol.name):
            return False
        return True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Convention:
        role = data.get('role')
        return cls(
            name=data.get('name', 'unnamed'),
            priority=int(data.get('priority', 100)),
            state=NullabilityState(data['state']),
            role=SlotRole(role) if role else None,
            name_pattern=data.get('name_pattern', ''),
            type_pattern=data.get('type_pattern', ''),
            selector_pattern=data.get('selector_pattern', ''),
        )


BUILTIN_CONVENTIONS: tuple[Convention, ...] = (
    Convention('stop-flag', 10, NullabilityState.NONNULL,
               name_pattern=r'^stop$', type_pattern=r'^BOOL\s*\*$'),
    Convention('error-out-parameter', 20, NullabilityState.NULLABLE,
               type_pattern=r'NSError\s*\*\s*\*'),
    Convention('completion-error', 30, NullabilityState.NULLABLE, role=SlotRole.BLOCK_PARAMETER,
               name_pattern=r'(?i)error$', type_pattern=r'^NSError\s*\*$'),
    Convention('copy-zone', 40, NullabilityState.NULLABLE, role=SlotRole.PARAMETER,
               name_pattern=r'^zone$', type_pattern=r'NSZone'),
    Convention('description', 50, NullabilityState.NONNULL, role=SlotRole.RETURN,
               selector_pattern=r'^(debugD|d)escription$'),
)


class ConventionTable:
    """Prioritized default-fact table; new rows are additive."""

    def __init__(self, conventions: Iterable[Convention] = BUILTIN_CONVENTIONS):
        self._rows = sorted(conventions, key=lambda c: (c.priority, c.name))

    def __len__(self) -> int:
        return len(self._rows)

    def match(self, symbol: Symbol, slot: Slot) -> Convention | None:
        for row in self._rows:
            if row.matches(symbol, slot):
                return row
        return None

    @classmethod
    def with_extra_rows(cls, rows: Iterable[dict[str, Any]]) -> ConventionTable:
        return cls([*BUILTIN_CONVENTIONS, *(Convention.from_dict(r) for r in rows)])
