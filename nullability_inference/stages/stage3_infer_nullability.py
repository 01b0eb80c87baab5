#!/usr/bin/env python3
"""
Stage 3: Infer Nullability

Resolves every slot in the signature registry to a frozen nullability state
with its evidence trail, confidence, and flags.

Each round runs four ordered phases over the whole call graph:
  1. Parameters         - local evidence, forwarded callee parameters, call-site hints
  2. Block parameters   - invocation arguments, typedef-shared block signatures
  3. Block pointers     - guarded/unguarded invocations, call-site hints
  4. Returns            - return paths, forwarded references read from other slots

A phase reads slots of lower phases from the current round and every other
slot from the previous round's snapshot. States only ever join upward:

    UNKNOWN < UNSPECIFIED < NONNULL < NULLABLE

Rounds repeat until nothing changes or the round cap is reached. Knowledge
base facts freeze their slot outright. Default conventions are applied last,
only to slots that ended without any firm evidence.

Input:  stage1-facts.yaml, stage2-call-graph.yaml, *.knowledge.yaml
Output: stage3-inferred.yaml

DEFAULT BEHAVIOR (no args):
  - Reads stage outputs from config.get_output_dir()
  - Reads knowledge corpora from config.get_knowledge_root() plus the built-in corpus
  - Outputs to config.get_stage_output(3)
"""

from __future__ import annotations

import argparse
import sys
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from nullability_inference import config
from nullability_inference.shared.call_graph import CallGraph
from nullability_inference.shared.knowledge_base import (
    ConventionTable,
    KnowledgeCorpus,
    KnowledgeOracle,
    MemoizedKnowledgeBase,
    discover_knowledge_files,
)
from nullability_inference.shared.models import (
    Confidence,
    Evidence,
    HintKind,
    KnowledgeFact,
    NullabilityState,
    Slot,
    SlotFlag,
    SlotRef,
    SlotRole,
    SourceKind,
    Symbol,
    SymbolKind,
    evidence_weights,
    param_path,
    return_path,
    top_level_index,
)
from nullability_inference.shared.registry import SignatureRegistry
from nullability_inference.shared.yaml_utils import yaml_dump, yaml_load

PHASES = (1, 2, 3, 4)


# =============================================================================
# Views and outcomes
# =============================================================================

class PhaseView:
    """
    Read access to slot states while one phase is being evaluated.

    Slots of a lower phase are read from the current round (they were resolved
    earlier in it); all other slots are read from the previous round's
    snapshot. Slots outside the registry are answered by the knowledge base.
    """

    def __init__(self, engine: InferenceEngine, phase: int,
                 previous: dict[SlotRef, NullabilityState],
                 current: dict[SlotRef, NullabilityState]):
        self.engine = engine
        self.phase = phase
        self.previous = previous
        self.current = current

    def state(self, ref: SlotRef) -> NullabilityState:
        slot = self.engine.slots.get(ref)
        if slot is None:
            return self.engine.external_state(ref)
        if slot.phase < self.phase:
            return self.current[ref]
        return self.previous[ref]


@dataclass
class SlotOutcome:
    """Candidate resolution of one slot from the evidence visible in a view."""
    state: NullabilityState
    confidence: Confidence
    flags: list[SlotFlag] = field(default_factory=list)
    trail: list[Evidence] = field(default_factory=list)


def combine(votes: list[Evidence]) -> SlotOutcome:
    """
    Join resolved evidence into one candidate.

    Disagreeing heuristic votes join to NULLABLE with low confidence; unanimous
    votes give medium confidence, lowered when NONNULL stands next to opaque
    code; only-unanalyzable evidence gives UNSPECIFIED.
    """
    firm = {v.implies for v in votes if v.implies.is_firm()}
    opaque = any(v.source_kind is SourceKind.UNANALYZABLE for v in votes)

    if firm == {NullabilityState.NULLABLE, NullabilityState.NONNULL}:
        return SlotOutcome(NullabilityState.NULLABLE, Confidence.LOW, [SlotFlag.JOINED], votes)
    if firm:
        state = firm.pop()
        low = state is NullabilityState.NONNULL and opaque
        return SlotOutcome(state, Confidence.LOW if low else Confidence.MEDIUM, [], votes)
    if opaque:
        return SlotOutcome(NullabilityState.UNSPECIFIED, Confidence.LOW, [], votes)
    return SlotOutcome(NullabilityState.UNKNOWN, Confidence.LOW, [], votes)


@dataclass
class InferenceResult:
    """Frozen registry plus run statistics."""
    registry: SignatureRegistry
    rounds: int
    converged: bool
    warnings: list[str] = field(default_factory=list)
    histogram: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        registry = self.registry.to_dict()
        return {
            'stage': 'inferred',
            'run': {
                'rounds': self.rounds,
                'converged': self.converged,
                'warnings': list(self.warnings),
                'histogram': dict(self.histogram),
            },
            'symbols': registry['symbols'],
            'stats': registry['stats'],
        }


# =============================================================================
# Engine
# =============================================================================

class InferenceEngine:
    """Phase-ordered fixed-point resolver over a registry and call graph."""

    def __init__(
            self,
            registry: SignatureRegistry,
            call_graph: CallGraph,
            knowledge: KnowledgeOracle | None = None,
            conventions: ConventionTable | None = None,
            max_rounds: int = 32,
            workers: int = 4,
            weights: dict[SourceKind, float] | None = None,
            verbose: bool = False
    ):
        self.registry = registry
        self.call_graph = call_graph
        if knowledge is None or isinstance(knowledge, MemoizedKnowledgeBase):
            self.knowledge = knowledge
        else:
            self.knowledge = MemoizedKnowledgeBase(knowledge)
        self.conventions = conventions if conventions is not None else ConventionTable()
        self.max_rounds = max(1, max_rounds)
        self.workers = max(1, workers)
        self.weights = weights or evidence_weights()
        self.verbose = verbose

        self.slots: dict[SlotRef, Slot] = {}
        self.symbols: dict[SlotRef, Symbol] = {}
        for ref, slot in registry.iter_slots():
            if slot.frozen:
                raise ValueError(f"Slot {ref} is already frozen; run inference on fresh facts")
            self.slots[ref] = slot
            self.symbols[ref] = registry.get(ref.symbol).symbol

        self.phase_refs: dict[int, list[SlotRef]] = {phase: [] for phase in PHASES}
        for ref in sorted(self.slots):
            self.phase_refs[self.slots[ref].phase].append(ref)

        self.facts: dict[SlotRef, KnowledgeFact] = {}
        if self.knowledge is not None:
            for ref in sorted(self.slots):
                fact = self.knowledge.lookup(ref.symbol, ref.path)
                if fact is not None:
                    self.facts[ref] = fact

        self.typedef_links = self._build_typedef_links()
        self.history: list[dict[SlotRef, NullabilityState]] = []

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    def _build_typedef_links(self) -> dict[SlotRef, list[SlotRef]]:
        """
        Pair block-type symbol slots with the nested slots of every method
        parameter declared with that typedef, in both directions.
        """
        block_types = {}
        for entry in self.registry:
            if entry.symbol.kind is SymbolKind.BLOCK_TYPE:
                block_types[entry.symbol.name] = entry
                block_types[entry.qualified_name] = entry

        links: dict[SlotRef, set[SlotRef]] = {}
        for ref, slot in self.slots.items():
            if slot.role is not SlotRole.BLOCK_ITSELF or not slot.typedef or slot.nested is None:
                continue
            block_entry = block_types.get(slot.typedef)
            if block_entry is None:
                continue
            for block_slot in block_entry.signature.slots:
                index = top_level_index(block_slot.path)
                nested_path = return_path(slot.path) if index is None else param_path(index, slot.path)
                if slot.nested.find(nested_path) is None:
                    continue
                method_ref = SlotRef(ref.symbol, nested_path)
                block_ref = block_entry.ref(block_slot.path)
                links.setdefault(method_ref, set()).add(block_ref)
                links.setdefault(block_ref, set()).add(method_ref)

        return {ref: sorted(linked) for ref, linked in links.items()}

    def external_state(self, ref: SlotRef) -> NullabilityState:
        """State of a slot outside the registry: a knowledge base fact or UNKNOWN."""
        if self.knowledge is None:
            return NullabilityState.UNKNOWN
        fact = self.knowledge.lookup(ref.symbol, ref.path)
        return fact.state if fact is not None else NullabilityState.UNKNOWN

    # -------------------------------------------------------------------------
    # Evidence gathering
    # -------------------------------------------------------------------------

    def _call_site_index(self, ref: SlotRef) -> int | None:
        """Argument position that feeds this slot at call sites, if any."""
        slot = self.slots[ref]
        if '.' in ref.path:
            return None
        if slot.role in (SlotRole.PARAMETER, SlotRole.BLOCK_ITSELF):
            return top_level_index(ref.path)
        if slot.role is SlotRole.RETURN and self.symbols[ref].kind is SymbolKind.PROPERTY:
            # Setter calls pass the new value as argument 0
            return 0
        return None

    def _call_site_votes(self, ref: SlotRef, view: PhaseView) -> list[Evidence]:
        index = self._call_site_index(ref)
        if index is None:
            return []

        votes = []
        for call_site in self.call_graph.call_sites_into(ref.symbol):
            hint = call_site.hint_for(index)
            if hint is None:
                continue
            location = f"{call_site.caller}:{call_site.line}"
            if hint.kind is HintKind.NIL:
                votes.append(Evidence(SourceKind.CALL_SITE_LITERAL, NullabilityState.NULLABLE,
                                      self.weights[SourceKind.CALL_SITE_LITERAL], location,
                                      f"{call_site.caller} passes nil ({call_site.id})"))
            elif hint.kind is HintKind.NONNIL:
                votes.append(Evidence(SourceKind.CALL_SITE_LITERAL, NullabilityState.NONNULL,
                                      self.weights[SourceKind.CALL_SITE_LITERAL], location,
                                      f"{call_site.caller} passes a non-nil value ({call_site.id})"))
            elif hint.kind in (HintKind.PARAM, HintKind.CALL) and hint.ref is not None:
                state = view.state(hint.ref)
                if state.is_firm():
                    votes.append(Evidence(SourceKind.FORWARDED_CALL, state,
                                          self.weights[SourceKind.FORWARDED_CALL], location,
                                          f"{call_site.caller} forwards {hint.ref} ({call_site.id})",
                                          ref=hint.ref))
        return votes

    def _typedef_votes(self, ref: SlotRef, view: PhaseView) -> list[Evidence]:
        votes = []
        for linked in self.typedef_links.get(ref, []):
            state = view.state(linked)
            if state.is_firm():
                votes.append(Evidence(SourceKind.FORWARDED_CALL, state,
                                      self.weights[SourceKind.FORWARDED_CALL], str(linked),
                                      "shares block typedef", ref=linked))
        return votes

    def evaluate(self, ref: SlotRef, view: PhaseView) -> SlotOutcome:
        """Candidate outcome for one slot; reads other slots only through ``view``."""
        slot = self.slots[ref]
        votes: list[Evidence] = []
        for evidence in slot.evidence:
            if evidence.is_deferred:
                state = view.state(evidence.ref)
                votes.append(evidence.resolved(state) if state.is_firm() else evidence)
            else:
                votes.append(evidence)

        votes.extend(self._call_site_votes(ref, view))
        votes.extend(self._typedef_votes(ref, view))
        return combine(votes)

    # -------------------------------------------------------------------------
    # Fixed point
    # -------------------------------------------------------------------------

    def _initial_states(self) -> dict[SlotRef, NullabilityState]:
        states = {ref: NullabilityState.UNKNOWN for ref in self.slots}
        for ref, fact in self.facts.items():
            states[ref] = fact.state
        return states

    def _run_rounds(self, pool: ThreadPoolExecutor) -> tuple[dict[SlotRef, NullabilityState], int, bool]:
        previous = self._initial_states()

        for round_number in range(1, self.max_rounds + 1):
            current = dict(previous)
            for phase in PHASES:
                refs = [ref for ref in self.phase_refs[phase] if ref not in self.facts]
                view = PhaseView(self, phase, previous, current)
                outcomes = list(pool.map(lambda r: self.evaluate(r, view), refs))
                # Single writer: merge in sorted ref order after the phase completes
                for ref, outcome in zip(refs, outcomes):
                    current[ref] = previous[ref].join(outcome.state)

            self.history.append(current)
            changed = sum(1 for ref in current if current[ref] is not previous[ref])
            if self.verbose:
                print(f"  Round {round_number}: {changed} slot(s) changed")
            previous = current
            if not changed:
                return previous, round_number, True

        return previous, self.max_rounds, False

    def _knowledge_outcome(self, ref: SlotRef, fact: KnowledgeFact) -> SlotOutcome:
        fact_evidence = Evidence(
            SourceKind.KNOWLEDGE_BASE_FACT, fact.state, self.weights[SourceKind.KNOWLEDGE_BASE_FACT],
            fact.origin or fact.source, f"{fact.source} fact for {ref}",
        )
        trail = [fact_evidence, *self.slots[ref].evidence]
        if fact.state is NullabilityState.CONFLICTING:
            return SlotOutcome(NullabilityState.CONFLICTING, Confidence.LOW, [SlotFlag.CONFLICT], trail)
        return SlotOutcome(fact.state, Confidence.HIGH, [], trail)

    def _finalize(self, states: dict[SlotRef, NullabilityState], converged: bool) -> list[str]:
        warnings = []
        final_view = PhaseView(self, max(PHASES) + 1, states, states)
        outcomes: dict[SlotRef, SlotOutcome] = {}

        for ref in sorted(self.slots):
            fact = self.facts.get(ref)
            if fact is not None:
                outcomes[ref] = self._knowledge_outcome(ref, fact)
                continue

            outcome = self.evaluate(ref, final_view)
            if not converged and states[ref].join(outcome.state) is not states[ref]:
                # Still moving at the cap: the snapshot state is not safe to publish
                outcome.state = NullabilityState.UNSPECIFIED
                outcome.confidence = Confidence.LOW
                outcome.flags = [SlotFlag.WARNING]
                warnings.append(f"{ref} still changing after {self.max_rounds} round(s); finalized unspecified")
                outcomes[ref] = outcome
                continue

            outcome.state = states[ref]
            if outcome.state in (NullabilityState.UNKNOWN, NullabilityState.UNSPECIFIED):
                convention = self.conventions.match(self.symbols[ref], self.slots[ref])
                if convention is not None:
                    outcome.trail.append(Evidence(
                        SourceKind.DEFAULT_CONVENTION, convention.state,
                        self.weights[SourceKind.DEFAULT_CONVENTION], str(ref),
                        f"convention '{convention.name}'",
                    ))
                    outcome.state = convention.state
                    outcome.confidence = Confidence.MEDIUM
                elif outcome.state is NullabilityState.UNKNOWN:
                    outcome.state = NullabilityState.UNSPECIFIED
                    outcome.confidence = Confidence.LOW
                    if not converged:
                        outcome.flags.append(SlotFlag.WARNING)
                        warnings.append(f"{ref} unresolved after {self.max_rounds} round(s); finalized unspecified")
            outcomes[ref] = outcome

        for ref, outcome in outcomes.items():
            slot = self.slots[ref]
            slot.state = outcome.state
            slot.confidence = outcome.confidence
            slot.flags = list(outcome.flags)
            slot.evidence = list(outcome.trail)
            slot.frozen = True

        return warnings

    def run(self) -> InferenceResult:
        if self.verbose:
            print(f"  Resolving {len(self.slots)} slot(s), {len(self.facts)} backed by knowledge base facts")

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            states, rounds, converged = self._run_rounds(pool)

        warnings = []
        if not converged:
            warnings.append(f"Round cap of {self.max_rounds} reached before a fixed point")
        warnings.extend(self._finalize(states, converged))
        if self.knowledge is not None:
            warnings.extend(self.knowledge.warnings)
        for fact in sorted(self.facts.values(), key=lambda f: (f.symbol, f.path)):
            if fact.state is NullabilityState.CONFLICTING:
                warnings.append(f"Conflicting knowledge base facts for {fact.symbol}#{fact.path}: {fact.origin}")

        histogram = Counter(slot.state.value for slot in self.slots.values())
        return InferenceResult(
            registry=self.registry,
            rounds=rounds,
            converged=converged,
            warnings=warnings,
            histogram=dict(sorted(histogram.items())),
        )


def infer(
        registry: SignatureRegistry,
        call_graph: CallGraph,
        knowledge: KnowledgeOracle | None = None,
        conventions: ConventionTable | None = None,
        max_rounds: int = 32,
        workers: int = 4,
        weights: dict[SourceKind, float] | None = None,
        verbose: bool = False
) -> InferenceResult:
    """
    Resolve and freeze every slot in ``registry``.

    Args:
        registry: Facts from extraction; slots must not be frozen yet
        call_graph: Call graph built over the same registry
        knowledge: Authoritative-fact oracle (memoized for the run)
        conventions: Default-convention table (built-in rows when omitted)
        max_rounds: Round cap
        workers: Threads used within each phase
        weights: Confidence per evidence kind
        verbose: Print per-round progress

    Returns:
        InferenceResult wrapping the same registry, now frozen
    """
    engine = InferenceEngine(
        registry, call_graph, knowledge=knowledge, conventions=conventions,
        max_rounds=max_rounds, workers=workers, weights=weights, verbose=verbose,
    )
    return engine.run()


# =============================================================================
# Loading
# =============================================================================

def load_knowledge(knowledge_root: Path | None, builtin: bool = True, verbose: bool = False) -> KnowledgeCorpus:
    paths: list[Path] = []
    if builtin:
        paths.append(config.get_builtin_knowledge_path())
    if knowledge_root is not None and knowledge_root.exists():
        paths.extend(discover_knowledge_files(knowledge_root))
    elif verbose:
        print(f"  No knowledge root at {knowledge_root}; using built-in facts only")

    if verbose:
        print(f"  Loading {len(paths)} knowledge file(s)")
    return KnowledgeCorpus.from_paths(paths, verbose=verbose)


# =============================================================================
# Main
# =============================================================================

def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    ap.add_argument(
        '--target-root',
        type=Path,
        action=config.StoreInConfig,
        config_obj=config,
        setter_method='set_target_root',
        help='Target project root (default: current directory)'
    )
    ap.add_argument(
        '--facts',
        type=Path,
        help=f'Stage 1 output (default: {config.get_stage_output(1)})'
    )
    ap.add_argument(
        '--call-graph',
        type=Path,
        help=f'Stage 2 output (default: {config.get_stage_output(2)})'
    )
    ap.add_argument(
        '--knowledge-root',
        type=Path,
        help=f'Root directory for knowledge corpora (default: {config.get_knowledge_root()})'
    )
    ap.add_argument(
        '--no-builtin-knowledge',
        action='store_true',
        help='Do not load the built-in Foundation corpus'
    )
    ap.add_argument(
        '--max-rounds',
        type=int,
        default=config.get_max_rounds(),
        help='Round cap for the fixed-point loop'
    )
    ap.add_argument(
        '--workers',
        type=int,
        default=config.get_inference_workers(),
        help='Threads used within each phase'
    )
    ap.add_argument(
        '--output',
        type=Path,
        help=f'Output file (default: {config.get_stage_output(3)})'
    )
    ap.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Verbose output'
    )

    args = ap.parse_args(argv)

    facts_path = args.facts or config.get_stage_output(1)
    graph_path = args.call_graph or config.get_stage_output(2)
    knowledge_root = args.knowledge_root or config.get_knowledge_root()
    output_path = args.output or config.get_stage_output(3)

    for label, path in (('Facts file', facts_path), ('Call graph file', graph_path)):
        if not path.exists():
            print(f"ERROR: {label} not found: {path}", file=sys.stderr)
            return 1

    if args.verbose:
        print(f"Loading facts from {facts_path}")
    registry = SignatureRegistry.from_dict(yaml_load(facts_path) or {})
    call_graph = CallGraph.from_dict(yaml_load(graph_path) or {})

    if args.verbose:
        print("Loading knowledge base...")
    corpus = load_knowledge(
        knowledge_root,
        builtin=config.use_builtin_knowledge() and not args.no_builtin_knowledge,
        verbose=args.verbose,
    )
    conventions = ConventionTable.with_extra_rows(config.get_extra_conventions())

    if args.verbose:
        print("\nInferring nullability...")

    try:
        result = infer(
            registry,
            call_graph,
            knowledge=MemoizedKnowledgeBase(corpus),
            conventions=conventions,
            max_rounds=args.max_rounds,
            workers=args.workers,
            weights=evidence_weights(config.get_evidence_confidence()),
            verbose=args.verbose,
        )
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    for warning in result.warnings:
        print(f"  WARNING: {warning}", file=sys.stderr)

    yaml_dump(result.to_dict(), output_path)

    print(f"\n✓ Inference complete → {output_path}")
    print(f"  Rounds:     {result.rounds} ({'converged' if result.converged else 'round cap reached'})")
    for state, count in result.histogram.items():
        print(f"  {state + ':':<12}{count}")
    if result.warnings:
        print(f"  Warnings:   {len(result.warnings)}")

    return 0


if __name__ == '__main__':
    sys.exit(main())
