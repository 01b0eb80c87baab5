#!/usr/bin/env python3
"""
Stage 1: Extract Nullability Facts

Classifies every symbol's implementation body into per-slot Evidence and
discovers the CallSites it makes, then merges all symbols into the signature
registry.

  - Return slots: each return path is nil, a non-nil construction, a forwarded
    parameter, a forwarded call result, or a conditional of those
  - Parameters: nil comparisons and ?: substitutions argue nullable; assertions
    and unguarded message sends argue nonnull; forwarding into another symbol
    is recorded for later resolution
  - Block parameters: guarded vs unguarded invocations, and the arguments
    passed at each invocation against the block's nested signature
  - Opaque constructs: zero-confidence unanalyzable evidence, never a guess

Extraction runs per symbol in a thread pool; results are merged into the
registry in input order once every symbol is done.

Input:  *.symbols.yaml (declarations + bodies from the parser)
Output: stage1-facts.yaml

DEFAULT BEHAVIOR (no args):
  - Reads symbol ledgers from config.get_symbols_root()
  - Outputs to config.get_stage_output(1)
"""

from __future__ import annotations

import argparse
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import yaml

from nullability_inference import config
from nullability_inference.shared.body_nodes import (
    NONNIL_EXPRS,
    AssignStmt,
    CallExpr,
    CoalesceExpr,
    ConditionalExpr,
    Expr,
    ExprStmt,
    GuardStmt,
    InvokeExpr,
    NilExpr,
    OpaqueExpr,
    OpaqueStmt,
    ParamRef,
    RaiseStmt,
    ReturnStmt,
    Stmt,
    SymbolLedgerError,
    SymbolSource,
    VarRef,
)
from nullability_inference.shared.models import (
    ArgHint,
    CallSite,
    Evidence,
    HintKind,
    NullabilityState,
    Signature,
    Slot,
    SlotRef,
    SlotRole,
    SourceKind,
    Symbol,
    SymbolFacts,
    SymbolKind,
    evidence_weights,
    make_call_site_id,
    param_path,
    return_path,
)
from nullability_inference.shared.registry import SignatureRegistry
from nullability_inference.shared.yaml_utils import yaml_dump, yaml_load_all

# Local variable resolution stops following assignments past this depth
MAX_ASSIGNMENT_DEPTH = 8


# =============================================================================
# Body walking
# =============================================================================

class _BodyWalker:
    """Walks one symbol's body, attaching evidence to its slots."""

    def __init__(self, facts: SymbolFacts, weights: dict[SourceKind, float]):
        self.facts = facts
        self.signature = facts.signature
        self.qualified = facts.qualified_name
        self.location_prefix = facts.symbol.unit or self.qualified
        self.weights = weights
        self.assignments: dict[str, list[tuple[Expr, frozenset[str], frozenset[str]]]] = {}
        self.call_ordinal = 0
        self.return_slot = self.signature.find('return')

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _evidence(self, kind: SourceKind, implies: NullabilityState, line: int,
                  detail: str, ref: SlotRef | None = None) -> Evidence:
        return Evidence(
            source_kind=kind,
            implies=implies,
            confidence=self.weights[kind],
            location=f"{self.location_prefix}:{line}",
            detail=detail,
            ref=ref,
        )

    def _unanalyzable(self, line: int, detail: str) -> Evidence:
        return self._evidence(SourceKind.UNANALYZABLE, NullabilityState.UNSPECIFIED, line, detail)

    def _param_slot(self, name: str) -> Slot | None:
        index = self.signature.param_index(name)
        return self.signature.param_slot(index) if index is not None else None

    @staticmethod
    def _subject_name(expr: Expr) -> str | None:
        if isinstance(expr, (ParamRef, VarRef)):
            return expr.name
        return None

    # -------------------------------------------------------------------------
    # Statements
    # -------------------------------------------------------------------------

    def walk(self, body: tuple[Stmt, ...], nonnil: set[str], nil: set[str]) -> bool:
        """
        Walk a statement list.

        Args:
            body: Statements in order
            nonnil: Names known non-nil at entry; updated in place
            nil: Names known nil at entry; updated in place

        Returns:
            True if every path through ``body`` leaves the method
        """
        for stmt in body:
            if isinstance(stmt, ReturnStmt):
                self._return(stmt, nonnil, nil)
                return True
            if isinstance(stmt, RaiseStmt):
                return True
            if isinstance(stmt, GuardStmt):
                if self._guard(stmt, nonnil, nil):
                    return True
            elif isinstance(stmt, AssignStmt):
                self._assign(stmt, nonnil, nil)
            elif isinstance(stmt, ExprStmt):
                self._scan(stmt.value, nonnil, nil)
            elif isinstance(stmt, OpaqueStmt):
                self._opaque(stmt.args, stmt.line, stmt.detail, nonnil, nil)
        return False

    def _return(self, stmt: ReturnStmt, nonnil: set[str], nil: set[str]) -> None:
        if stmt.value is None:
            return
        self._scan(stmt.value, nonnil, nil)
        if self.return_slot is None:
            return
        for evidence in self._classify(stmt.value, frozenset(nonnil), frozenset(nil),
                                       SourceKind.RETURN_PATH, stmt.line or 0):
            self.return_slot.add_evidence(evidence)

    def _guard(self, stmt: GuardStmt, nonnil: set[str], nil: set[str]) -> bool:
        name = self._subject_name(stmt.subject)
        if name is None:
            self._scan(stmt.subject, nonnil, nil)

        slot = self._param_slot(name) if name else None
        if slot is not None:
            if stmt.test == 'assert':
                slot.add_evidence(self._evidence(
                    SourceKind.NIL_CHECK, NullabilityState.NONNULL, stmt.line, f"{name} asserted non-nil"))
            else:
                slot.add_evidence(self._evidence(
                    SourceKind.NIL_CHECK, NullabilityState.NULLABLE, stmt.line, f"{name} compared against nil"))

        if stmt.test == 'assert':
            if name:
                nonnil.add(name)
                nil.discard(name)
            return False

        then_nonnil, then_nil = set(nonnil), set(nil)
        else_nonnil, else_nil = set(nonnil), set(nil)
        if name:
            nil_branch, nonnil_branch = ((then_nil, then_nonnil), (else_nil, else_nonnil)) \
                if stmt.test == 'nil' else ((else_nil, else_nonnil), (then_nil, then_nonnil))
            nil_branch[0].add(name)
            nil_branch[1].discard(name)
            nonnil_branch[1].add(name)
            nonnil_branch[0].discard(name)

        then_exits = self.walk(stmt.then, then_nonnil, then_nil)
        else_exits = self.walk(stmt.orelse, else_nonnil, else_nil)

        if then_exits and else_exits:
            return True
        if then_exits:
            survivors = (else_nonnil, else_nil)
        elif else_exits:
            survivors = (then_nonnil, then_nil)
        else:
            survivors = (then_nonnil & else_nonnil, then_nil & else_nil)

        nonnil.clear()
        nonnil.update(survivors[0])
        nil.clear()
        nil.update(survivors[1])
        return False

    def _assign(self, stmt: AssignStmt, nonnil: set[str], nil: set[str]) -> None:
        self._scan(stmt.value, nonnil, nil)
        self.assignments.setdefault(stmt.target, []).append(
            (stmt.value, frozenset(nonnil), frozenset(nil)))
        nonnil.discard(stmt.target)
        nil.discard(stmt.target)
        if isinstance(stmt.value, NilExpr):
            nil.add(stmt.target)
        elif isinstance(stmt.value, NONNIL_EXPRS):
            nonnil.add(stmt.target)

    def _opaque(self, args: tuple[Expr, ...], line: int, detail: str,
                nonnil: set[str], nil: set[str]) -> None:
        for arg in args:
            if isinstance(arg, ParamRef):
                slot = self._param_slot(arg.name)
                if slot is not None:
                    slot.add_evidence(self._unanalyzable(line, f"{arg.name} escapes into {detail or 'opaque code'}"))
            self._scan(arg, nonnil, nil)

    # -------------------------------------------------------------------------
    # Expressions
    # -------------------------------------------------------------------------

    def _scan(self, expr: Expr, nonnil: set[str], nil: set[str]) -> None:
        """Record evidence and call sites for every sub-expression evaluated for effect."""
        if isinstance(expr, CallExpr):
            self._call(expr, nonnil, nil)
        elif isinstance(expr, InvokeExpr):
            self._invoke(expr, nonnil, nil)
            for arg in expr.args:
                self._scan(arg, nonnil, nil)
        elif isinstance(expr, ConditionalExpr):
            for branch in expr.branches:
                self._scan(branch, nonnil, nil)
        elif isinstance(expr, CoalesceExpr):
            if isinstance(expr.value, ParamRef):
                slot = self._param_slot(expr.value.name)
                if slot is not None:
                    slot.add_evidence(self._evidence(
                        SourceKind.NIL_CHECK, NullabilityState.NULLABLE, expr.line,
                        f"{expr.value.name} substituted with ?: fallback"))
            self._scan(expr.value, nonnil, nil)
            self._scan(expr.fallback, nonnil, nil)
        elif isinstance(expr, OpaqueExpr):
            self._opaque(expr.args, expr.line, expr.detail, nonnil, nil)

    def _call(self, expr: CallExpr, nonnil: set[str], nil: set[str]) -> None:
        receiver = expr.receiver
        if isinstance(receiver, ParamRef) and receiver.name not in nonnil | nil:
            slot = self._param_slot(receiver.name)
            if slot is not None:
                slot.add_evidence(self._evidence(
                    SourceKind.NIL_CHECK, NullabilityState.NONNULL, expr.line,
                    f"{receiver.name} used as message receiver without nil check"))
        if receiver is not None:
            self._scan(receiver, nonnil, nil)

        if expr.target is None:
            # Dynamic dispatch: arguments flow somewhere we cannot see
            self._opaque(expr.args, expr.line, 'dynamic dispatch', nonnil, nil)
            return

        hints = []
        for index, arg in enumerate(expr.args):
            hints.append(self._arg_hint(arg, frozenset(nonnil), frozenset(nil), expr.line))
            if isinstance(arg, ParamRef) and arg.name not in nonnil | nil:
                slot = self._param_slot(arg.name)
                if slot is not None:
                    slot.add_evidence(self._evidence(
                        SourceKind.FORWARDED_CALL, NullabilityState.UNKNOWN, expr.line,
                        f"{arg.name} passed to {expr.target} argument {index}",
                        ref=SlotRef(expr.target, param_path(index))))
            self._scan(arg, nonnil, nil)

        self.call_ordinal += 1
        self.facts.call_sites.append(CallSite(
            id=make_call_site_id(self.qualified, expr.target, expr.line, self.call_ordinal),
            caller=self.qualified,
            callee=expr.target,
            line=expr.line,
            args=tuple(hints),
        ))

    def _invoke(self, expr: InvokeExpr, nonnil: set[str], nil: set[str]) -> None:
        slot = self._param_slot(expr.block)
        if slot is None or slot.role is not SlotRole.BLOCK_ITSELF:
            return

        if expr.block in nonnil:
            slot.add_evidence(self._evidence(
                SourceKind.NIL_CHECK, NullabilityState.NULLABLE, expr.line,
                f"{expr.block} invoked under a nil check"))
        elif expr.block in nil:
            slot.add_evidence(self._evidence(
                SourceKind.NIL_CHECK, NullabilityState.NULLABLE, expr.line,
                f"{expr.block} invoked on a path where it is nil"))
        else:
            slot.add_evidence(self._evidence(
                SourceKind.NIL_CHECK, NullabilityState.NONNULL, expr.line,
                f"{expr.block} invoked without nil check"))

        if slot.nested is None:
            return
        for index, arg in enumerate(expr.args):
            target = slot.nested.find(param_path(index, slot.path))
            if target is None:
                continue
            for evidence in self._classify(arg, frozenset(nonnil), frozenset(nil),
                                           SourceKind.CALL_SITE_LITERAL, expr.line):
                target.add_evidence(evidence)

    def _classify(self, expr: Expr, nonnil: frozenset[str], nil: frozenset[str],
                  literal_kind: SourceKind, line: int, depth: int = 0) -> list[Evidence]:
        """
        Classify a value flowing into a slot (returned, or passed to a block).

        Returns:
            Evidence list; deferred entries reference the slot the value comes from
        """
        line = getattr(expr, 'line', 0) or line

        if isinstance(expr, NilExpr):
            return [self._evidence(literal_kind, NullabilityState.NULLABLE, line, "nil literal")]

        if isinstance(expr, NONNIL_EXPRS):
            return [self._evidence(literal_kind, NullabilityState.NONNULL, line,
                                   f"non-nil {type(expr).__name__.removesuffix('Expr').lower()}")]

        if isinstance(expr, (ParamRef, VarRef)):
            if expr.name in nonnil:
                return [self._evidence(SourceKind.NIL_CHECK, NullabilityState.NONNULL, line,
                                       f"{expr.name} is non-nil on this path")]
            if expr.name in nil:
                return [self._evidence(SourceKind.NIL_CHECK, NullabilityState.NULLABLE, line,
                                       f"{expr.name} is nil on this path")]

        if isinstance(expr, ParamRef):
            slot = self._param_slot(expr.name)
            if slot is None:
                return []
            return [self._evidence(SourceKind.FORWARDED_CALL, NullabilityState.UNKNOWN, line,
                                   f"forwards parameter {expr.name}", ref=SlotRef(self.qualified, slot.path))]

        if isinstance(expr, VarRef):
            assigned = self.assignments.get(expr.name)
            if not assigned or depth >= MAX_ASSIGNMENT_DEPTH:
                return [self._unanalyzable(line, f"unresolved local {expr.name}")]
            results: list[Evidence] = []
            for value, value_nonnil, value_nil in assigned:
                results.extend(self._classify(value, value_nonnil, value_nil, literal_kind, line, depth + 1))
            return results

        if isinstance(expr, CallExpr):
            if expr.target is None:
                return [self._unanalyzable(line, "result of dynamic dispatch")]
            return [self._evidence(SourceKind.FORWARDED_CALL, NullabilityState.UNKNOWN, line,
                                   f"result of {expr.target}", ref=SlotRef(expr.target, 'return'))]

        if isinstance(expr, InvokeExpr):
            slot = self._param_slot(expr.block)
            if slot is not None and slot.nested is not None and slot.nested.find(return_path(slot.path)):
                return [self._evidence(SourceKind.FORWARDED_CALL, NullabilityState.UNKNOWN, line,
                                       f"result of invoking {expr.block}",
                                       ref=SlotRef(self.qualified, return_path(slot.path)))]
            return [self._unanalyzable(line, f"result of invoking {expr.block}")]

        if isinstance(expr, ConditionalExpr):
            results = []
            for branch in expr.branches:
                results.extend(self._classify(branch, nonnil, nil, literal_kind, line, depth))
            return results

        if isinstance(expr, CoalesceExpr):
            return self._classify(expr.fallback, nonnil, nil, literal_kind, line, depth)

        detail = expr.detail if isinstance(expr, OpaqueExpr) and expr.detail else "opaque expression"
        return [self._unanalyzable(line, detail)]

    def _arg_hint(self, expr: Expr, nonnil: frozenset[str], nil: frozenset[str], line: int) -> ArgHint:
        """Summarize an argument for bottom-up propagation into the callee."""
        evidence = self._classify(expr, nonnil, nil, SourceKind.CALL_SITE_LITERAL, line)
        states = {e.implies for e in evidence}

        if NullabilityState.NULLABLE in states:
            return ArgHint(HintKind.NIL, detail=evidence[0].detail if len(evidence) == 1 else "may be nil")
        if evidence and states == {NullabilityState.NONNULL}:
            return ArgHint(HintKind.NONNIL, detail=evidence[0].detail)
        if len(evidence) == 1 and evidence[0].is_deferred:
            ref = evidence[0].ref
            kind = HintKind.PARAM if ref.symbol == self.qualified and ref.path.startswith('param[') \
                and not ref.path.endswith('.return') else HintKind.CALL
            return ArgHint(kind, ref=ref, detail=evidence[0].detail)
        return ArgHint(HintKind.UNKNOWN)


# =============================================================================
# Extractor
# =============================================================================

class FactExtractor:
    """Turns one SymbolSource into SymbolFacts. Stateless across symbols."""

    def __init__(self, weights: dict[SourceKind, float] | None = None, max_block_depth: int = 3):
        self.weights = weights or evidence_weights()
        self.max_block_depth = max_block_depth

    def extract(self, source: SymbolSource) -> SymbolFacts:
        try:
            kind = SymbolKind(source.kind)
        except ValueError as e:
            raise SymbolLedgerError(
                f"Unknown symbol kind '{source.kind}' for {source.owner}.{source.name} in {source.unit}"
            ) from e

        symbol = Symbol(name=source.name, owner=source.owner, kind=kind, unit=source.unit)
        signature = Signature.from_declaration(source.declaration, kind, max_depth=self.max_block_depth)
        facts = SymbolFacts(symbol=symbol, signature=signature, has_body=source.body is not None)

        if source.body is not None:
            _BodyWalker(facts, self.weights).walk(source.body, set(), set())

        return facts


def extract_all(
        sources: list[SymbolSource],
        extractor: FactExtractor | None = None,
        workers: int = 4,
        verbose: bool = False
) -> SignatureRegistry:
    """
    Extract every symbol in parallel, then merge into a registry.

    The registry is only written after all extraction work has finished, in
    input order, so the merged result does not depend on thread scheduling.
    """
    extractor = extractor or FactExtractor()

    if verbose:
        print(f"  Extracting {len(sources)} symbol(s) with {workers} worker(s)...")

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        results = list(pool.map(extractor.extract, sources))

    registry = SignatureRegistry()
    for facts in results:
        registry.register(facts)

    if verbose:
        stats = registry.stats()
        print(f"  Registered {stats['symbols']} symbol(s), {stats['slots']} slot(s), "
              f"{stats['evidence']} evidence item(s), {stats['call_sites']} call site(s)")

    return registry


# =============================================================================
# File discovery and loading
# =============================================================================

def discover_symbol_ledgers(root: Path) -> list[Path]:
    return sorted(root.glob('**/*.symbols.yaml'))


def load_symbol_sources(paths: list[Path], verbose: bool = False) -> list[SymbolSource]:
    """Load every symbol from every ledger; unreadable files and malformed entries are reported and skipped."""
    sources: list[SymbolSource] = []

    for path in paths:
        try:
            file_sources = []
            for doc in yaml_load_all(path):
                if doc.get('docKind') != 'symbols':
                    continue
                unit = doc.get('unit', path.name)
                for entry in doc.get('symbols') or []:
                    try:
                        file_sources.append(SymbolSource.from_dict(entry, unit=unit))
                    except SymbolLedgerError as e:
                        print(f"  WARNING: Skipping symbol in {path}: {e}", file=sys.stderr)
        except (OSError, AttributeError, ValueError, yaml.YAMLError) as e:
            print(f"  WARNING: Could not load {path}: {e}", file=sys.stderr)
            continue

        sources.extend(file_sources)
        if verbose:
            print(f"  {path.name}: {len(file_sources)} symbol(s)")

    return sources


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
        '--symbols-root',
        type=Path,
        help=f'Root directory for symbol ledger discovery (default: {config.get_symbols_root()})'
    )
    ap.add_argument(
        '--output',
        type=Path,
        help=f'Output file (default: {config.get_stage_output(1)})'
    )
    ap.add_argument(
        '--workers',
        type=int,
        default=config.get_extraction_workers(),
        help='Extraction threads'
    )
    ap.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Verbose output'
    )

    args = ap.parse_args(argv)

    symbols_root = args.symbols_root or config.get_symbols_root()
    output_path = args.output or config.get_stage_output(1)

    if not symbols_root.exists():
        print(f"ERROR: Symbols root not found: {symbols_root}", file=sys.stderr)
        return 1

    ledger_paths = discover_symbol_ledgers(symbols_root)
    if not ledger_paths:
        print(f"ERROR: No *.symbols.yaml files found in {symbols_root}", file=sys.stderr)
        return 1

    if args.verbose:
        print(f"Found {len(ledger_paths)} symbol ledger(s)")

    sources = load_symbol_sources(ledger_paths, verbose=args.verbose)
    if not sources:
        print(f"ERROR: No symbols loaded from {symbols_root}", file=sys.stderr)
        return 1

    extractor = FactExtractor(
        weights=evidence_weights(config.get_evidence_confidence()),
        max_block_depth=config.get_max_block_depth(),
    )

    if args.verbose:
        print("\nExtracting facts...")

    registry = extract_all(sources, extractor, workers=args.workers, verbose=args.verbose)

    output = {'stage': 'facts', **registry.to_dict()}
    yaml_dump(output, output_path)

    stats = registry.stats()
    print(f"\n✓ Fact extraction complete → {output_path}")
    print(f"  Symbols:     {stats['symbols']} ({stats['symbols_with_body']} with body)")
    print(f"  Slots:       {stats['slots']}")
    print(f"  Evidence:    {stats['evidence']}")
    print(f"  Call sites:  {stats['call_sites']}")

    return 0


if __name__ == '__main__':
    sys.exit(main())
