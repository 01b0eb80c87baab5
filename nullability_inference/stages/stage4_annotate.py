#!/usr/bin/env python3
"""
Stage 4: Annotate Declarations

Input: Stage 3 output (frozen signatures)
Output: Annotated declarations with evidence trails and a review list

For each frozen slot, emits one of nullable / nonnull / unspecified attached to
the declared type text:
  - Method-level positions use the keyword form:   (nullable NSString *)
  - Block parameters, block returns and double
    pointers use the qualifier form:               NSError * _Nullable
  - Conflicting slots emit unspecified and a manual-review marker

Tokens are inserted into the declared text; parameter names, spacing and
typedef names stay as written.

Slots that are conflicting or carry a warning are collected in a review list.

DEFAULT BEHAVIOR (no args):
  - Reads from config.get_stage_output(3)
  - Outputs to config.get_stage_output(4)
"""

from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path
from typing import Any

from nullability_inference import config
from nullability_inference.shared.models import (
    NullabilityState,
    Signature,
    Slot,
    SlotFlag,
    SlotRole,
    SymbolFacts,
    SymbolKind,
    is_block_type,
    param_path,
    return_path,
)
from nullability_inference.shared.registry import SignatureRegistry
from nullability_inference.shared.yaml_utils import yaml_dump, yaml_load

REVIEW_MARKER = '/* NULLABILITY REVIEW: conflicting facts */'

# token -> (keyword form, qualifier form)
_SPELLINGS = {
    'nullable': ('nullable', '_Nullable'),
    'nonnull': ('nonnull', '_Nonnull'),
    'unspecified': ('null_unspecified', '_Null_unspecified'),
}


# =============================================================================
# Tokens and type text
# =============================================================================

_CARET = re.compile(r'\(\s*\^')
_NAMED = re.compile(r'^(\S.*?)\s+([A-Za-z_]\w*)$')


def annotation_token(state: NullabilityState) -> str:
    if state is NullabilityState.NULLABLE:
        return 'nullable'
    if state is NullabilityState.NONNULL:
        return 'nonnull'
    return 'unspecified'


def uses_qualifier_form(slot: Slot, kind: SymbolKind | None = None) -> bool:
    """Block parameters, nested returns, block typedef slots and double pointers cannot take the keyword form."""
    if kind is SymbolKind.BLOCK_TYPE:
        return True
    if slot.role is SlotRole.BLOCK_PARAMETER or '.' in slot.path:
        return True
    return not is_block_type(slot.type_text) and slot.type_text.count('*') >= 2


def annotate_type(type_text: str, token: str, qualifier: bool) -> str:
    """
    Attach a nullability token to declared type text.

    Examples:
        annotate_type('NSString *', 'nullable', False) -> 'nullable NSString *'
        annotate_type('NSError *', 'nullable', True)   -> 'NSError * _Nullable'
        annotate_type('NSError *error', 'nullable', True) -> 'NSError * _Nullable error'
        annotate_type('void (^)(void)', 'nonnull', True) -> 'void (^ _Nonnull)(void)'
    """
    keyword, qualifier_spelling = _SPELLINGS[token]
    text = type_text.strip()

    if not qualifier:
        return f"{keyword} {text}"

    caret = _CARET.search(text)
    if caret is not None:
        return _after(text, caret.end(), qualifier_spelling)

    star = text.rfind('*')
    if star == -1:
        named = _NAMED.match(text)
        if named is None:
            return f"{text} {qualifier_spelling}"
        return f"{named.group(1)} {qualifier_spelling} {named.group(2)}"
    return _after(text, star + 1, qualifier_spelling)


def _after(text: str, index: int, word: str) -> str:
    """Insert ``word`` at ``index``, keeping it separated from the following name."""
    rest = text[index:]
    if rest and not rest[0].isspace() and rest[0] != ')':
        rest = f" {rest}"
    return f"{text[:index]} {word}{rest}".rstrip()


def _matching_paren(text: str, index: int) -> int:
    depth = 0
    for i in range(index, len(text)):
        if text[i] == '(':
            depth += 1
        elif text[i] == ')':
            depth -= 1
            if depth == 0:
                return i
    return -1


def _split_params(text: str) -> list[str]:
    """Split a parameter list on top-level commas, keeping each piece's spacing."""
    pieces = []
    depth = 0
    start = 0
    for i, ch in enumerate(text):
        if ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
        elif ch == ',' and depth == 0:
            pieces.append(text[start:i])
            start = i + 1
    pieces.append(text[start:])
    return pieces


def _require_frozen(slot: Slot, owner: str) -> None:
    if not slot.frozen:
        raise ValueError(f"Slot {owner}#{slot.path} is not frozen; run inference first")


def _mark(text: str, slot: Slot) -> str:
    if slot.state is NullabilityState.CONFLICTING:
        return f"{text} {REVIEW_MARKER}"
    return text


def _respaced(piece: str, annotated: str) -> str:
    lead = piece[:len(piece) - len(piece.lstrip())]
    trail = piece[len(piece.rstrip()):]
    return f"{lead}{annotated}{trail}"


def annotate_slot_text(text: str, slot: Slot, qualifier: bool) -> str:
    """
    Insert the tokens of ``slot`` (and of its nested block slots) into declared text.

    Only tokens are added: parameter names, spacing and typedef names stay as
    written. A typedef-named block keeps its nested states on the typedef symbol.
    """
    text = text.strip()
    token = annotation_token(slot.state)
    caret = _CARET.search(text) if slot.nested is not None else None
    if caret is None:
        return annotate_type(text, token, qualifier)

    group_end = _matching_paren(text, caret.start())
    params_start = text.find('(', group_end + 1) if group_end != -1 else -1
    params_end = _matching_paren(text, params_start) if params_start != -1 else -1
    if params_end == -1:
        return annotate_type(text, token, qualifier)

    nested = slot.nested
    returns = text[:caret.start()]
    return_slot = nested.find(return_path(slot.path))
    if return_slot is not None and returns.strip():
        returns = _respaced(returns, _mark(annotate_slot_text(returns, return_slot, True), return_slot))

    pieces = _split_params(text[params_start + 1:params_end])
    for index, piece in enumerate(pieces):
        param_slot = nested.find(param_path(index, slot.path))
        if param_slot is not None and piece.strip():
            pieces[index] = _respaced(piece, _mark(annotate_slot_text(piece, param_slot, True), param_slot))

    group = text[caret.start():group_end + 1]
    between = text[group_end + 1:params_start]
    tail = text[params_end + 1:]
    if qualifier:
        group = annotate_type(group, token, True)
    rebuilt = f"{returns}{group}{between}({','.join(pieces)}){tail}"
    return rebuilt if qualifier else f"{_SPELLINGS[token][0]} {rebuilt}"


def _annotated(slot: Slot, qualifier: bool | None = None) -> str:
    form = uses_qualifier_form(slot) if qualifier is None else qualifier
    return _mark(annotate_slot_text(slot.type_text, slot, form), slot)


def _param_text(signature: Signature, index: int) -> str:
    """Annotated 'type name' for one parameter of a block typedef."""
    decl = signature.params[index]
    slot = signature.find(param_path(index))
    type_text = _annotated(slot, qualifier=True) if slot else decl.type_text
    if not decl.name:
        return type_text
    return f"{type_text}{decl.name}" if type_text.endswith('*') else f"{type_text} {decl.name}"


def _typedef_text(signature: Signature, name: str) -> str:
    """Render 'RET (^name)(params)' for a block typedef, slots in qualifier form."""
    return_slot = signature.find('return')
    returns = _annotated(return_slot, qualifier=True) if return_slot else signature.return_type
    params = ', '.join(_param_text(signature, i) for i in range(len(signature.params))) or 'void'
    return f"{returns} (^{name})({params})"


# =============================================================================
# Declarations
# =============================================================================

def render_method(entry: SymbolFacts) -> str:
    signature = entry.signature
    sign = '+' if entry.symbol.kind is SymbolKind.CLASS_METHOD else '-'
    return_slot = signature.find('return')
    returns = _annotated(return_slot) if return_slot else signature.return_type

    if not signature.params:
        return f"{sign} ({returns}){entry.symbol.name}"

    labels = [label for label in entry.symbol.name.split(':') if label] or ['']
    pieces = []
    for index, decl in enumerate(signature.params):
        label = labels[index] if index < len(labels) else ''
        slot = signature.param_slot(index)
        type_text = _annotated(slot) if slot else decl.type_text
        pieces.append(f"{label}:({type_text}){decl.name}")
    return f"{sign} ({returns}){' '.join(pieces)}"


def render_property(entry: SymbolFacts) -> str:
    signature = entry.signature
    slot = signature.find('return')
    attributes = list(signature.attributes)
    if slot is not None:
        attributes.append(annotation_token(slot.state))
    attribute_text = f"({', '.join(attributes)}) " if attributes else ''

    name = (slot.name if slot and slot.name else entry.symbol.name)
    type_text = signature.return_type.strip()
    declaration = f"{type_text}{name}" if type_text.endswith('*') else f"{type_text} {name}"
    marker = f" {REVIEW_MARKER}" if slot is not None and slot.state is NullabilityState.CONFLICTING else ''
    return f"@property {attribute_text}{declaration};{marker}"


def render_block_typedef(entry: SymbolFacts) -> str:
    return f"typedef {_typedef_text(entry.signature, entry.symbol.name)};"


def render_declaration(entry: SymbolFacts) -> str:
    kind = entry.symbol.kind
    if kind is SymbolKind.PROPERTY:
        return render_property(entry)
    if kind is SymbolKind.BLOCK_TYPE:
        return render_block_typedef(entry)
    return render_method(entry)


# =============================================================================
# Annotation records
# =============================================================================

def annotate_symbol(entry: SymbolFacts) -> dict[str, Any]:
    """
    Build the annotation record for one symbol.

    Raises:
        ValueError: If any slot of the symbol is not frozen
    """
    name = entry.qualified_name
    slots = list(entry.signature.iter_slots())
    for slot in slots:
        _require_frozen(slot, name)

    records = []
    for slot in slots:
        record: dict[str, Any] = {
            'path': slot.path,
            'role': slot.role.value,
            'token': annotation_token(slot.state),
            'annotated_type': _annotated(slot, uses_qualifier_form(slot, entry.symbol.kind)),
            'state': slot.state.value,
            'confidence': slot.confidence.value,
        }
        if slot.name:
            record['name'] = slot.name
        if slot.flags:
            record['flags'] = [f.value for f in slot.flags]
        if slot.state is NullabilityState.CONFLICTING:
            record['marker'] = REVIEW_MARKER
        record['evidence'] = [e.to_dict() for e in slot.evidence]
        records.append(record)

    return {
        'symbol': name,
        'kind': entry.symbol.kind.value,
        'unit': entry.symbol.unit,
        'declaration': render_declaration(entry),
        'slots': records,
    }


def review_items(entry: SymbolFacts) -> list[dict[str, Any]]:
    """Slots that need a human decision: conflicting facts or cap-exhausted warnings."""
    items = []
    for slot in entry.signature.iter_slots():
        if slot.state is NullabilityState.CONFLICTING:
            reason = 'conflicting knowledge base facts'
        elif SlotFlag.WARNING in slot.flags:
            reason = 'unresolved when the round cap was reached'
        else:
            continue
        items.append({
            'slot': str(entry.ref(slot.path)),
            'state': slot.state.value,
            'flags': [f.value for f in slot.flags],
            'reason': reason,
        })
    return items


def annotate_registry(registry: SignatureRegistry, verbose: bool = False) -> dict[str, Any]:
    symbols = []
    review = []
    tokens = {'nullable': 0, 'nonnull': 0, 'unspecified': 0}

    for entry in registry:
        record = annotate_symbol(entry)
        symbols.append(record)
        review.extend(review_items(entry))
        for slot in record['slots']:
            tokens[slot['token']] += 1
        if verbose:
            print(f"  {record['declaration']}")

    return {
        'stage': 'annotations',
        'symbols': symbols,
        'review': review,
        'summary': {
            'symbols': len(symbols),
            'slots': sum(tokens.values()),
            'tokens': tokens,
            'needs_review': len(review),
        },
    }


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
        '--input',
        type=Path,
        help=f'Stage 3 output (default: {config.get_stage_output(3)})'
    )
    ap.add_argument(
        '--output',
        type=Path,
        help=f'Output file (default: {config.get_stage_output(4)})'
    )
    ap.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Verbose output'
    )

    args = ap.parse_args(argv)

    input_path = args.input or config.get_stage_output(3)
    output_path = args.output or config.get_stage_output(4)

    if not input_path.exists():
        print(f"ERROR: Input file not found: {input_path}", file=sys.stderr)
        return 1

    registry = SignatureRegistry.from_dict(yaml_load(input_path) or {})

    if args.verbose:
        print(f"Annotating {len(registry)} symbol(s)...")

    try:
        output = annotate_registry(registry, verbose=args.verbose)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    for item in output['review']:
        print(f"  WARNING: {item['slot']} needs review: {item['reason']}", file=sys.stderr)

    yaml_dump(output, output_path)

    summary = output['summary']
    print(f"\n✓ Annotation complete → {output_path}")
    print(f"  Symbols:      {summary['symbols']}")
    print(f"  nullable:     {summary['tokens']['nullable']}")
    print(f"  nonnull:      {summary['tokens']['nonnull']}")
    print(f"  unspecified:  {summary['tokens']['unspecified']}")
    print(f"  Needs review: {summary['needs_review']}")

    return 0


if __name__ == '__main__':
    sys.exit(main())
