"""
Shared data models for the nullability inference pipeline.

These models define contracts between pipeline stages:
- stage1_extract_facts.py (Stage 1)
- stage2_build_call_graph.py (Stage 2)
- stage3_infer_nullability.py (Stage 3)
- stage4_annotate.py (Stage 4)
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

from typing_extensions import Self


# =============================================================================
# Enumerations
# =============================================================================

class NullabilityState(Enum):
    """
    Nullability of one annotateable position.

    The heuristic states form a chain joined upward:

        UNKNOWN < UNSPECIFIED < NONNULL < NULLABLE

    CONFLICTING only ever comes from disagreeing authoritative facts and
    absorbs everything.
    """
    UNKNOWN = "unknown"
    NULLABLE = "nullable"
    NONNULL = "nonnull"
    UNSPECIFIED = "unspecified"
    CONFLICTING = "conflicting"

    @property
    def rank(self) -> int:
        return _STATE_RANK[self]

    def is_firm(self) -> bool:
        """True for states that vote in a join (NULLABLE / NONNULL)."""
        return self in (NullabilityState.NULLABLE, NullabilityState.NONNULL)

    def join(self, other: NullabilityState) -> NullabilityState:
        """Least upper bound; NULLABLE wins over NONNULL."""
        return self if self.rank >= other.rank else other


_STATE_RANK = {
    NullabilityState.UNKNOWN: 0,
    NullabilityState.UNSPECIFIED: 1,
    NullabilityState.NONNULL: 2,
    NullabilityState.NULLABLE: 3,
    NullabilityState.CONFLICTING: 4,
}


class SlotRole(Enum):
    """
    Role of a slot within its signature. The role fixes the inference phase.

    PARAMETER:        plain method parameter (phase 1)
    BLOCK_PARAMETER:  parameter of a block signature (phase 2)
    BLOCK_ITSELF:     a block-typed method parameter's own pointer (phase 3)
    RETURN:           method/block return or property value (phase 4)
    """
    RETURN = "return"
    PARAMETER = "parameter"
    BLOCK_ITSELF = "block_itself"
    BLOCK_PARAMETER = "block_parameter"

    @property
    def phase(self) -> int:
        return _ROLE_PHASE[self]


_ROLE_PHASE = {
    SlotRole.PARAMETER: 1,
    SlotRole.BLOCK_PARAMETER: 2,
    SlotRole.BLOCK_ITSELF: 3,
    SlotRole.RETURN: 4,
}


class SourceKind(Enum):
    """Where a piece of evidence came from."""
    NIL_CHECK = "nil_check"
    CALL_SITE_LITERAL = "call_site_literal"
    KNOWLEDGE_BASE_FACT = "knowledge_base_fact"
    FORWARDED_CALL = "forwarded_call"
    DEFAULT_CONVENTION = "default_convention"
    RETURN_PATH = "return_path"
    UNANALYZABLE = "unanalyzable"


DEFAULT_EVIDENCE_CONFIDENCE: dict[SourceKind, float] = {
    SourceKind.KNOWLEDGE_BASE_FACT: 1.0,
    SourceKind.NIL_CHECK: 0.8,
    SourceKind.CALL_SITE_LITERAL: 0.7,
    SourceKind.RETURN_PATH: 0.6,
    SourceKind.FORWARDED_CALL: 0.6,
    SourceKind.DEFAULT_CONVENTION: 0.4,
    SourceKind.UNANALYZABLE: 0.0,
}


def evidence_weights(overrides: dict[str, float] | None = None) -> dict[SourceKind, float]:
    """Default confidence per evidence kind, with overrides keyed by kind value."""
    weights = dict(DEFAULT_EVIDENCE_CONFIDENCE)
    for key, value in (overrides or {}).items():
        weights[SourceKind(key)] = float(value)
    # Unanalyzable constructs never carry certainty
    weights[SourceKind.UNANALYZABLE] = 0.0
    return weights


class Confidence(Enum):
    """
    Confidence of a frozen slot.

    HIGH:   backed by a knowledge base fact
    MEDIUM: heuristic evidence or a default convention
    LOW:    unspecified fallback, conflicting facts, or NONNULL beside opaque code
    """
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SlotFlag(Enum):
    WARNING = "warning"
    CONFLICT = "conflict"
    JOINED = "joined"


class SymbolKind(Enum):
    METHOD = "method"
    CLASS_METHOD = "class_method"
    PROPERTY = "property"
    BLOCK_TYPE = "block_type"


class HintKind(Enum):
    """
    Nullability hint for one argument observed at a call expression.

    NIL:     literal nil, or a name known to be nil at the call
    NONNIL:  construction, literal, block literal, or a name known non-nil
    PARAM:   a caller parameter passed through (resolved via its slot)
    CALL:    the result of another call or block invocation
    UNKNOWN: anything else
    """
    NIL = "nil"
    NONNIL = "nonnil"
    PARAM = "param"
    CALL = "call"
    UNKNOWN = "unknown"


# =============================================================================
# Slot paths
# =============================================================================

_PARAM_SEGMENT = re.compile(r'^param\[(\d+)\]$')


def param_path(index: int, parent: str = '') -> str:
    """param_path(1) -> 'param[1]'; param_path(0, 'param[1]') -> 'param[1].param[0]'"""
    segment = f'param[{index}]'
    return f'{parent}.{segment}' if parent else segment


def return_path(parent: str = '') -> str:
    return f'{parent}.return' if parent else 'return'


def top_level_index(path: str) -> int | None:
    """Index of the outermost parameter a path lives under, or None for 'return'."""
    match = _PARAM_SEGMENT.match(path.split('.', 1)[0])
    return int(match.group(1)) if match else None


@dataclass(frozen=True, order=True)
class SlotRef:
    """Address of a slot: (symbol qualified name, slot path)."""
    symbol: str
    path: str

    def __str__(self) -> str:
        return f'{self.symbol}#{self.path}'

    @classmethod
    def parse(cls, text: str) -> Self:
        symbol, _, path = text.rpartition('#')
        return cls(symbol=symbol, path=path)


# =============================================================================
# Declared types
# =============================================================================

_OBJECT_TYPE_WORDS = {'id', 'instancetype', 'Class'}


def is_block_type(type_text: str) -> bool:
    return '(^' in type_text.replace(' ', '')


def is_annotateable(type_text: str) -> bool:
    """
    Check if a declared type can carry a nullability annotation.

    Examples:
        'NSString *' -> True
        'id<NSCopying>' -> True
        'void (^)(NSError *)' -> True
        'BOOL' -> False
    """
    text = type_text.strip()
    if not text:
        return False
    if '*' in text or is_block_type(text):
        return True
    base = re.split(r'[\s<]', text, maxsplit=1)[0]
    return base in _OBJECT_TYPE_WORDS


# =============================================================================
# Evidence
# =============================================================================

@dataclass(frozen=True)
class Evidence:
    """
    A single dataflow observation supporting a nullability conclusion.

    Deferred evidence (a forwarded parameter or call result) carries ``ref``
    and ``implies=UNKNOWN``; the inference engine resolves it by reading the
    referenced slot.
    """
    source_kind: SourceKind
    implies: NullabilityState
    confidence: float
    location: str
    detail: str = ''
    ref: SlotRef | None = None

    @property
    def is_deferred(self) -> bool:
        return self.ref is not None and self.implies is NullabilityState.UNKNOWN

    def resolved(self, state: NullabilityState) -> Evidence:
        return Evidence(
            source_kind=self.source_kind,
            implies=state,
            confidence=self.confidence,
            location=self.location,
            detail=f"{self.detail} (resolved {state.value} via {self.ref})",
            ref=self.ref,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        ref = data.get('ref')
        return cls(
            source_kind=SourceKind(data['source_kind']),
            implies=NullabilityState(data['implies']),
            confidence=float(data.get('confidence', 0.0)),
            location=data.get('location', ''),
            detail=data.get('detail', ''),
            ref=SlotRef.parse(ref) if ref else None,
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            'source_kind': self.source_kind.value,
            'implies': self.implies.value,
            'confidence': self.confidence,
            'location': self.location,
        }
        if self.detail:
            result['detail'] = self.detail
        if self.ref:
            result['ref'] = str(self.ref)
        return result


# =============================================================================
# Signatures
# =============================================================================

@dataclass
class ParamDecl:
    """Declared parameter, annotateable or not."""
    name: str
    type_text: str
    typedef: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {'name': self.name, 'type': self.type_text}
        if self.typedef:
            result['typedef'] = self.typedef
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(name=data.get('name', ''), type_text=data.get('type', ''), typedef=data.get('typedef'))


@dataclass
class Slot:
    """
    One annotateable nullability position.

    ``state``, ``confidence``, ``flags`` and ``frozen`` are written only by the
    inference engine; extraction only appends to ``evidence``.
    """
    path: str
    role: SlotRole
    type_text: str
    name: str = ''
    typedef: str | None = None
    nested: Signature | None = None
    state: NullabilityState = NullabilityState.UNKNOWN
    evidence: list[Evidence] = field(default_factory=list)
    confidence: Confidence = Confidence.LOW
    flags: list[SlotFlag] = field(default_factory=list)
    frozen: bool = False

    @property
    def phase(self) -> int:
        return self.role.phase

    def add_evidence(self, evidence: Evidence) -> bool:
        """Append evidence unless an identical observation is already recorded."""
        if evidence in self.evidence:
            return False
        self.evidence.append(evidence)
        return True

    def iter_slots(self) -> Iterator[Slot]:
        yield self
        if self.nested:
            yield from self.nested.iter_slots()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        nested = data.get('nested')
        return cls(
            path=data['path'],
            role=SlotRole(data['role']),
            type_text=data.get('type', ''),
            name=data.get('name', ''),
            typedef=data.get('typedef'),
            nested=Signature.from_dict(nested) if nested else None,
            state=NullabilityState(data.get('state', 'unknown')),
            evidence=[Evidence.from_dict(e) for e in data.get('evidence', [])],
            confidence=Confidence(data.get('confidence', 'low')),
            flags=[SlotFlag(f) for f in data.get('flags', [])],
            frozen=data.get('frozen', False),
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            'path': self.path,
            'role': self.role.value,
            'type': self.type_text,
        }
        if self.name:
            result['name'] = self.name
        if self.typedef:
            result['typedef'] = self.typedef
        result['state'] = self.state.value
        result['confidence'] = self.confidence.value
        if self.flags:
            result['flags'] = [f.value for f in self.flags]
        result['frozen'] = self.frozen
        result['evidence'] = [e.to_dict() for e in self.evidence]
        if self.nested:
            result['nested'] = self.nested.to_dict()
        return result


@dataclass
class Signature:
    """
    Declared signature of a method, property, or block.

    ``slots`` holds only annotateable positions, in declaration order (return
    first); ``return_type``, ``params`` and ``attributes`` keep the full
    declaration so the annotator can render it unchanged.
    """
    return_type: str = 'void'
    params: list[ParamDecl] = field(default_factory=list)
    attributes: list[str] = field(default_factory=list)
    slots: list[Slot] = field(default_factory=list)

    @classmethod
    def from_declaration(
            cls,
            decl: dict[str, Any],
            kind: SymbolKind,
            parent: str = '',
            depth: int = 1,
            max_depth: int = 3
    ) -> Self:
        """
        Build a signature from a symbol ledger declaration.

        Args:
            decl: Declaration dict ('returns', 'params', 'type', 'attributes')
            kind: Kind of the owning symbol
            parent: Slot path of the enclosing block parameter ('' at top level)
            depth: Current block nesting depth
            max_depth: Nested block signatures deeper than this are not built

        Returns:
            Signature with one slot per annotateable position
        """
        nested_level = bool(parent) or kind is SymbolKind.BLOCK_TYPE

        if kind is SymbolKind.PROPERTY:
            type_text = decl.get('type', 'id')
            signature = cls(return_type=type_text, attributes=list(decl.get('attributes', [])))
            if is_annotateable(type_text):
                signature.slots.append(Slot(path='return', role=SlotRole.RETURN, type_text=type_text,
                                            name=decl.get('name', '')))
            return signature

        returns = decl.get('returns') or {}
        return_type = returns.get('type', 'void') if isinstance(returns, dict) else str(returns)
        signature = cls(return_type=return_type)

        if is_annotateable(return_type):
            signature.slots.append(Slot(path=return_path(parent), role=SlotRole.RETURN, type_text=return_type))

        for index, raw in enumerate(decl.get('params') or []):
            param = ParamDecl.from_dict(raw)
            signature.params.append(param)
            block_decl = raw.get('block')
            # Block typedef names carry no '*' but are still pointers
            is_block = is_block_type(param.type_text) or block_decl is not None or param.typedef is not None
            if not (is_block or is_annotateable(param.type_text)):
                continue

            path = param_path(index, parent)
            if nested_level:
                role = SlotRole.BLOCK_PARAMETER
            elif is_block:
                role = SlotRole.BLOCK_ITSELF
            else:
                role = SlotRole.PARAMETER

            slot = Slot(path=path, role=role, type_text=param.type_text, name=param.name, typedef=param.typedef)
            if block_decl is not None and depth < max_depth:
                slot.nested = cls.from_declaration(
                    block_decl, SymbolKind.BLOCK_TYPE, parent=path, depth=depth + 1, max_depth=max_depth
                )
            signature.slots.append(slot)

        return signature

    def iter_slots(self) -> Iterator[Slot]:
        """All slots, depth-first, nested block slots after their owner."""
        for slot in self.slots:
            yield from slot.iter_slots()

    def find(self, path: str) -> Slot | None:
        for slot in self.iter_slots():
            if slot.path == path:
                return slot
        return None

    def param_slot(self, index: int) -> Slot | None:
        for slot in self.slots:
            if top_level_index(slot.path) == index and '.' not in slot.path:
                return slot
        return None

    def param_index(self, name: str) -> int | None:
        for index, param in enumerate(self.params):
            if param.name == name:
                return index
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            return_type=data.get('return_type', 'void'),
            params=[ParamDecl.from_dict(p) for p in data.get('params', [])],
            attributes=list(data.get('attributes', [])),
            slots=[Slot.from_dict(s) for s in data.get('slots', [])],
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            'return_type': self.return_type,
            'params': [p.to_dict() for p in self.params],
        }
        if self.attributes:
            result['attributes'] = list(self.attributes)
        result['slots'] = [s.to_dict() for s in self.slots]
        return result


# =============================================================================
# Symbols and call sites
# =============================================================================

@dataclass(frozen=True)
class Symbol:
    """A method, property, or block type."""
    name: str
    owner: str
    kind: SymbolKind
    unit: str = ''

    @property
    def qualified_name(self) -> str:
        return f'{self.owner}.{self.name}' if self.owner else self.name

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            name=data['name'],
            owner=data.get('owner', ''),
            kind=SymbolKind(data.get('kind', 'method')),
            unit=data.get('unit', ''),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            'name': self.name,
            'owner': self.owner,
            'kind': self.kind.value,
            'unit': self.unit,
        }


@dataclass(frozen=True)
class ArgHint:
    """Per-argument nullability hint at a call expression."""
    kind: HintKind
    ref: SlotRef | None = None
    detail: str = ''

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        ref = data.get('ref')
        return cls(kind=HintKind(data['kind']), ref=SlotRef.parse(ref) if ref else None,
                   detail=data.get('detail', ''))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {'kind': self.kind.value}
        if self.ref:
            result['ref'] = str(self.ref)
        if self.detail:
            result['detail'] = self.detail
        return result


def make_call_site_id(caller: str, callee: str, line: int, ordinal: int) -> str:
    key = f"{caller}→{callee}→{line}→{ordinal}"
    return 'CS_' + hashlib.sha256(key.encode()).hexdigest()[:12].upper()


@dataclass(frozen=True)
class CallSite:
    """Directed call edge caller -> callee with per-argument hints."""
    id: str
    caller: str
    callee: str
    line: int
    args: tuple[ArgHint, ...] = ()

    def hint_for(self, index: int) -> ArgHint | None:
        return self.args[index] if index < len(self.args) else None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            id=data['id'],
            caller=data['caller'],
            callee=data['callee'],
            line=data.get('line', 0),
            args=tuple(ArgHint.from_dict(a) for a in data.get('args', [])),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'caller': self.caller,
            'callee': self.callee,
            'line': self.line,
            'args': [a.to_dict() for a in self.args],
        }


@dataclass(frozen=True)
class KnowledgeFact:
    """Authoritative nullability of (symbol, slot path)."""
    symbol: str
    path: str
    state: NullabilityState
    source: str = 'sdk'
    origin: str = ''


@dataclass
class SymbolFacts:
    """Everything extraction learned about one symbol."""
    symbol: Symbol
    signature: Signature
    call_sites: list[CallSite] = field(default_factory=list)
    has_body: bool = False

    @property
    def qualified_name(self) -> str:
        return self.symbol.qualified_name

    def ref(self, path: str) -> SlotRef:
        return SlotRef(self.symbol.qualified_name, path)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            symbol=Symbol.from_dict(data['symbol']),
            signature=Signature.from_dict(data.get('signature', {})),
            call_sites=[CallSite.from_dict(c) for c in data.get('call_sites', [])],
            has_body=data.get('has_body', False),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            'symbol': self.symbol.to_dict(),
            'has_body': self.has_body,
            'signature': self.signature.to_dict(),
            'call_sites': [c.to_dict() for c in self.call_sites],
        }
