"""
Signature registry: one entry per symbol for the lifetime of a run.

Registering a symbol that is already known merges the new evidence and call
sites into the existing entry (a header declaration and its implementation
are the usual pair), so entries stay unique per qualified name.
"""

from __future__ import annotations

from typing import Any, Iterator

from typing_extensions import Self

from nullability_inference.shared.models import (
    CallSite,
    Signature,
    Slot,
    SlotRef,
    SymbolFacts,
)


def _merge_slot(existing: Slot, incoming: Slot) -> int:
    """Merge evidence and nested slots of ``incoming`` into ``existing``; returns evidence added."""
    added = sum(1 for e in incoming.evidence if existing.add_evidence(e))
    if existing.typedef is None and incoming.typedef:
        existing.typedef = incoming.typedef
    if incoming.nested:
        if existing.nested is None:
            existing.nested = incoming.nested
            added += sum(len(s.evidence) for s in incoming.nested.iter_slots())
        else:
            added += _merge_signature(existing.nested, incoming.nested)
    return added


def _merge_signature(existing: Signature, incoming: Signature) -> int:
    added = 0
    by_path = {slot.path: slot for slot in existing.slots}
    for slot in incoming.slots:
        if slot.path in by_path:
            added += _merge_slot(by_path[slot.path], slot)
        else:
            if slot.path.endswith('return'):
                existing.return_type = incoming.return_type
            existing.slots.append(slot)
            added += sum(len(s.evidence) for s in slot.iter_slots())
    if not existing.params and incoming.params:
        existing.params = list(incoming.params)
    if not existing.attributes and incoming.attributes:
        existing.attributes = list(incoming.attributes)
    return added


class SignatureRegistry:
    """Idempotent in-memory store of SymbolFacts keyed by qualified name."""

    def __init__(self):
        self._entries: dict[str, SymbolFacts] = {}

    def register(self, facts: SymbolFacts) -> SymbolFacts:
        """Insert or merge; returns the stored entry."""
        name = facts.qualified_name
        existing = self._entries.get(name)
        if existing is None:
            self._entries[name] = facts
            return facts

        _merge_signature(existing.signature, facts.signature)
        known_ids = {cs.id for cs in existing.call_sites}
        for call_site in facts.call_sites:
            if call_site.id not in known_ids:
                existing.call_sites.append(call_site)
                known_ids.add(call_site.id)
        existing.has_body = existing.has_body or facts.has_body
        return existing

    def __contains__(self, name: str) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[SymbolFacts]:
        """Entries ordered by qualified name."""
        for name in sorted(self._entries):
            yield self._entries[name]

    def get(self, name: str) -> SymbolFacts | None:
        return self._entries.get(name)

    def slot(self, ref: SlotRef) -> Slot | None:
        entry = self._entries.get(ref.symbol)
        return entry.signature.find(ref.path) if entry else None

    def iter_slots(self) -> Iterator[tuple[SlotRef, Slot]]:
        for entry in self:
            for slot in entry.signature.iter_slots():
                yield entry.ref(slot.path), slot

    def call_sites(self) -> Iterator[CallSite]:
        for entry in self:
            yield from entry.call_sites

    def stats(self) -> dict[str, int]:
        slots = list(self.iter_slots())
        return {
            'symbols': len(self._entries),
            'symbols_with_body': sum(1 for e in self._entries.values() if e.has_body),
            'slots': len(slots),
            'evidence': sum(len(slot.evidence) for _, slot in slots),
            'call_sites': sum(len(e.call_sites) for e in self._entries.values()),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        registry = cls()
        for entry in data.get('symbols', []):
            registry.register(SymbolFacts.from_dict(entry))
        return registry

    def to_dict(self) -> dict[str, Any]:
        return {
            'symbols': [entry.to_dict() for entry in self],
            'stats': self.stats(),
        }
