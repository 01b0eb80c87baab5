"""
Call graph over registered symbols.

Nodes are symbol qualified names; edges are CallSites keyed by call site id in
a networkx MultiDiGraph, so one caller can reach one callee through many call
expressions. Callees that are not registered are materialized as external
nodes; their slots are answered by the knowledge base only.
"""

from __future__ import annotations

from typing import Any

import networkx as nx
from typing_extensions import Self

from nullability_inference.shared.models import CallSite
from nullability_inference.shared.registry import SignatureRegistry


class CallGraph:
    """Directed multigraph of call sites with successor/predecessor queries."""

    def __init__(self):
        self.graph = nx.MultiDiGraph()

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    def add_symbol(self, name: str, kind: str = 'method', external: bool = False) -> None:
        if self.graph.has_node(name):
            # A real symbol replaces an external placeholder, never the reverse
            if not external:
                self.graph.nodes[name].update(kind=kind, external=False)
            return
        self.graph.add_node(name, kind=kind, external=external)

    def _ensure_external(self, name: str) -> None:
        """Materialize an unregistered callee. Idempotent."""
        if not self.graph.has_node(name):
            self.graph.add_node(name, kind='unknown', external=True)

    def add_call_site(self, call_site: CallSite) -> None:
        self._ensure_external(call_site.caller)
        self._ensure_external(call_site.callee)
        if self.graph.has_edge(call_site.caller, call_site.callee, key=call_site.id):
            return
        self.graph.add_edge(call_site.caller, call_site.callee, key=call_site.id, call_site=call_site)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def __contains__(self, name: str) -> bool:
        return self.graph.has_node(name)

    def is_external(self, name: str) -> bool:
        return bool(self.graph.nodes[name].get('external')) if self.graph.has_node(name) else True

    def successors(self, name: str) -> list[str]:
        """Symbols that ``name`` calls."""
        if not self.graph.has_node(name):
            return []
        return sorted(set(self.graph.successors(name)))

    def predecessors(self, name: str) -> list[str]:
        """Symbols that call ``name``."""
        if not self.graph.has_node(name):
            return []
        return sorted(set(self.graph.predecessors(name)))

    def call_sites_into(self, name: str) -> list[CallSite]:
        """Every observed call site targeting ``name``, ordered by id."""
        if not self.graph.has_node(name):
            return []
        sites = [data['call_site'] for _, _, data in self.graph.in_edges(name, data=True)]
        return sorted(sites, key=lambda cs: cs.id)

    def call_sites_from(self, name: str) -> list[CallSite]:
        if not self.graph.has_node(name):
            return []
        sites = [data['call_site'] for _, _, data in self.graph.out_edges(name, data=True)]
        return sorted(sites, key=lambda cs: cs.id)

    def recursive_groups(self) -> list[list[str]]:
        """Strongly connected components that contain a cycle (mutual or self recursion)."""
        groups = []
        for component in nx.strongly_connected_components(self.graph):
            members = sorted(component)
            if len(members) > 1 or self.graph.has_edge(members[0], members[0]):
                groups.append(members)
        return sorted(groups)

    def condensation_depth(self) -> int:
        """Number of nodes on the longest path through the DAG of strongly connected components."""
        if self.graph.number_of_nodes() == 0:
            return 0
        dag = nx.condensation(nx.DiGraph(self.graph))
        return nx.dag_longest_path_length(dag) + 1

    def stats(self) -> dict[str, Any]:
        nodes = list(self.graph.nodes(data=True))
        return {
            'total_nodes': len(nodes),
            'external_nodes': sum(1 for _, data in nodes if data.get('external')),
            'total_edges': self.graph.number_of_edges(),
            'recursive_groups': len(self.recursive_groups()),
            'condensation_depth': self.condensation_depth(),
        }

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            'stage': 'call-graph',
            'nodes': [
                {'id': name, 'kind': data.get('kind', 'unknown'), 'external': bool(data.get('external'))}
                for name, data in sorted(self.graph.nodes(data=True))
            ],
            'edges': [
                data['call_site'].to_dict()
                for _, _, data in sorted(self.graph.edges(data=True), key=lambda e: e[2]['call_site'].id)
            ],
            'recursive_groups': self.recursive_groups(),
            'stats': self.stats(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        graph = cls()
        for node in data.get('nodes', []):
            graph.add_symbol(node['id'], kind=node.get('kind', 'unknown'), external=node.get('external', False))
        for edge in data.get('edges', []):
            graph.add_call_site(CallSite.from_dict(edge))
        return graph


def build_call_graph(registry: SignatureRegistry, verbose: bool = False) -> CallGraph:
    """Build the call graph from every registered symbol's call sites."""
    graph = CallGraph()

    for entry in registry:
        graph.add_symbol(entry.qualified_name, kind=entry.symbol.kind.value)

    for call_site in registry.call_sites():
        graph.add_call_site(call_site)

    if verbose:
        stats = graph.stats()
        print(f"  Nodes: {stats['total_nodes']} ({stats['external_nodes']} external)")
        print(f"  Edges: {stats['total_edges']}")
        print(f"  Recursive groups: {stats['recursive_groups']}")

    return graph
