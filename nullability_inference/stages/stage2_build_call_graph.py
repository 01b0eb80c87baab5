#!/usr/bin/env python3
"""
Stage 2: Build Call Graph

Input: Stage 1 output (signature registry with call sites)
Output: Call graph of every observed call site

Nodes are symbol qualified names; each call expression becomes one edge keyed
by its call site id. Callees with no registered symbol (SDK methods, code
outside the analyzed units) become external nodes whose slots are answered by
the knowledge base during inference. Recursive groups are reported but not
broken; the inference engine iterates them to a fixed point.

DEFAULT BEHAVIOR (no args):
  - Reads from config.get_stage_output(1)
  - Outputs to config.get_stage_output(2)
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from nullability_inference import config
from nullability_inference.shared.call_graph import build_call_graph
from nullability_inference.shared.registry import SignatureRegistry
from nullability_inference.shared.yaml_utils import yaml_dump, yaml_load


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
        help=f'Stage 1 output (default: {config.get_stage_output(1)})'
    )
    ap.add_argument(
        '--output',
        type=Path,
        help=f'Output file (default: {config.get_stage_output(2)})'
    )
    ap.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Verbose output'
    )

    args = ap.parse_args(argv)

    input_path = args.input or config.get_stage_output(1)
    output_path = args.output or config.get_stage_output(2)

    if not input_path.exists():
        print(f"ERROR: Input file not found: {input_path}", file=sys.stderr)
        return 1

    if args.verbose:
        print(f"Loading facts from {input_path}")

    data = yaml_load(input_path) or {}
    registry = SignatureRegistry.from_dict(data)
    if len(registry) == 0:
        print(f"ERROR: No symbols in {input_path}", file=sys.stderr)
        return 1

    if args.verbose:
        print(f"  {len(registry)} symbol(s)")
        print("\nBuilding call graph...")

    graph = build_call_graph(registry, verbose=args.verbose)

    if args.verbose:
        for group in graph.recursive_groups():
            print(f"  Recursive group: {', '.join(group)}")

    yaml_dump(graph.to_dict(), output_path)

    stats = graph.stats()
    print(f"\n✓ Call graph complete → {output_path}")
    print(f"  Nodes:             {stats['total_nodes']} ({stats['external_nodes']} external)")
    print(f"  Edges:             {stats['total_edges']}")
    print(f"  Recursive groups:  {stats['recursive_groups']}")
    print(f"  Condensation depth: {stats['condensation_depth']}")

    return 0


if __name__ == '__main__':
    sys.exit(main())
