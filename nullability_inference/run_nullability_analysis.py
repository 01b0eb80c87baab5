#!/usr/bin/env python3
"""
Nullability Inference Pipeline Driver

Runs the complete nullability inference pipeline:
  Stage 1: Extract per-slot evidence and call sites from symbol ledgers
  Stage 2: Build the call graph
  Stage 3: Infer and freeze nullability for every slot
  Stage 4: Render annotated declarations and the review list

REQUIRED:
  --target-root   Root directory of the project to analyze

EXAMPLES:
  # Run full pipeline
  python -m nullability_inference.run_nullability_analysis --target-root /path/to/project

  # Run from stage 3 onward (facts and call graph already built)
  python -m nullability_inference.run_nullability_analysis --target-root /path/to/project --start-from 3

  # Run only stage 1
  python -m nullability_inference.run_nullability_analysis --target-root /path/to/project --only 1

  # Clean outputs and run fresh
  python -m nullability_inference.run_nullability_analysis --target-root /path/to/project --clean

  # Dry run - print commands without executing
  python -m nullability_inference.run_nullability_analysis --target-root /path/to/project --dry-run
"""

from __future__ import annotations

import argparse
import subprocess
import sys
from pathlib import Path

from nullability_inference import config

ALL_STAGE_NUMS = [1, 2, 3, 4]

STAGE_MODULES = {
    1: 'nullability_inference.stages.stage1_extract_facts',
    2: 'nullability_inference.stages.stage2_build_call_graph',
    3: 'nullability_inference.stages.stage3_infer_nullability',
    4: 'nullability_inference.stages.stage4_annotate',
}

STAGE_NAMES = {
    1: 'Extract Facts',
    2: 'Build Call Graph',
    3: 'Infer Nullability',
    4: 'Annotate Declarations',
}


def derive_paths(target_root: Path) -> dict[str, Path]:
    """Derive all pipeline paths from the target root and the shipped config."""
    config.set_target_root(target_root)
    return {
        'symbols_root': config.get_symbols_root(),
        'knowledge_root': config.get_knowledge_root(),
        'output_dir': config.get_output_dir(),
        **{f'stage{n}_output': config.get_stage_output(n) for n in ALL_STAGE_NUMS},
    }


def build_stage_cmd(stage_num: int, target_root: Path, paths: dict[str, Path], verbose: bool) -> list[str]:
    """Build the command for a given stage."""
    cmd = [sys.executable, '-m', STAGE_MODULES[stage_num], '--target-root', str(target_root)]

    if stage_num == 1:
        cmd += [
            '--symbols-root', str(paths['symbols_root']),
            '--output', str(paths['stage1_output']),
        ]
    elif stage_num == 2:
        cmd += [
            '--input', str(paths['stage1_output']),
            '--output', str(paths['stage2_output']),
        ]
    elif stage_num == 3:
        cmd += [
            '--facts', str(paths['stage1_output']),
            '--call-graph', str(paths['stage2_output']),
            '--knowledge-root', str(paths['knowledge_root']),
            '--output', str(paths['stage3_output']),
        ]
    elif stage_num == 4:
        cmd += [
            '--input', str(paths['stage3_output']),
            '--output', str(paths['stage4_output']),
        ]

    if verbose:
        cmd.append('-v')
        print(f"Running command: {' '.join(cmd)}")

    return cmd


def run_stage(stage_num: int, target_root: Path, paths: dict[str, Path],
              verbose: bool = False, dry_run: bool = False) -> int:
    if config.show_progress():
        print(f"\n{'=' * 70}")
        print(f"Stage {stage_num}: {STAGE_NAMES[stage_num]}")
        print(f"{'=' * 70}")

    cmd = build_stage_cmd(stage_num, target_root, paths, verbose)

    if dry_run:
        print(f"Would run: {' '.join(cmd)}")
        return 0

    result = subprocess.run(cmd)

    if result.returncode != 0:
        print(f"\nERROR: Stage {stage_num} failed with exit code {result.returncode}",
              file=sys.stderr)
        return result.returncode

    return 0


def clean_outputs(paths: dict[str, Path], verbose: bool = False) -> None:
    """Remove all pipeline output files."""
    output_dir = paths['output_dir']

    if not output_dir.exists():
        if verbose:
            print(f"Output directory doesn't exist: {output_dir}")
        return

    print(f"\nCleaning outputs in: {output_dir}")

    for stage_num in ALL_STAGE_NUMS:
        p = paths[f'stage{stage_num}_output']
        if p.exists():
            if verbose:
                print(f"  Removing: {p}")
            p.unlink()

    print("✓ Outputs cleaned")


def validate_prerequisites(paths: dict[str, Path], verbose: bool = False) -> bool:
    errors = []

    if not paths['symbols_root'].exists():
        errors.append(f"Symbols root not found: {paths['symbols_root']}")
    elif verbose:
        print(f"✓ Symbols root exists: {paths['symbols_root']}")

    # Project corpora are optional; the built-in corpus still applies
    if verbose:
        state = 'exists' if paths['knowledge_root'].exists() else 'missing (built-in facts only)'
        print(f"  Knowledge root {state}: {paths['knowledge_root']}")

    for error in config.validate_config():
        errors.append(f"Config: {error}")

    if errors:
        print("\nERROR: Missing prerequisites:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return False

    return True


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    ap.add_argument(
        '--target-root',
        type=Path,
        required=True,
        help='Root directory of the project to analyze'
    )
    ap.add_argument(
        '--start-from',
        type=int,
        choices=ALL_STAGE_NUMS,
        help='Start from specific stage (runs that stage and all following)'
    )
    ap.add_argument(
        '--stop-at',
        type=int,
        choices=ALL_STAGE_NUMS,
        help='Stop at specific stage (inclusive)'
    )
    ap.add_argument(
        '--only',
        type=int,
        choices=ALL_STAGE_NUMS,
        help='Run only a specific stage'
    )
    ap.add_argument(
        '--clean',
        action='store_true',
        help='Clean output files before running'
    )
    ap.add_argument(
        '--dry-run',
        action='store_true',
        help='Print commands without executing'
    )
    ap.add_argument(
        '--skip-validation',
        action='store_true',
        help='Skip prerequisite validation'
    )
    ap.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Verbose output'
    )

    args = ap.parse_args(argv)

    target_root = args.target_root.resolve()
    paths = derive_paths(target_root)

    verbose = args.verbose or config.get_verbosity() >= 2

    if verbose:
        config.print_config_summary()

    if not args.skip_validation:
        if not validate_prerequisites(paths, verbose=verbose):
            return 1

    if args.clean:
        clean_outputs(paths, verbose=verbose)

    if args.only:
        stages_to_run = [args.only]
    else:
        start = args.start_from or ALL_STAGE_NUMS[0]
        stop = args.stop_at or ALL_STAGE_NUMS[-1]
        stages_to_run = list(range(start, stop + 1))

    if verbose:
        print(f"\nRunning stages: {stages_to_run}")

    config.ensure_output_dir()

    stage_inputs = {
        2: [paths['stage1_output']],
        3: [paths['stage1_output'], paths['stage2_output']],
        4: [paths['stage3_output']],
    }

    for stage_num in stages_to_run:
        # Earlier stages in this run produce the inputs of later ones
        produced_here = stage_num != stages_to_run[0]
        missing = [p for p in stage_inputs.get(stage_num, []) if not p.exists()]
        if missing and not produced_here and not args.dry_run:
            print(f"\nERROR: Stage {stage_num} input not found: {missing[0]}", file=sys.stderr)
            print("You may need to run earlier stages first.", file=sys.stderr)
            return 1

        exit_code = run_stage(stage_num, target_root, paths,
                              verbose=verbose, dry_run=args.dry_run)
        if exit_code != 0:
            return exit_code

    print(f"\n{'=' * 70}")
    print("✓ Pipeline completed successfully")
    print(f"{'=' * 70}")

    if not args.dry_run:
        print(f"\nFinal output: {paths[f'stage{max(stages_to_run)}_output']}")

    return 0


if __name__ == '__main__':
    sys.exit(main())
