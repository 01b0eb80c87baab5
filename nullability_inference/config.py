"""
Configuration loader for the nullability inference pipeline.

Loads settings from nullability_config.toml (shipped with the tool) and provides
convenient access to all configuration values with proper path resolution.
"""

from __future__ import annotations

import argparse
import tomllib
from pathlib import Path
from typing import Any

# ============================================================================
# Configuration Loading
# ============================================================================

_MODULE_DIR = Path(__file__).parent
_CONFIG_PATH = _MODULE_DIR / "nullability_config.toml"


def load_config(config_path: Path | None = None) -> dict[str, Any]:
    """
    Load configuration from TOML file.

    Args:
        config_path: Optional path to config file (default: nullability_config.toml in tool repo)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is invalid
    """
    path = config_path or _CONFIG_PATH

    if not path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {path}\n"
            f"Expected location: {_CONFIG_PATH}"
        )

    try:
        with path.open('rb') as f:
            config = tomllib.load(f)
        return config
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Failed to parse {path}: {e}") from e


# Load configuration on import
_CONFIG = load_config()


def use_config_file(config_path: Path) -> None:
    """Replace the active configuration with the contents of another TOML file."""
    global _CONFIG
    _CONFIG = load_config(config_path)


# ============================================================================
# Path Resolution
# ============================================================================

_TARGET_ROOT: Path | None = None


def set_target_root(path: Path | str | None) -> None:
    """
    Set the target project root for path resolution.

    Args:
        path: Path to target project root, or None to use CWD
    """
    global _TARGET_ROOT
    _TARGET_ROOT = Path(path).resolve() if path else None


def get_target_root() -> Path:
    """Get the current target root (or CWD if not set)."""
    return _TARGET_ROOT or Path.cwd()


def resolve_path(
        config_value: str,
        relative_to_target: bool = True,
        allow_absolute: bool = True
) -> Path:
    """
    Resolve a config path value.

    Resolution priority:
    1. If absolute path and allowed → use as-is
    2. If relative_to_target → target_root / config_value
    3. Otherwise → relative to tool repo (module directory)
    """
    path = Path(config_value)

    if allow_absolute and path.is_absolute():
        return path

    if relative_to_target:
        return get_target_root() / path

    return _MODULE_DIR / path


class StoreInConfig(argparse.Action):
    """
    Argparse action that stores the value and pushes it into this module.

    Usage:
        parser.add_argument('--target-root', type=Path, action=StoreInConfig,
                            config_obj=config, setter_method='set_target_root')
    """

    def __init__(self, option_strings, dest, config_obj=None, setter_method=None, **kwargs):
        self.config_obj = config_obj
        self.setter_method = setter_method
        super().__init__(option_strings, dest, **kwargs)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        if self.config_obj is not None and self.setter_method:
            getattr(self.config_obj, self.setter_method)(values)


# ============================================================================
# Path Configuration
# ============================================================================

def get_symbols_root() -> Path:
    """Get the root directory for symbol ledger discovery (relative to target project)."""
    return resolve_path(
        _CONFIG.get('paths', {}).get('symbols_root', 'dist/symbols'),
        relative_to_target=True
    )


def get_knowledge_root() -> Path:
    """Get the root directory for knowledge corpus discovery (relative to target project)."""
    return resolve_path(
        _CONFIG.get('paths', {}).get('knowledge_root', 'dist/knowledge'),
        relative_to_target=True
    )


def get_output_dir() -> Path:
    """Get the output directory for pipeline artifacts (relative to target project)."""
    return resolve_path(
        _CONFIG.get('paths', {}).get('output_dir', 'dist/nullability-output'),
        relative_to_target=True
    )


def get_builtin_knowledge_path() -> Path:
    """Get the Foundation fact corpus shipped with the tool."""
    return _MODULE_DIR / 'data' / 'foundation.knowledge.yaml'


# ============================================================================
# Stage Output Files
# ============================================================================

def get_stage_output(stage: int) -> Path:
    """
    Get the output file path for a given stage.

    Args:
        stage: Stage number (1-4)

    Returns:
        Full path to stage output file (in target project)
    """
    if stage < 1 or stage > 4:
        raise ValueError(f"Stage must be 1-4 (got {stage})")

    stages = _CONFIG.get('stages', {})
    filename = stages.get(f'stage{stage}_output', f'stage{stage}-output.yaml')

    return get_output_dir() / filename


# ============================================================================
# Analysis Configuration
# ============================================================================

def get_extraction_workers() -> int:
    """Get the thread count used for per-symbol fact extraction."""
    return _CONFIG.get('extraction', {}).get('workers', 4)


def get_max_block_depth() -> int:
    """Get the maximum nesting depth of block signatures."""
    return _CONFIG.get('extraction', {}).get('max_block_depth', 3)


def get_inference_workers() -> int:
    """Get the thread count used to evaluate symbols within one phase."""
    return _CONFIG.get('inference', {}).get('workers', 4)


def get_max_rounds() -> int:
    """Get the fixed-point iteration cap."""
    return _CONFIG.get('inference', {}).get('max_rounds', 32)


def use_builtin_knowledge() -> bool:
    """Check if the shipped Foundation corpus should be consulted."""
    return _CONFIG.get('inference', {}).get('use_builtin_knowledge', True)


def get_evidence_confidence() -> dict[str, float]:
    """Get confidence weights keyed by evidence source kind value."""
    return dict(_CONFIG.get('evidence_confidence', {}))


def get_extra_conventions() -> list[dict[str, Any]]:
    """Get default-convention rows declared in the config file."""
    return list(_CONFIG.get('conventions', []))


# ============================================================================
# Output Format Configuration
# ============================================================================

def get_yaml_width() -> int:
    """Get YAML line width."""
    return _CONFIG.get('output_format', {}).get('yaml_width', 100)


def get_yaml_indent() -> int:
    """Get YAML indentation."""
    return _CONFIG.get('output_format', {}).get('yaml_indent', 2)


def get_yaml_sort_keys() -> bool:
    """Check if YAML keys should be sorted."""
    return _CONFIG.get('output_format', {}).get('yaml_sort_keys', False)


# ============================================================================
# Logging Configuration
# ============================================================================

def get_verbosity() -> int:
    """Get verbosity level: 0 (quiet) | 1 (normal) | 2 (verbose)."""
    return _CONFIG.get('logging', {}).get('verbosity', 1)


def show_progress() -> bool:
    """Check if progress should be displayed."""
    return _CONFIG.get('logging', {}).get('show_progress', True)


# ============================================================================
# Utility Functions
# ============================================================================

def ensure_output_dir() -> None:
    """Ensure the pipeline output directory exists."""
    get_output_dir().mkdir(parents=True, exist_ok=True)


def validate_config() -> list[str]:
    """
    Validate configuration settings.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []

    if get_extraction_workers() <= 0:
        errors.append(f"extraction.workers must be > 0 (got {get_extraction_workers()})")

    if get_inference_workers() <= 0:
        errors.append(f"inference.workers must be > 0 (got {get_inference_workers()})")

    if get_max_rounds() <= 0:
        errors.append(f"inference.max_rounds must be > 0 (got {get_max_rounds()})")

    if get_max_block_depth() <= 0:
        errors.append(f"extraction.max_block_depth must be > 0 (got {get_max_block_depth()})")

    for kind, weight in get_evidence_confidence().items():
        if not 0.0 <= weight <= 1.0:
            errors.append(f"evidence_confidence.{kind} must be within [0, 1] (got {weight})")

    for row in get_extra_conventions():
        if row.get('state') not in {'nullable', 'nonnull', 'unspecified'}:
            errors.append(f"Invalid convention state in {row.get('name', '<unnamed>')}: {row.get('state')}")

    verbosity = get_verbosity()
    if verbosity not in {0, 1, 2}:
        errors.append(f"verbosity must be 0, 1, or 2 (got {verbosity})")

    if get_yaml_width() <= 0:
        errors.append(f"yaml_width must be > 0 (got {get_yaml_width()})")

    if get_yaml_indent() <= 0:
        errors.append(f"yaml_indent must be > 0 (got {get_yaml_indent()})")

    return errors


def print_config_summary() -> None:
    """Print a summary of current configuration."""
    print("Configuration Summary:")
    print(f"  Target root:      {get_target_root()}")
    print(f"  Symbols root:     {get_symbols_root()}")
    print(f"  Knowledge root:   {get_knowledge_root()}")
    print(f"  Output dir:       {get_output_dir()}")
    print(f"  Max rounds:       {get_max_rounds()}")
    for stage in (1, 2, 3, 4):
        print(f"  Stage {stage} output:   {get_stage_output(stage)}")
