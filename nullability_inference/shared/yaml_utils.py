"""YAML helpers shared by all stages."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from nullability_inference import config


def yaml_load(path: Path) -> Any:
    with open(path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f)


def yaml_load_all(path: Path) -> list[Any]:
    with open(path, 'r', encoding='utf-8') as f:
        return [doc for doc in yaml.safe_load_all(f) if doc]


def yaml_dump(data: Any, path: Path) -> None:
    """Write ``data`` using the configured output format, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        yaml.dump(
            data,
            f,
            default_flow_style=False,
            allow_unicode=True,
            sort_keys=config.get_yaml_sort_keys(),
            width=config.get_yaml_width(),
            indent=config.get_yaml_indent(),
        )
