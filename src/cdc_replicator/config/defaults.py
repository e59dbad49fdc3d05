"""Packaged defaults and the deep merge that layers user config over them."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from cdc_replicator.config.models import ReplicatorConfig

DEFAULTS_DIR = Path(__file__).parent / "defaults"


def load_defaults(name: str = "replicator") -> dict[str, Any]:
    """Read ``defaults/<name>.yaml`` shipped inside the package."""
    path = DEFAULTS_DIR / f"{name}.yaml"
    if not path.is_file():
        msg = f"Defaults file '{name}' not found at {path}"
        raise FileNotFoundError(msg)
    return yaml.safe_load(path.read_text()) or {}


def merge_configs(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Return *base* with *overrides* applied; nested mappings merge key by key.

    Lists and scalars in *overrides* replace the base value outright.
    Neither input is mutated.
    """
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = merge_configs(current, value)
        merged[key] = value
    return merged


def build_replicator_config(
    overrides: dict[str, Any] | None = None,
    *,
    defaults: str = "replicator",
) -> ReplicatorConfig:
    """Validate the packaged defaults with *overrides* merged on top."""
    return ReplicatorConfig.model_validate(
        merge_configs(load_defaults(defaults), overrides or {})
    )
