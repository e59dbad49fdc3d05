"""Replicator config loading: YAML file, ``${VAR}`` expansion, defaults merge."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from cdc_replicator.config.defaults import build_replicator_config
from cdc_replicator.config.models import ReplicatorConfig

# ${NAME} or ${NAME:-fallback}; "\}" escapes a brace inside the fallback
_ENV_REF = re.compile(r"\$\{(?P<name>[^}:]+)(?::-(?P<fallback>(?:[^}\\]|\\.)*))?}")


def _expand(match: re.Match[str]) -> str:
    name = match["name"]
    if name in os.environ:
        return os.environ[name]
    fallback = match["fallback"]
    if fallback is None:
        msg = f"Environment variable '{name}' is not set and no default provided"
        raise ValueError(msg)
    return fallback.replace("\\}", "}")


def resolve_env_vars(data: Any) -> Any:
    """Expand environment references in every string of a parsed YAML tree."""
    match data:
        case str():
            return _ENV_REF.sub(_expand, data)
        case dict():
            return {key: resolve_env_vars(value) for key, value in data.items()}
        case list():
            return [resolve_env_vars(item) for item in data]
        case _:
            return data


def _parse_error(path: Path, exc: yaml.YAMLError) -> ValueError:
    where = ""
    mark = getattr(exc, "problem_mark", None)
    if mark is not None:
        where = f" at line {mark.line + 1}, column {mark.column + 1}"
    return ValueError(f"Failed to parse YAML in {path}{where}: {exc}")


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Parse *path* into a mapping with environment references expanded.

    An empty file yields ``{}``; a document whose top level is not a
    mapping is rejected with ``TypeError``.
    """
    path = Path(path)
    if not path.is_file():
        msg = f"Config file not found: {path}"
        raise FileNotFoundError(msg)

    try:
        document = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise _parse_error(path, exc) from exc

    if document is None:
        return {}
    if not isinstance(document, dict):
        kind = type(document).__name__
        msg = f"Expected a YAML mapping at top level in {path}, got {kind}"
        raise TypeError(msg)
    return resolve_env_vars(document)


def load_replicator_config(path: str | Path | None = None) -> ReplicatorConfig:
    """Build the replicator config, overlaying *path* on the packaged defaults."""
    overrides = {} if path is None else load_yaml(path)
    try:
        return build_replicator_config(overrides)
    except ValidationError as exc:
        origin = path if path is not None else "built-in defaults"
        msg = f"Invalid replicator config ({origin}):\n{exc}"
        raise ValueError(msg) from exc
