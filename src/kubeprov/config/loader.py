# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeprov/config/loader.py

import logging
import os
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..errors import ClusterDefinitionError
from .models import ClusterDefinition

log = logging.getLogger("kubeprov")


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _find_secrets_file(definition_path: Path) -> Path | None:
    """
    Locate secrets.yaml using this priority:

    1. KUBEPROV_SECRETS_FILE environment variable (explicit override)
    2. secrets.yaml in the same directory as the cluster definition
    """
    env = os.environ.get("KUBEPROV_SECRETS_FILE")
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("KUBEPROV_SECRETS_FILE=%s does not exist, skipping", env)
        return None

    p = definition_path.parent / "secrets.yaml"
    if p.is_file():
        return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    data = yaml.safe_load(expanded) or {}
    if not isinstance(data, dict):
        raise ClusterDefinitionError(f"{path} must contain a YAML mapping")
    return data


def _first_error_field(exc: ValidationError) -> str | None:
    errors = exc.errors()
    if not errors:
        return None
    loc = errors[0].get("loc") or ()
    return ".".join(str(p) for p in loc) or None


def parse_definition(data: dict) -> ClusterDefinition:
    """Validate a raw mapping, converting pydantic errors to ClusterDefinitionError."""
    try:
        return ClusterDefinition.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        raise ClusterDefinitionError(first.get("msg", str(e)), field=_first_error_field(e)) from e


def load_definition(path: str | Path) -> ClusterDefinition:
    """
    Load and validate a cluster definition YAML file.

    Secrets (SSH passwords, cloud API tokens) may live in a separate
    ``secrets.yaml`` whose structure mirrors the definition; it is deep-merged
    before validation. ``${ENV_VAR}`` placeholders in either file are expanded
    at load time.
    """
    path = Path(path)
    if not path.is_file():
        raise ClusterDefinitionError(f"cluster definition not found: {path}")

    data = _load_yaml(path)

    secrets_path = _find_secrets_file(path)
    if secrets_path:
        log.debug("Merging secrets from %s", secrets_path)
        _deep_merge(data, _load_yaml(secrets_path))
    else:
        log.debug("No secrets.yaml found, proceeding without secrets merge")

    return parse_definition(data)
