"""
Configuration Loader (``governance_config.loader``).

Responsibility
--------------
Loads the packaged defaults, an optional deployment YAML file, and
``GOVERNANCE_*`` environment overrides, and parses the merged result into
a frozen ``GovernanceSettings``.  Internal tooling: runtime callers use
``governance_config.get_active_settings()``.

Failure modes
-------------
* Missing override file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown setting or non-integer value  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Mapping

import yaml

from governance_config.schema import SETTING_NAMES, GovernanceSettings

DEFAULTS_FILE = Path(__file__).parent / "defaults.yaml"
CONFIG_FILE_ENV = "GOVERNANCE_CONFIG_FILE"
ENV_PREFIX = "GOVERNANCE_"

_STRING_SETTINGS = frozenset({"database_url"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def flatten_sections(data: Mapping[str, Any]) -> dict[str, Any]:
    """
    Flatten one level of grouping sections into setting names.

    Top-level keys that are settings are taken as-is; mapping values are
    treated as sections whose keys are settings.
    """
    flat: dict[str, Any] = {}
    for key, value in data.items():
        if key in SETTING_NAMES:
            flat[key] = value
        elif isinstance(value, Mapping):
            for inner_key, inner_value in value.items():
                if inner_key not in SETTING_NAMES:
                    raise ValueError(f"Unknown setting {key}.{inner_key}")
                flat[inner_key] = inner_value
        else:
            raise ValueError(f"Unknown setting {key}")
    return flat


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Settings named by ``GOVERNANCE_<SETTING>`` variables."""
    overrides: dict[str, Any] = {}
    for name in SETTING_NAMES:
        raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue
        if name in _STRING_SETTINGS:
            overrides[name] = raw or None
            continue
        try:
            overrides[name] = int(raw)
        except ValueError:
            raise ValueError(f"{ENV_PREFIX}{name.upper()} must be an integer, got {raw!r}")
    return overrides


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def parse_settings(data: dict[str, Any]) -> GovernanceSettings:
    """Build GovernanceSettings from a flat mapping, stamping its checksum."""
    unknown = set(data) - set(SETTING_NAMES)
    if unknown:
        raise ValueError(f"Unknown settings: {sorted(unknown)}")
    return GovernanceSettings(**data, checksum=compute_checksum(data))


def load_settings(
    config_file: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> GovernanceSettings:
    """
    Merge defaults, the optional file, and environment overrides.

    Precedence (highest last): defaults.yaml, ``config_file`` (or the file
    named by GOVERNANCE_CONFIG_FILE), GOVERNANCE_* variables.
    """
    environ = environ if environ is not None else {}
    merged = flatten_sections(load_yaml_file(DEFAULTS_FILE))

    path = config_file
    if path is None and environ.get(CONFIG_FILE_ENV):
        path = Path(environ[CONFIG_FILE_ENV])
    if path is not None:
        merged.update(flatten_sections(load_yaml_file(path)))

    merged.update(env_overrides(environ))
    return parse_settings(merged)
