"""
Configuration loader (``stock_config.loader``).

Responsibility
--------------
Loads a YAML configuration file and parses it into a frozen ``LedgerConfig``.
Internal tooling: runtime callers go through
``stock_config.get_active_config()``.

Invariants enforced
-------------------
* Unknown keys and wrongly typed values raise ``ValueError``; nothing is
  silently ignored.
* ``compute_checksum`` is deterministic: the same data always produces the
  same SHA-256.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown key / bad type / out-of-range value  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from stock_config.schema import LedgerConfig


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: configuration must be a mapping, got {type(data).__name__}")
    return data


def parse_config(data: dict[str, Any]) -> LedgerConfig:
    """Validate a raw mapping and build a LedgerConfig from it."""
    field_types = LedgerConfig.field_types()

    unknown = sorted(set(data) - set(field_types))
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")

    values: dict[str, Any] = {}
    for key, value in data.items():
        expected = field_types[key]
        # bool is a subclass of int; reject it where an int is expected.
        if not isinstance(value, expected) or (expected is int and isinstance(value, bool)):
            raise ValueError(
                f"Configuration key '{key}' must be {expected.__name__}, "
                f"got {type(value).__name__}"
            )
        values[key] = value

    config = LedgerConfig(**values)
    _validate_ranges(config)
    return replace(config, checksum=compute_checksum(data))


def _validate_ranges(config: LedgerConfig) -> None:
    if not 0 <= config.quantity_decimal_places <= 9:
        raise ValueError("quantity_decimal_places must be between 0 and 9")
    if config.transfer_number_width < 1:
        raise ValueError("transfer_number_width must be positive")
    if not config.transfer_number_prefix:
        raise ValueError("transfer_number_prefix must not be empty")
    if not config.transfer_code_prefix:
        raise ValueError("transfer_code_prefix must not be empty")
    if config.version < 1:
        raise ValueError("version must be positive")


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
