"""
stock_config -- single public entrypoint for stock ledger configuration.

Responsibility:
    ``get_active_config()`` is the only way to obtain configuration at
    runtime.  No other component reads configuration files or environment
    variables.

Architecture position:
    Sits above ``stock_kernel``.  The kernel MUST NEVER import from
    ``stock_config``; ``stock_config.bridges`` translates a LedgerConfig into
    the kernel's LedgerPolicy.

Lookup order:
    1. the ``path`` argument
    2. the ``STOCK_LEDGER_CONFIG`` environment variable
    3. the packaged ``defaults.yaml``

Audit relevance:
    Every successful call emits a ``STOCK_CONFIG_TRACE`` log entry with the
    config id, version, checksum and source path.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from stock_config.loader import compute_checksum, load_yaml_file, parse_config
from stock_config.schema import LedgerConfig

_logger = logging.getLogger("stock_kernel.config")

CONFIG_ENV_VAR = "STOCK_LEDGER_CONFIG"

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def _resolve_path(path: Path | str | None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return _DEFAULT_CONFIG_PATH


def get_active_config(path: Path | str | None = None) -> LedgerConfig:
    """
    The ONLY public configuration entrypoint.

    Raises:
        FileNotFoundError: The resolved file does not exist.
        ValueError: Unknown keys, wrong types or out-of-range values.
    """
    source = _resolve_path(path)
    config = parse_config(load_yaml_file(source))

    _logger.info(
        "STOCK_CONFIG_TRACE",
        extra={
            "trace_type": "STOCK_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "source": str(source),
            "allow_negative_on_sale": config.allow_negative_on_sale,
        },
    )
    return config


__all__ = [
    "CONFIG_ENV_VAR",
    "LedgerConfig",
    "compute_checksum",
    "get_active_config",
]
