"""
clearing_config -- single public entrypoint for clearing configuration.

Responsibility:
    ``get_active_config()`` is the only way services obtain tolerances,
    approval roles, reservation lifetimes and the other operator-tunable
    parameters.  Nothing else reads configuration files or environment
    variables.

Architecture position:
    Configuration -- sits above ``clearing_kernel`` and ``clearing_engines``
    and below ``clearing_services``.  The kernel MUST NEVER import from
    ``clearing_config``.

Invariants enforced:
    - Single entrypoint: all runtime config flows through
      ``get_active_config()``.
    - Validation before use: a configuration that fails
      ``validate_config`` is never returned.
    - Deterministic checksum of the source document.

Failure modes:
    - ``FileNotFoundError`` -- the selected file does not exist.
    - ``ValueError`` / ``KeyError`` -- malformed or invalid configuration.

Audit relevance:
    Every successful call emits a ``CLEARING_CONFIG_TRACE`` log record with
    the config id, version and checksum, tying each reconciliation run and
    settlement batch to the configuration that governed it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from clearing_config.loader import load_config
from clearing_config.schema import ClearingConfig

_logger = logging.getLogger("clearing_kernel.config")

CONFIG_PATH_ENV = "CLEARING_CONFIG_PATH"
_DEFAULT_CONFIG_FILE = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(path: Path | str | None = None) -> ClearingConfig:
    """The ONLY public configuration entrypoint.

    Resolution order: explicit ``path``, then ``$CLEARING_CONFIG_PATH``,
    then the bundled ``sets/default.yaml``.

    Raises:
        FileNotFoundError: If the resolved file does not exist.
        ValueError: If configuration validation fails.
        KeyError: If a required key is missing.
    """
    resolved = Path(path or os.environ.get(CONFIG_PATH_ENV) or _DEFAULT_CONFIG_FILE)
    config = load_config(resolved)

    _logger.info(
        "CLEARING_CONFIG_TRACE",
        extra={
            "trace_type": "CLEARING_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "source": str(resolved),
            "settlement_currency": config.netting.settlement_currency,
            "approver_roles": list(config.settlement.approver_roles),
        },
    )
    return config


__all__ = ["ClearingConfig", "CONFIG_PATH_ENV", "get_active_config"]
