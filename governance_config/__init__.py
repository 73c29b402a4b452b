"""
governance_config -- single public entrypoint for runtime settings.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_active_settings()``.  No other component may read configuration
    files or GOVERNANCE_* environment variables directly.

Architecture position:
    Configuration -- sits above ``governance_kernel``.  The kernel MUST
    NEVER import from ``governance_config``; ``bridges`` translates
    settings into kernel inputs.

Failure modes:
    - ``FileNotFoundError`` -- GOVERNANCE_CONFIG_FILE names a missing file.
    - ``ValueError`` -- unknown setting or invalid value.

Audit relevance:
    Every call emits a ``GOVERNANCE_CONFIG_TRACE`` log entry with the
    settings checksum, tying governance decisions to the exact settings
    that were active.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping

from governance_config.loader import load_settings
from governance_config.schema import GovernanceSettings

_logger = logging.getLogger("governance_kernel.config")


def get_active_settings(
    config_file: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> GovernanceSettings:
    """The ONLY public configuration entrypoint.

    Args:
        config_file: Deployment YAML merged over the packaged defaults.
            Defaults to the file named by GOVERNANCE_CONFIG_FILE, if any.
        environ: Environment mapping; defaults to ``os.environ``.

    Raises:
        FileNotFoundError: If the override file does not exist.
        ValueError: If any setting is unknown or invalid.
    """
    settings = load_settings(
        config_file=config_file,
        environ=os.environ if environ is None else environ,
    )
    _logger.info(
        "GOVERNANCE_CONFIG_TRACE",
        extra={
            "trace_type": "GOVERNANCE_CONFIG_TRACE",
            "checksum": settings.checksum,
            "due_soon_threshold_days": settings.due_soon_threshold_days,
            "urgent_threshold_days": settings.urgent_threshold_days,
            "max_transaction_retries": settings.max_transaction_retries,
        },
    )
    return settings


__all__ = ["GovernanceSettings", "get_active_settings"]
