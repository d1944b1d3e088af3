"""
deal_config -- single public entrypoint for application configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration
    files or environment variables directly.

Architecture position:
    Configuration -- sits above ``deal_kernel`` and beside
    ``deal_services``.  The kernel never imports from ``deal_config``;
    the lifecycle tunables are the kernel's own ``LifecycleSettings``.

Resolution order (later wins):
    1. packaged ``defaults.yaml``
    2. site file: ``config_path`` argument, else the ``DEAL_CONFIG``
       environment variable
    3. environment overrides (``DATABASE_URL``, ``SMTP_*``,
       ``BLOB_STORE_ROOT``, ``PUBLIC_BASE_URL``, ``COMPANY_LOGO_URL``)

Failure modes:
    - ``FileNotFoundError`` -- an explicitly named site file is missing.
    - ``ValueError`` -- unknown keys or malformed values.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from deal_config.loader import (
    DEFAULTS_FILE,
    apply_env_overrides,
    load_yaml_file,
    merge,
    parse_config,
)
from deal_config.schema import (
    AppConfig,
    DatabaseSettings,
    MailSettings,
    RendererSettings,
    StorageSettings,
)

_logger = logging.getLogger("deal_kernel.config")


def get_active_config(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: Optional site YAML overlaid on the packaged defaults.
            Falls back to ``$DEAL_CONFIG`` when omitted.
        environ: Environment mapping; defaults to ``os.environ``.

    Returns:
        AppConfig -- frozen, fully parsed.

    Raises:
        FileNotFoundError: If the site file does not exist.
        ValueError: If the merged configuration is malformed.
    """
    env = os.environ if environ is None else environ

    raw = load_yaml_file(DEFAULTS_FILE)
    sources = [str(DEFAULTS_FILE)]

    site = config_path or env.get("DEAL_CONFIG")
    if site:
        raw = merge(raw, load_yaml_file(Path(site)))
        sources.append(str(site))

    raw = apply_env_overrides(raw, env)
    config = parse_config(raw, tuple(sources))

    _logger.info(
        "config_loaded",
        extra={
            "sources": list(config.sources),
            "database_dialect": config.database.url.split(":", 1)[0],
            "public_base_url": config.lifecycle.public_base_url,
        },
    )
    return config


__all__ = [
    "AppConfig",
    "DatabaseSettings",
    "MailSettings",
    "RendererSettings",
    "StorageSettings",
    "get_active_config",
]
