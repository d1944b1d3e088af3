"""
Configuration Loader (``deal_config.loader``).

Responsibility
--------------
Loads the packaged defaults and an optional site YAML file, overlays
environment variables and parses the result into the frozen dataclasses
of ``deal_config.schema``.  The single public entry point for runtime
config is ``deal_config.get_active_config()``.

Failure modes
-------------
* Missing explicit YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Wrong value types or unknown sections/keys  -> ``ValueError``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from deal_config.schema import (
    AppConfig,
    DatabaseSettings,
    MailSettings,
    RendererSettings,
    StorageSettings,
)
from deal_kernel.domain.settings import LifecycleSettings

DEFAULTS_FILE = Path(__file__).parent / "defaults.yaml"

_SECTIONS: dict[str, type] = {
    "database": DatabaseSettings,
    "renderer": RendererSettings,
    "mail": MailSettings,
    "storage": StorageSettings,
    "lifecycle": LifecycleSettings,
}

# (environment variable, section, key)
ENV_OVERRIDES: tuple[tuple[str, str, str], ...] = (
    ("DATABASE_URL", "database", "url"),
    ("SMTP_HOST", "mail", "host"),
    ("SMTP_PORT", "mail", "port"),
    ("SMTP_USER", "mail", "username"),
    ("SMTP_PASSWORD", "mail", "password"),
    ("SMTP_SENDER", "mail", "sender"),
    ("SMTP_BCC", "mail", "bcc"),
    ("BLOB_STORE_ROOT", "storage", "root"),
    ("PUBLIC_BASE_URL", "lifecycle", "public_base_url"),
    ("COMPANY_LOGO_URL", "lifecycle", "company_logo_url"),
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Recursive merge; nested mappings merge, everything else replaces."""
    result = dict(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(result.get(key), Mapping):
            result[key] = merge(result[key], value)
        else:
            result[key] = value
    return result


def apply_env_overrides(raw: Mapping[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    """Overlay the recognised environment variables. Empty values are ignored."""
    overlay: dict[str, dict[str, Any]] = {}
    for var, section, key in ENV_OVERRIDES:
        value = environ.get(var)
        if value:
            overlay.setdefault(section, {})[key] = value
    return merge(raw, overlay)


def parse_config(raw: Mapping[str, Any], sources: tuple[str, ...] = ()) -> AppConfig:
    """
    Parse a merged configuration mapping into ``AppConfig``.

    Raises:
        ValueError: on unknown sections or keys, or a value that cannot be
            coerced to the field's type.
    """
    unknown = set(raw) - set(_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown configuration section(s): {', '.join(sorted(unknown))}")

    parsed = {
        name: _parse_section(name, cls, raw.get(name) or {})
        for name, cls in _SECTIONS.items()
    }
    return AppConfig(sources=sources, **parsed)


def _parse_section(name: str, cls: type, values: Any) -> Any:
    if not isinstance(values, Mapping):
        raise ValueError(f"Section {name!r} must be a mapping")

    defaults = cls()
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown key(s) in {name!r}: {', '.join(sorted(unknown))}")

    kwargs = {
        key: _coerce(f"{name}.{key}", getattr(defaults, key), value)
        for key, value in values.items()
    }
    return cls(**kwargs)


def _coerce(path: str, default: Any, value: Any) -> Any:
    """Coerce ``value`` to the type of the field's default."""
    if value is None:
        return None
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ("true", "1", "yes", "on"):
            return True
        if isinstance(value, str) and value.lower() in ("false", "0", "no", "off"):
            return False
        raise ValueError(f"{path}: expected a boolean, got {value!r}")
    if isinstance(default, (int, float)):
        try:
            return type(default)(value)
        except (TypeError, ValueError):
            raise ValueError(f"{path}: expected a number, got {value!r}") from None
    if isinstance(default, tuple):
        if isinstance(value, str):
            return tuple(v.strip() for v in value.split(",") if v.strip())
        if isinstance(value, (list, tuple)):
            return tuple(str(v) for v in value)
        raise ValueError(f"{path}: expected a list, got {value!r}")
    if isinstance(default, dict):
        if not isinstance(value, Mapping):
            raise ValueError(f"{path}: expected a mapping, got {value!r}")
        return {str(k): str(v) for k, v in value.items()}
    if not isinstance(value, (str, int, float)):
        raise ValueError(f"{path}: expected a string, got {value!r}")
    return str(value)
