"""
Application configuration schema.

Frozen dataclasses parsed from YAML by ``deal_config.loader``.  The
lifecycle tunables reuse the kernel's ``LifecycleSettings`` so the
services receive them without any translation.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from deal_kernel.domain.settings import LifecycleSettings

# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///deal_kernel.db"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    echo: bool = False


@dataclass(frozen=True)
class RendererSettings:
    """Rendering engine bounds, in seconds."""

    startup_timeout: float = 10.0
    load_timeout: float = 15.0
    capture_timeout: float = 30.0
    page_format: str = "A4"
    margin: str = "20px"
    headless: bool = True
    launch_args: tuple[str, ...] = ("--no-sandbox", "--disable-dev-shm-usage")


@dataclass(frozen=True)
class MailSettings:
    host: str = "localhost"
    port: int = 587
    username: str | None = None
    password: str | None = None
    use_tls: bool = True
    sender: str = "WastePH <no-reply@wasteph.com>"
    bcc: tuple[str, ...] = ()
    timeout: float = 30.0


@dataclass(frozen=True)
class StorageSettings:
    root: str = "var/blobs"


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AppConfig:
    """Everything the service factory needs to wire the application."""

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    renderer: RendererSettings = field(default_factory=RendererSettings)
    mail: MailSettings = field(default_factory=MailSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    lifecycle: LifecycleSettings = field(default_factory=LifecycleSettings)
    sources: tuple[str, ...] = ()
