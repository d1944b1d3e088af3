"""
Document renderer -- templates to HTML, HTML to PDF.

Responsibility:
    ``PdfRenderer`` rasterizes HTML through a leased engine page;
    ``DocumentRenderer`` pairs it with ``TemplateRenderer`` to satisfy the
    kernel's DocumentRenderer port.

Architecture position:
    Services -- adapter.  The lifecycle services only see the port.

Failure modes:
    - RenderFailedError from any phase.  A phase that overruns its timeout
      is cancelled and its page closed; other pages are unaffected.
    - After a failed load or capture
      the engine is probed and discarded if it has died, so the next call
      starts a fresh one.
"""

from __future__ import annotations

from typing import Any

from deal_config.schema import RendererSettings
from deal_kernel.exceptions import RenderFailedError
from deal_kernel.logging_config import get_logger
from deal_services.pdf_engine import EngineManager
from deal_services.template_renderer import TemplateRenderer

logger = get_logger("services.document_renderer")


class PdfRenderer:
    """HTML to A4 PDF on the shared engine."""

    def __init__(self, manager: EngineManager, settings: RendererSettings | None = None):
        self._manager = manager
        self._settings = settings or RendererSettings()

    def to_pdf(self, html: str) -> bytes:
        settings = self._settings
        with self._manager.lease() as engine:
            try:
                page = self._manager.call(
                    engine.new_page, timeout=settings.load_timeout, phase="load"
                )
            except RenderFailedError:
                self._manager.discard_if_dead(engine)
                raise
            try:
                self._manager.call(
                    page.set_content,
                    html,
                    settings.load_timeout * 1000,
                    timeout=settings.load_timeout,
                    phase="load",
                )
                pdf = self._manager.call(
                    page.pdf,
                    settings.page_format,
                    settings.margin,
                    timeout=settings.capture_timeout,
                    phase="capture",
                )
            except RenderFailedError as exc:
                logger.warning(
                    "pdf_render_failed",
                    extra={"phase": exc.phase, "detail": exc.detail},
                )
                self._manager.discard_if_dead(engine)
                raise
            finally:
                self._manager.submit(page.close, "page_close")

        logger.info("pdf_rendered", extra={"bytes": len(pdf)})
        return pdf


class DocumentRenderer:
    """Kernel DocumentRenderer port: ``render`` plus ``to_pdf``."""

    def __init__(self, templates: TemplateRenderer, pdf: PdfRenderer):
        self._templates = templates
        self._pdf = pdf

    def render(self, template_html: str, data: dict[str, Any]) -> str:
        return self._templates.render(template_html, data)

    def to_pdf(self, html: str) -> bytes:
        return self._pdf.to_pdf(html)
