"""
TemplateRenderer -- compile document templates with structured data.

Responsibility:
    Jinja2 rendering of admin-authored HTML templates.  Payloads are
    schema-less at the lifecycle layer; the only shape check happens here,
    against the top-level names the specific template actually references.

Architecture position:
    Services -- adapter behind the kernel's DocumentRenderer port (together
    with ``PdfRenderer``, see ``deal_services.document_renderer``).

Invariants enforced:
    - Output is HTML-escaped unless a template marks a value ``|safe``.
    - ``None`` renders as an empty string.
    - Every undeclared top-level name must be present in ``data``.

Failure modes:
    - RenderFailedError(phase="compile") for template syntax errors.
    - RenderFailedError(phase="data") for names missing from ``data``.
    - RenderFailedError(phase="render") for evaluation errors.
"""

from __future__ import annotations

from typing import Any

from jinja2 import Environment, StrictUndefined, TemplateError, TemplateSyntaxError, meta

from deal_kernel.domain.formatting import (
    DEFAULT_CURRENCY_SYMBOL,
    format_currency,
    format_long_date,
)
from deal_kernel.exceptions import RenderFailedError
from deal_kernel.logging_config import get_logger

logger = get_logger("services.template_renderer")


def _finalize(value: Any) -> Any:
    return "" if value is None else value


class TemplateRenderer:
    """Renders Jinja2 HTML templates with the document filters installed."""

    def __init__(self, currency_symbol: str = DEFAULT_CURRENCY_SYMBOL):
        self._env = Environment(
            autoescape=True,
            undefined=StrictUndefined,
            finalize=_finalize,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._env.filters["currency"] = lambda value: format_currency(value, currency_symbol)
        self._env.filters["format_date"] = format_long_date

    def required_fields(self, template_html: str) -> frozenset[str]:
        """Top-level names ``template_html`` expects in its data."""
        try:
            ast = self._env.parse(template_html)
        except TemplateSyntaxError as exc:
            raise RenderFailedError("compile", f"line {exc.lineno}: {exc.message}") from exc
        return frozenset(meta.find_undeclared_variables(ast))

    def render(self, template_html: str, data: dict[str, Any]) -> str:
        missing = sorted(self.required_fields(template_html) - set(data))
        if missing:
            logger.warning("template_data_missing", extra={"missing_fields": missing})
            raise RenderFailedError("data", f"missing fields: {', '.join(missing)}")

        try:
            template = self._env.from_string(template_html)
            return template.render(**data)
        except TemplateError as exc:
            raise RenderFailedError("render", str(exc)) from exc
        except (TypeError, ValueError, ArithmeticError) as exc:
            raise RenderFailedError("render", f"{type(exc).__name__}: {exc}") from exc
