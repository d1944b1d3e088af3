"""Adapters for the deal kernel's ports: rendering, delivery, storage, notifications."""

from deal_services.blob_store import FilesystemBlobStore
from deal_services.delivery import SmtpDeliveryGateway
from deal_services.document_renderer import DocumentRenderer, PdfRenderer
from deal_services.factory import ServiceFactory, build_renderer
from deal_services.notifications import LoggingNotifier
from deal_services.pdf_engine import EngineManager, install_shutdown_hooks
from deal_services.template_renderer import TemplateRenderer

__all__ = [
    "DocumentRenderer",
    "EngineManager",
    "FilesystemBlobStore",
    "LoggingNotifier",
    "PdfRenderer",
    "ServiceFactory",
    "SmtpDeliveryGateway",
    "TemplateRenderer",
    "build_renderer",
    "install_shutdown_hooks",
]
