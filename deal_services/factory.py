"""
ServiceFactory -- wires the kernel services to their adapters.

Responsibility:
    Builds per-session ``TemplateService``, ``ProposalService`` and
    ``ContractService`` instances from one ``AppConfig`` and a set of
    process-wide adapters (renderer, delivery gateway, blob store,
    notifier).  The rendering engine is shared by every service the
    factory builds.

Usage:
    config = get_active_config()
    factory = ServiceFactory.from_config(config, inquiries=my_inquiry_store)
    with session_scope() as session:
        proposals = factory.proposals(session)
"""

from __future__ import annotations

from functools import partial

from sqlalchemy.orm import Session

from deal_config.schema import AppConfig
from deal_kernel.domain.clock import Clock, SystemClock
from deal_kernel.domain.ports import (
    BlobStore,
    DeliveryGateway,
    DocumentRenderer,
    InquiryStore,
    Notifier,
)
from deal_kernel.services.contract_service import ContractService
from deal_kernel.services.proposal_service import ProposalService
from deal_kernel.services.template_service import TemplateService
from deal_services.blob_store import FilesystemBlobStore
from deal_services.delivery import SmtpDeliveryGateway
from deal_services.document_renderer import DocumentRenderer as HtmlPdfRenderer
from deal_services.document_renderer import PdfRenderer
from deal_services.notifications import LoggingNotifier
from deal_services.pdf_engine import EngineManager, install_shutdown_hooks
from deal_services.playwright_engine import PlaywrightEngine
from deal_services.template_renderer import TemplateRenderer


def build_renderer(config: AppConfig, install_hooks: bool = True) -> tuple[HtmlPdfRenderer, EngineManager]:
    """Renderer on a lazily started Chromium engine."""
    settings = config.renderer
    manager = EngineManager(
        partial(PlaywrightEngine.launch, settings.headless, settings.launch_args),
        startup_timeout=settings.startup_timeout,
    )
    if install_hooks:
        install_shutdown_hooks(manager)
    renderer = HtmlPdfRenderer(
        TemplateRenderer(config.lifecycle.currency_symbol),
        PdfRenderer(manager, settings),
    )
    return renderer, manager


class ServiceFactory:
    """Holds the shared adapters; builds services bound to a session."""

    def __init__(
        self,
        config: AppConfig,
        inquiries: InquiryStore,
        renderer: DocumentRenderer,
        gateway: DeliveryGateway,
        blobs: BlobStore,
        notifier: Notifier | None = None,
        clock: Clock | None = None,
        engine_manager: EngineManager | None = None,
    ):
        self.config = config
        self.inquiries = inquiries
        self.renderer = renderer
        self.gateway = gateway
        self.blobs = blobs
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.engine_manager = engine_manager

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        inquiries: InquiryStore,
        clock: Clock | None = None,
    ) -> ServiceFactory:
        renderer, manager = build_renderer(config)
        return cls(
            config,
            inquiries,
            renderer=renderer,
            gateway=SmtpDeliveryGateway(config.mail),
            blobs=FilesystemBlobStore(config.storage.root),
            notifier=LoggingNotifier(),
            clock=clock,
            engine_manager=manager,
        )

    def templates(self, session: Session) -> TemplateService:
        return TemplateService(
            session,
            clock=self.clock,
            category_templates=self.config.lifecycle.category_templates,
        )

    def proposals(self, session: Session) -> ProposalService:
        return ProposalService(
            session,
            self.inquiries,
            self.templates(session),
            self.renderer,
            self.gateway,
            self.blobs,
            notifier=self.notifier,
            settings=self.config.lifecycle,
            clock=self.clock,
        )

    def contracts(self, session: Session) -> ContractService:
        return ContractService(
            session,
            self.inquiries,
            self.templates(session),
            self.renderer,
            self.gateway,
            self.blobs,
            notifier=self.notifier,
            settings=self.config.lifecycle,
            clock=self.clock,
        )

    def shutdown(self) -> None:
        if self.engine_manager is not None:
            self.engine_manager.dispose()
