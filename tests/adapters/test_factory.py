"""Tests for ServiceFactory wiring and the logging notifier."""

from uuid import uuid4

import pytest

from deal_config.schema import AppConfig, StorageSettings
from deal_kernel.domain.lifecycle import TemplateKind
from deal_kernel.domain.ports import Notification, Notifier
from deal_kernel.domain.settings import LifecycleSettings
from deal_services.blob_store import FilesystemBlobStore
from deal_services.delivery import SmtpDeliveryGateway
from deal_services.factory import ServiceFactory, build_renderer
from deal_services.notifications import LoggingNotifier


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        storage=StorageSettings(root=str(tmp_path / "blobs")),
        lifecycle=LifecycleSettings(
            public_base_url="https://portal.example.test",
            category_templates={"hazardous_waste": "hazardous_waste"},
        ),
    )


class TestBuildRenderer:
    def test_engine_is_not_started_eagerly(self, config):
        renderer, manager = build_renderer(config, install_hooks=False)
        try:
            assert not manager.is_started
            assert renderer.render("<p>{{ n }}</p>", {"n": 1}) == "<p>1</p>"
        finally:
            manager.dispose()

    def test_currency_symbol_comes_from_config(self):
        config = AppConfig(lifecycle=LifecycleSettings(currency_symbol="$"))
        renderer, manager = build_renderer(config, install_hooks=False)
        try:
            assert renderer.render("{{ 5 | currency }}", {}) == "$5.00"
        finally:
            manager.dispose()


class TestServiceFactory:
    @pytest.fixture
    def factory(self, config, inquiries, renderer, gateway, blobs, notifier, clock):
        return ServiceFactory(
            config, inquiries, renderer, gateway, blobs, notifier=notifier, clock=clock
        )

    def test_services_share_the_session_and_clock(self, factory, session, clock):
        proposals = factory.proposals(session)
        contracts = factory.contracts(session)

        assert proposals.session is session
        assert contracts.session is session
        assert proposals.clock is clock

    def test_category_map_reaches_templates(self, factory, session, admin):
        templates = factory.templates(session)
        default = templates.create(
            admin, TemplateKind.PROPOSAL, "compactor_hauling", "Hauling", "<p/>", is_default=True
        )
        hazardous = templates.create(
            admin, TemplateKind.PROPOSAL, "hazardous_waste", "Hazardous", "<p/>"
        )

        assert templates.suggest_for_category("hazardous_waste").id == hazardous.id
        assert templates.suggest_for_category("other").id == default.id

    def test_shutdown_without_engine_manager(self, factory):
        factory.shutdown()

    def test_from_config_builds_real_adapters(self, config, inquiries, monkeypatch):
        monkeypatch.setattr("deal_services.factory.install_shutdown_hooks", lambda manager: None)

        factory = ServiceFactory.from_config(config, inquiries)
        try:
            assert isinstance(factory.gateway, SmtpDeliveryGateway)
            assert isinstance(factory.blobs, FilesystemBlobStore)
            assert isinstance(factory.notifier, LoggingNotifier)
            assert not factory.engine_manager.is_started
        finally:
            factory.shutdown()


def test_logging_notifier(captured_logs):
    notifier = LoggingNotifier()
    recipient = uuid4()

    notifier.notify(Notification("proposal_approved", recipient, {"proposal_number": "PROP-1"}))

    assert isinstance(notifier, Notifier)
    [entry] = [r for r in captured_logs() if r["message"] == "notification_dispatched"]
    assert entry["event"] == "proposal_approved"
    assert entry["recipient_id"] == str(recipient)
    assert entry["payload"] == {"proposal_number": "PROP-1"}
