"""
Pytest fixtures for the deal kernel test suite.

Provides:
- A per-test database with real commits (temp-file SQLite by default,
  PostgreSQL when DATABASE_URL points at one)
- Deterministic clock and actors
- In-memory fakes for the inquiry store, blob store, delivery gateway,
  PDF rasterizer, rendering engine and notifier
- Service builders, including per-thread builders for race tests

Environment Variables:
- DATABASE_URL: optional PostgreSQL URL for ``-m postgres`` runs.
"""

import hashlib
import json
import logging
import os
import re
import threading
from datetime import date
from io import StringIO
from types import SimpleNamespace
from uuid import uuid4

import pytest

from deal_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from deal_kernel.domain.authorization import Actor, Role
from deal_kernel.domain.clock import DeterministicClock
from deal_kernel.domain.lifecycle import TemplateKind
from deal_kernel.domain.ports import DeliveryResult, InquiryInfo
from deal_kernel.domain.settings import LifecycleSettings
from deal_kernel.exceptions import RenderFailedError
from deal_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from deal_kernel.services.auditor_service import AuditorService
from deal_kernel.services.contract_service import ContractService
from deal_kernel.services.proposal_service import ProposalService
from deal_kernel.services.template_service import TemplateService
from deal_services.template_renderer import TemplateRenderer


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture deal_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, proposals):
            proposals.approve(...)
            logs = captured_logs()
            assert any(r["message"] == "proposal_approved" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("deal_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )
    config.addinivalue_line(
        "markers", "slow_locks: mark test as potentially waiting for DB locks"
    )


# =============================================================================
# Database
# =============================================================================


def _database_url(tmp_path) -> str:
    url = os.environ.get("DATABASE_URL", "")
    if url.startswith("postgresql"):
        return url
    return f"sqlite:///{tmp_path / 'deal_kernel_test.db'}"


@pytest.fixture
def db_engine(tmp_path):
    """
    Fresh database per test.

    Services commit for real, so every test gets its own file (or, on
    PostgreSQL, freshly created tables) instead of rollback isolation.
    """
    url = _database_url(tmp_path)
    engine = init_engine_from_url(url, pool_size=10, max_overflow=10, pool_timeout=30)
    if url.startswith("postgresql"):
        drop_tables()
    create_tables()
    yield engine
    if url.startswith("postgresql"):
        drop_tables()
    reset_engine()


@pytest.fixture
def session(db_engine):
    s = get_session()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory()


# =============================================================================
# Clock and actors
# =============================================================================


@pytest.fixture
def clock():
    """2026-01-31 09:00 UTC unless a test moves it."""
    return DeterministicClock()


@pytest.fixture
def admin():
    return Actor(uuid4(), Role.ADMIN)


@pytest.fixture
def sales():
    """The requester in most scenarios."""
    return Actor(uuid4(), Role.SALES)


@pytest.fixture
def other_sales():
    return Actor(uuid4(), Role.SALES)


@pytest.fixture
def master_sales():
    return Actor(uuid4(), Role.SALES, is_master_sales=True)


# =============================================================================
# Fakes
# =============================================================================


class FakeInquiryStore:
    def __init__(self):
        self.inquiries: dict = {}
        self.status_updates: list[tuple] = []
        self.fail_updates = False

    def add(self, **fields) -> InquiryInfo:
        inquiry = InquiryInfo(id=fields.pop("id", uuid4()), **fields)
        self.inquiries[inquiry.id] = inquiry
        return inquiry

    def get_by_id(self, inquiry_id):
        return self.inquiries.get(inquiry_id)

    def update_status(self, inquiry_id, new_status):
        if self.fail_updates:
            raise ConnectionError("inquiry store unavailable")
        self.status_updates.append((inquiry_id, new_status))


class MemoryBlobStore:
    def __init__(self):
        self.blobs: dict[str, tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def put(self, key, data, content_type):
        with self._lock:
            self.blobs[key] = (data, content_type)
        return key

    def get(self, key):
        with self._lock:
            return self.blobs[key][0]


class FakeGateway:
    """
    Records every send.

    ``fail_with`` makes sends fail; ``on_send`` runs inside ``send`` before
    the result is produced (race tests park threads there).
    """

    def __init__(self):
        self.sent: list[SimpleNamespace] = []
        self.fail_with: str | None = None
        self.on_send = None
        self._lock = threading.Lock()

    def send(self, to, subject, html, attachment=None):
        if self.on_send is not None:
            self.on_send()
        with self._lock:
            if self.fail_with:
                return DeliveryResult.failed(self.fail_with)
            message_id = f"<msg-{len(self.sent) + 1}@test>"
            self.sent.append(
                SimpleNamespace(
                    to=to,
                    subject=subject,
                    html=html,
                    attachment=attachment,
                    message_id=message_id,
                )
            )
        return DeliveryResult.ok(message_id)

    def last_token(self) -> str:
        """Response or submission token from the most recent email link."""
        match = re.search(r"token=([0-9a-f]{64})", self.sent[-1].html)
        assert match, "no token link in the last email"
        return match.group(1)


class StubDocumentRenderer:
    """Real template rendering; PDF output is a deterministic stand-in."""

    def __init__(self):
        self._templates = TemplateRenderer()
        self.rendered_html: list[str] = []
        self.fail_pdf = False

    def render(self, template_html, data):
        return self._templates.render(template_html, data)

    def to_pdf(self, html):
        if self.fail_pdf:
            raise RenderFailedError("capture", "timed out after 30s")
        self.rendered_html.append(html)
        return b"%PDF-1.4 " + hashlib.sha256(html.encode()).hexdigest().encode()


class RecordingNotifier:
    def __init__(self):
        self.notifications = []
        self.fail = False

    def notify(self, notification):
        if self.fail:
            raise RuntimeError("notification channel down")
        self.notifications.append(notification)

    @property
    def events(self):
        return [n.event for n in self.notifications]


@pytest.fixture
def inquiries():
    return FakeInquiryStore()


@pytest.fixture
def blobs():
    return MemoryBlobStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def renderer():
    return StubDocumentRenderer()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def settings():
    return LifecycleSettings(
        public_base_url="https://portal.example.test",
        category_templates={"hazardous_waste": "hazardous_waste"},
    )


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def build_services(session_factory, clock, inquiries, blobs, gateway, renderer, notifier, settings):
    """
    Build a service bundle on its own session.

    Race tests call this once per thread.
    """

    def _build(session=None):
        s = session or session_factory()
        templates = TemplateService(
            s, clock=clock, category_templates=settings.category_templates
        )
        common = dict(
            notifier=notifier,
            settings=settings,
            clock=clock,
        )
        return SimpleNamespace(
            session=s,
            templates=templates,
            proposals=ProposalService(
                s, inquiries, templates, renderer, gateway, blobs, **common
            ),
            contracts=ContractService(
                s, inquiries, templates, renderer, gateway, blobs, **common
            ),
            auditor=AuditorService(s, clock),
        )

    return _build


@pytest.fixture
def deal(build_services, session):
    return build_services(session)


@pytest.fixture
def templates(deal):
    return deal.templates


@pytest.fixture
def proposals(deal):
    return deal.proposals


@pytest.fixture
def contracts(deal):
    return deal.contracts


@pytest.fixture
def auditor(deal):
    return deal.auditor


# =============================================================================
# Scenario data
# =============================================================================


PROPOSAL_TEMPLATE_HTML = """\
<html><body>
<img src="{{ companyLogoUrl }}">
<h1>Proposal for {{ clientCompany }}</h1>
<p>{{ clientName }} ({{ clientEmail }}, {{ clientPhone }})</p>
<p>Date: {{ proposalDate }} | Valid until: {{ validUntilDate }}</p>
<table>
{% for service in services %}
<tr><td>{{ service.name }}</td><td>{{ service.quantity }}</td><td>{{ service.unitPrice | currency }}</td><td>{{ service.subtotal | currency }}</td></tr>
{% endfor %}
</table>
<p>Subtotal {{ pricing.subtotal | currency }}</p>
<p>VAT ({{ pricing.taxRate }}%) {{ pricing.tax | currency }}</p>
<p>Total {{ pricing.total | currency }}</p>
<p>{{ terms.paymentTerms }}</p>
</body></html>
"""

CONTRACT_TEMPLATE_HTML = """\
<html><body>
<h1>Contract {{ contractNumber }}</h1>
<p>Dated {{ contractDate }}</p>
<p>Between WastePH and {{ companyName }} represented by {{ clientName }}</p>
<p>Term: {{ contractDuration }}</p>
<p>Schedule: {{ collectionSchedule }}</p>
<p>Rate per kg: {{ ratePerKg }}</p>
<p>{{ specialClauses }}</p>
</body></html>
"""


def proposal_payload(**overrides) -> dict:
    payload = {
        "services": [
            {"name": "Compactor hauling", "quantity": 4, "unitPrice": 12500, "subtotal": 50000},
            {"name": "Bin rental", "quantity": 2, "unitPrice": "1500.50", "subtotal": "3001"},
        ],
        "pricing": {"subtotal": 53001, "tax": 6360.12, "total": 59361.12, "taxRate": 12},
        "terms": {"paymentTerms": "Net 30", "validityDays": 30},
    }
    payload.update(overrides)
    return payload


def contract_details(**overrides) -> dict:
    details = {
        "contract_type": "long_term_variable",
        "client_name": "Maria Santos",
        "company_name": "Santos Trading",
        "client_email": "Maria@Santos.example",
        "client_address": "12 Ayala Ave, Makati",
        "contract_start_date": "2026-01-01",
        "contract_end_date": "2026-12-31",
        "collection_schedule": "weekly",
        "rate_per_kg": "3.50",
        "special_clauses": "Pickup before 7 AM",
        "signatories": [{"name": "Maria Santos", "position": "Owner"}],
    }
    details.update(overrides)
    return details


@pytest.fixture
def make_payload():
    return proposal_payload


@pytest.fixture
def make_details():
    return contract_details


@pytest.fixture
def inquiry(inquiries):
    return inquiries.add(
        name="Maria Santos",
        email="maria@santos.example",
        company="Santos Trading",
        service_category="compactor_hauling",
        status="new",
        phone="+63 917 000 0000",
    )


@pytest.fixture
def proposal_template(templates, admin):
    return templates.create(
        admin,
        TemplateKind.PROPOSAL,
        "compactor_hauling",
        "Compactor hauling",
        PROPOSAL_TEMPLATE_HTML,
        is_default=True,
    )


@pytest.fixture
def contract_template(templates, admin):
    return templates.create(
        admin,
        TemplateKind.CONTRACT,
        "long_term_variable",
        "Long term variable",
        CONTRACT_TEMPLATE_HTML,
        is_default=True,
    )


@pytest.fixture
def pending_proposal(proposals, sales, inquiry, proposal_template):
    return proposals.create(sales, inquiry.id, proposal_payload())


@pytest.fixture
def approved_proposal(proposals, admin, pending_proposal):
    return proposals.approve(admin, pending_proposal.id)


@pytest.fixture
def sent_proposal(proposals, sales, approved_proposal):
    return proposals.send(sales, approved_proposal.id)


@pytest.fixture
def requested_contract(contracts, sales, sent_proposal, contract_template):
    contract = contracts.materialize(sent_proposal.id)
    return contracts.request(sales, contract.id, contract_details())


@pytest.fixture
def fulfilled_contract(contracts, admin, requested_contract):
    return contracts.generate_from_template(admin, requested_contract.id)


@pytest.fixture
def contract_sent_to_client(contracts, sales, fulfilled_contract):
    return contracts.send_to_counterparty(sales, fulfilled_contract.id, "maria@santos.example")


@pytest.fixture
def issued_on():
    return date(2026, 1, 31)
