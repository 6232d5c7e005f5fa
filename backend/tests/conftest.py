"""Shared pytest fixtures for reportcast tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from reportcast.core.security.auth import Principal, get_current_principal
from reportcast.main import app
from reportcast.scheduling.audit import AuditLogger
from reportcast.scheduling.delivery import DeliveryResult, EmailTransport, InlineImage
from reportcast.scheduling.render import RenderBackend, RenderRequest
from reportcast.scheduling.scanner import ScannerState
from reportcast.scheduling.store import ScheduleStore

TENANT_ID = "11111111-1111-1111-1111-111111111111"
USER_ID = "22222222-2222-2222-2222-222222222222"

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


# ── ORM mock helpers ──────────────────────────────────────────────────────────

def _now() -> datetime:
    return datetime.now(timezone.utc)


def make_tenant(*, allowed_email_domains: str | None = '["acme.com"]', name: str = "Acme") -> MagicMock:
    """Create a mock Tenant ORM object."""
    t = MagicMock()
    t.id = TENANT_ID
    t.name = name
    t.allowed_email_domains = allowed_email_domains
    return t


def make_report(
    *,
    name: str = "Weekly Revenue",
    data_json: object = None,
    sql_query: str | None = None,
    connection_id: str | None = None,
) -> MagicMock:
    """Create a mock Report ORM object. Cached data defaults to a small dataset."""
    r = MagicMock()
    r.id = str(uuid4())
    r.tenant_id = TENANT_ID
    r.name = name
    r.sql_query = sql_query
    r.connection_id = connection_id
    r.has_live_query = bool(sql_query and connection_id)
    r.data_json = data_json if data_json is not None else [{"month": "Jan", "revenue": 10}]
    r.chart_config = {"type": "bar"}
    return r


def make_recipient(email: str, *, is_external: bool = False) -> MagicMock:
    """Create a mock ScheduleRecipient ORM object."""
    r = MagicMock()
    r.id = str(uuid4())
    r.email = email
    r.domain = email.rpartition("@")[2].lower()
    r.is_external = is_external
    return r


def make_schedule(
    *,
    name: str = "Monday revenue",
    frequency: str = "weekly",
    time_of_day: str = "09:00",
    day_of_week: int | None = 1,
    day_of_month: int | None = None,
    next_run_at: datetime | None = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc),
    is_enabled: bool = True,
    deleted_at: datetime | None = None,
    recipients: list | None = None,
    report: MagicMock | None = None,
    tenant: MagicMock | None = None,
) -> MagicMock:
    """Create a mock ReportSchedule ORM object with recipients, report and tenant."""
    s = MagicMock()
    s.id = str(uuid4())
    s.tenant_id = TENANT_ID
    s.user_id = USER_ID
    s.name = name
    s.frequency = frequency
    s.time_of_day = time_of_day
    s.timezone = "America/New_York"
    s.day_of_week = day_of_week
    s.day_of_month = day_of_month
    s.next_run_at = next_run_at
    s.is_enabled = is_enabled
    s.deleted_at = deleted_at
    s.recipients = recipients if recipients is not None else [make_recipient("ops@acme.com")]
    s.report = report or make_report()
    s.report_id = s.report.id
    s.tenant = tenant or make_tenant()
    s.created_at = _now()
    s.updated_at = _now()
    return s


def make_execution(schedule: MagicMock, *, status: str = "completed", sent: int = 1, failed: int = 0) -> MagicMock:
    """Create a mock ScheduleExecution ORM object."""
    e = MagicMock()
    e.id = str(uuid4())
    e.schedule_id = schedule.id
    e.tenant_id = schedule.tenant_id
    e.report_id = schedule.report_id
    e.status = status
    e.started_at = _now()
    e.completed_at = _now()
    e.emails_sent = sent
    e.emails_failed = failed
    e.error_message = None if failed == 0 else f"Failed to send {failed} of {sent + failed} emails"
    return e


# ── Collaborator fakes ────────────────────────────────────────────────────────

class FakeTransport(EmailTransport):
    """Records sends; addresses in ``failing`` get a failed result."""

    def __init__(self, *, failing: set[str] | None = None, relay_host: str = "smtp.acme.com:587") -> None:
        self.failing = failing or set()
        self._relay_host = relay_host
        self.sent: list[tuple[str, str, str, InlineImage | None]] = []

    @property
    def relay_host(self) -> str:
        return self._relay_host

    async def send(self, recipient, subject, html_body, inline_image=None):
        if recipient in self.failing:
            return DeliveryResult(sent=False, error="550 mailbox unavailable")
        self.sent.append((recipient, subject, html_body, inline_image))
        return DeliveryResult(sent=True, provider_message_id=f"<{uuid4()}@test>")


class FakeRenderBackend(RenderBackend):
    """Returns fixed PNG bytes, or raises ``error`` when set."""

    def __init__(self, image: bytes = PNG_BYTES, error: Exception | None = None) -> None:
        self.image = image
        self.error = error
        self.requests: list[RenderRequest] = []
        self.closed = False

    async def render(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.image

    async def close(self):
        self.closed = True


@pytest.fixture
def mock_store() -> AsyncMock:
    """ScheduleStore stand-in; every method is an AsyncMock."""
    store = AsyncMock(spec=ScheduleStore)
    store.start_execution.return_value = str(uuid4())
    store.finish_execution.return_value = True
    return store


@pytest.fixture
def mock_audit() -> AsyncMock:
    return AsyncMock(spec=AuditLogger)


# ── HTTP client ───────────────────────────────────────────────────────────────

@pytest.fixture
def principal() -> Principal:
    return Principal(user_id=USER_ID, tenant_id=TENANT_ID)


@pytest.fixture
def scheduling_engine(mock_store: AsyncMock) -> MagicMock:
    """Mock SchedulingEngine attached to ``app.state`` by the client fixture."""
    eng = MagicMock()
    eng.is_running = True
    eng.store = mock_store
    eng.scanner = MagicMock()
    eng.scanner.trigger_now = AsyncMock()
    eng.scanner.state = ScannerState.IDLE
    eng.queue = MagicMock()
    eng.queue.stats = AsyncMock(
        return_value={"pending": 0, "running": 0, "completed": 0, "failed": 0, "in_flight": 0}
    )
    eng.service = MagicMock()
    eng.service.require_permission = AsyncMock()
    return eng


@pytest.fixture
async def client(principal: Principal, scheduling_engine: MagicMock) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with a mocked engine and an authenticated caller."""
    app.dependency_overrides[get_current_principal] = lambda: principal
    app.state.engine = scheduling_engine

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.engine = None
