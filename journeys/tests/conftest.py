import os
import tempfile

_default_test_secret = "test-jwt-secret-for-pytest-only-0000000000000000"
if len(os.environ.get("JWT_SECRET", "")) < 32:
    os.environ["JWT_SECRET"] = _default_test_secret

_tmp_dir = tempfile.mkdtemp(prefix="journeys-test-")
TEST_DATABASE_URL = os.getenv("DATABASE_URL") or f"sqlite:///{os.path.join(_tmp_dir, 'journeys_test.db')}"
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ.setdefault("ENV", "test")

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, text
from sqlalchemy.engine import make_url

from journeys import database
from journeys.core.config import Settings
from journeys.database import SessionLocal
from journeys.schemas.automation import AutomationCreate
from journeys.schemas.steps import StepGraph
from journeys.services import automation_service
from journeys.services.collaborators import (
    Collaborators,
    ContactSnapshot,
    EmailResult,
    InMemoryContactDirectory,
    WebhookResponse,
)
from journeys.services.step_executor import StepExecutor

EVENT_ID = "evt-100"
T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)


def _ensure_database_exists(database_url: str) -> None:
    url = make_url(database_url)

    if not url.drivername.startswith("postgresql"):
        return

    db_name = url.database
    admin_url = url.set(database="postgres")
    admin_engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")

    try:
        with admin_engine.connect() as conn:
            exists = conn.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": db_name},
            ).scalar()
            if not exists:
                safe_db_name = db_name.replace('"', '""')
                conn.execute(text(f'CREATE DATABASE "{safe_db_name}"'))
    finally:
        admin_engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def _prepare_test_database() -> None:
    _ensure_database_exists(TEST_DATABASE_URL)

    cfg = Config(str(Path(__file__).resolve().parents[2] / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", TEST_DATABASE_URL)
    command.upgrade(cfg, "head")

    database.configure_database()


def _empty_tables() -> None:
    with database.engine.begin() as conn:
        for table in reversed(database.Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(scope="function", autouse=True)
def _empty_tables_between_tests():
    _empty_tables()
    yield
    _empty_tables()


class RecordingEmailSender:
    """Email double that can fail on demand and answers delivery lookups."""

    def __init__(self, results: Optional[list] = None):
        self.results = list(results or [])
        self.sends: list[dict] = []
        self.delivered: dict[str, dict] = {}

    def send(self, contact_id, template_id, context, *, idempotency_key=None):
        self.sends.append(
            {"contact_id": contact_id, "template_id": template_id, "context": context, "key": idempotency_key}
        )
        result = self.results.pop(0) if self.results else EmailResult(success=True, provider_message_id=f"msg-{len(self.sends)}")
        if isinstance(result, Exception):
            raise result
        if result.success and idempotency_key:
            self.delivered[idempotency_key] = {"provider_message_id": result.provider_message_id}
        return result

    def find_delivery(self, idempotency_key):
        return self.delivered.get(idempotency_key)


class BlindEmailSender:
    """Email double with no delivery lookup."""

    def __init__(self):
        self.sends: list[dict] = []

    def send(self, contact_id, template_id, context, *, idempotency_key=None):
        self.sends.append({"contact_id": contact_id, "template_id": template_id, "key": idempotency_key})
        return EmailResult(success=True, provider_message_id=f"blind-{len(self.sends)}")


class ScriptedWebhookCaller:
    def __init__(self, responses: Optional[list] = None):
        self.responses = list(responses or [])
        self.calls: list[dict] = []

    def call(self, url, payload, headers, *, method="POST", idempotency_key=None):
        self.calls.append(
            {"url": url, "payload": payload, "headers": headers, "method": method, "key": idempotency_key}
        )
        if self.responses:
            return self.responses.pop(0)
        return WebhookResponse(status_code=200, body="ok")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        scheduler_enabled=False,
        max_workers=1,
        step_max_attempts=3,
        step_retry_base_seconds=0.0,
        step_retry_max_seconds=0.0,
    )


@pytest.fixture
def contacts() -> InMemoryContactDirectory:
    directory = InMemoryContactDirectory()
    directory.put(ContactSnapshot(contact_id="c-1", fields={"first_name": "Ada", "company": "Acme"}))
    return directory


@pytest.fixture
def email() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def webhooks() -> ScriptedWebhookCaller:
    return ScriptedWebhookCaller()


@pytest.fixture
def collaborators(email, webhooks, contacts) -> Collaborators:
    return Collaborators(email=email, webhooks=webhooks, contacts=contacts)


@pytest.fixture
def executor_factory(settings):
    def factory(collaborators: Collaborators, *, now: datetime = T0, sleeps: Optional[list] = None):
        return StepExecutor(
            collaborators,
            settings=settings,
            sleep=(sleeps.append if sleeps is not None else (lambda _s: None)),
            clock=lambda: now,
        )

    return factory


@pytest.fixture
def automation_factory():
    def factory(
        steps: list[dict],
        *,
        start_step_id: Optional[str] = None,
        trigger_type: str = "contact_created",
        trigger_config: Optional[dict] = None,
        reentry_policy: str = "one_shot",
        event_id: str = EVENT_ID,
        edition_id: Optional[str] = None,
        activate: bool = True,
        name: str = "Welcome journey",
    ):
        db = SessionLocal()
        try:
            graph = StepGraph.model_validate({"start_step_id": start_step_id or steps[0]["id"], "steps": steps})
            automation = automation_service.create_automation(
                db,
                event_id=event_id,
                payload=AutomationCreate(
                    name=name,
                    edition_id=edition_id,
                    trigger_type=trigger_type,
                    trigger_config=trigger_config or {},
                    reentry_policy=reentry_policy,
                    definition=graph,
                ),
                created_by="test",
            )
            if activate:
                automation = automation_service.activate(db, event_id, automation.id)
            return automation
        finally:
            db.close()

    return factory


@pytest.fixture
def blind_email() -> BlindEmailSender:
    return BlindEmailSender()
