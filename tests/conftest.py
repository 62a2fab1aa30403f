"""Shared fixtures: in-memory database, fake messenger and fake text model."""
import pytest

from leadflow.ai import IntentRouter
from leadflow.config import Settings
from leadflow.consent import ConsentRequester, ConsentStateMachine
from leadflow.db import init_db, make_engine, make_session_factory
from leadflow.errors import TransientExternalError
from leadflow.ingestion import IngestionPipeline
from leadflow.models import ConsentStatus, Contact


class FakeMessenger:
    """Collects outbound messages instead of calling Twilio."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail = False
        self.closed = False

    def send(self, phone: str, text: str) -> str:
        if self.fail:
            raise TransientExternalError("Failed to send WhatsApp message")
        self.sent.append((phone, text))
        return f"SM{len(self.sent):04d}"

    def close(self) -> None:
        self.closed = True


class FakeTextModel:
    """Returns scripted answers in order and records every prompt."""

    def __init__(self, answers=None):
        self.answers = list(answers or [])
        self.calls: list[dict] = []
        self.fail_on_call: int | None = None

    def complete(self, system, prompt, *, temperature, max_tokens=None):
        self.calls.append(
            {"system": system, "prompt": prompt, "temperature": temperature, "max_tokens": max_tokens}
        )
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise TransientExternalError("Text model request failed")
        return self.answers.pop(0) if self.answers else ""


@pytest.fixture
def settings(tmp_path) -> Settings:
    # file-backed so background ingestion threads get their own connections
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'leadflow-test.db'}",
        API_TOKENS={"tok-a": "owner-a", "tok-b": "owner-b"},
        LOG_LEVEL="DEBUG",
    )


@pytest.fixture
def session_factory(settings):
    engine = make_engine(settings.DATABASE_URL)
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def messenger() -> FakeMessenger:
    return FakeMessenger()


@pytest.fixture
def text_model() -> FakeTextModel:
    return FakeTextModel()


@pytest.fixture
def requester(session_factory, messenger, settings) -> ConsentRequester:
    return ConsentRequester(session_factory, messenger, settings)


@pytest.fixture
def pipeline(session_factory, settings, requester) -> IngestionPipeline:
    return IngestionPipeline(session_factory, settings, consent_requester=requester)


@pytest.fixture
def machine(session_factory, messenger, text_model, settings) -> ConsentStateMachine:
    return ConsentStateMachine(session_factory, messenger, IntentRouter(text_model, settings))


@pytest.fixture
def make_contact(session_factory):
    """Insert a contact directly and return its id."""

    def _make(phone="+27820000001", status=ConsentStatus.PENDING, owner_id="owner-a", **fields):
        with session_factory() as db:
            c = Contact(owner_id=owner_id, phone=phone, consent_status=status, **fields)
            db.add(c)
            db.commit()
            return c.id

    return _make
