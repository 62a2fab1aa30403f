"""Consent state machine transitions and the consent-request sender."""
import threading
import time

import pytest

from leadflow.ai import IntentRouter
from leadflow.consent import (
    CONFIRMATION_TEXT,
    DENIAL_TEXT,
    REMINDER_TEXT,
    ConsentStateMachine,
    InboundOutcome,
)
from leadflow.errors import NotFoundError, TransientExternalError
from leadflow.locks import LockStripes
from leadflow.models import ConsentStatus, Contact, ConversationTurn, Sender


def _contact(session_factory, cid):
    with session_factory() as db:
        return db.get(Contact, cid)


def _turns(session_factory, cid):
    with session_factory() as db:
        return (
            db.query(ConversationTurn)
            .filter_by(contact_id=cid)
            .order_by(ConversationTurn.id)
            .all()
        )


def test_yes_from_pending_contact_grants_consent(machine, make_contact, session_factory, messenger):
    cid = make_contact(phone="+27820000001")

    outcome = machine.handle_inbound("whatsapp:+27820000001", "yes")

    assert outcome is InboundOutcome.CONSENTED
    c = _contact(session_factory, cid)
    assert c.consent_status is ConsentStatus.CONSENTED
    assert c.consent_timestamp is not None
    assert c.latest_message == "yes"
    turns = _turns(session_factory, cid)
    assert [(t.sender, t.message) for t in turns] == [(Sender.CONTACT, "yes")]
    assert messenger.sent == [("+27820000001", CONFIRMATION_TEXT)]


def test_no_denies_consent(machine, make_contact, session_factory, messenger):
    cid = make_contact()

    assert machine.handle_inbound("+27820000001", "  No ") is InboundOutcome.DENIED

    c = _contact(session_factory, cid)
    assert c.consent_status is ConsentStatus.DENIED
    assert c.consent_timestamp is None
    assert c.latest_message == "  No "
    assert messenger.sent[-1][1] == DENIAL_TEXT


def test_other_text_while_pending_only_sends_reminder(machine, make_contact, session_factory, messenger, text_model):
    cid = make_contact()

    outcome = machine.handle_inbound("+27820000001", "yes please")

    assert outcome is InboundOutcome.CONSENT_REQUIRED
    c = _contact(session_factory, cid)
    assert c.consent_status is ConsentStatus.PENDING
    assert c.latest_message is None
    assert [t.sender for t in _turns(session_factory, cid)] == [Sender.CONTACT]
    assert messenger.sent[-1][1] == REMINDER_TEXT
    assert text_model.calls == []


def test_denied_contact_gets_reminder_for_free_text(machine, make_contact, session_factory, messenger):
    make_contact(status=ConsentStatus.DENIED)

    assert machine.handle_inbound("+27820000001", "hello?") is InboundOutcome.CONSENT_REQUIRED
    assert messenger.sent[-1][1] == REMINDER_TEXT


def test_transitions_are_unconditional(machine, make_contact, session_factory):
    cid = make_contact(status=ConsentStatus.DENIED)

    machine.handle_inbound("+27820000001", "YES")
    assert _contact(session_factory, cid).consent_status is ConsentStatus.CONSENTED

    machine.handle_inbound("+27820000001", "NO")
    assert _contact(session_factory, cid).consent_status is ConsentStatus.DENIED


def test_consented_contact_is_routed_to_agent(machine, make_contact, session_factory, messenger, text_model):
    cid = make_contact(status=ConsentStatus.CONSENTED, first_name="Ada", email="ada@example.com")
    text_model.answers = ["check_status", "Your data is being processed."]

    outcome = machine.handle_inbound("+27820000001", "What's my status?")

    assert outcome is InboundOutcome.AGENT_REPLIED
    turns = _turns(session_factory, cid)
    assert [(t.sender, t.message, t.agent_label) for t in turns] == [
        (Sender.CONTACT, "What's my status?", None),
        (Sender.AGENT, "Your data is being processed.", "Support Agent"),
    ]
    assert _contact(session_factory, cid).latest_message == "What's my status?"
    assert messenger.sent == [("+27820000001", "Your data is being processed.")]
    assert "Ada" in text_model.calls[0]["prompt"]


def test_router_failure_leaves_no_trace(machine, make_contact, session_factory, messenger, text_model):
    cid = make_contact(status=ConsentStatus.CONSENTED)
    text_model.answers = ["general_support"]
    text_model.fail_on_call = 2

    with pytest.raises(TransientExternalError):
        machine.handle_inbound("+27820000001", "Can you help?")

    assert _turns(session_factory, cid) == []
    assert _contact(session_factory, cid).latest_message is None
    assert messenger.sent == []


def test_messenger_failure_rolls_back_transition(machine, make_contact, session_factory, messenger):
    cid = make_contact()
    messenger.fail = True

    with pytest.raises(TransientExternalError):
        machine.handle_inbound("+27820000001", "YES")

    c = _contact(session_factory, cid)
    assert c.consent_status is ConsentStatus.PENDING
    assert c.consent_timestamp is None
    assert _turns(session_factory, cid) == []


def test_unknown_phone_is_rejected(machine, messenger):
    with pytest.raises(NotFoundError):
        machine.handle_inbound("whatsapp:+10000000000", "YES")
    assert messenger.sent == []


def test_lookup_falls_back_to_digits(machine, make_contact, session_factory):
    cid = make_contact(phone="27820000009")

    machine.handle_inbound("whatsapp:+27820000009", "YES")

    assert _contact(session_factory, cid).consent_status is ConsentStatus.CONSENTED


def test_consent_request_logs_system_turn(requester, make_contact, session_factory, messenger):
    cid = make_contact(first_name="Grace")

    delivery_id = requester.request(cid)

    assert delivery_id == "SM0001"
    text = messenger.sent[0][1]
    assert text.startswith("Hi Grace! Welcome to LeadFlow.")
    turns = _turns(session_factory, cid)
    assert [(t.sender, t.message) for t in turns] == [(Sender.SYSTEM, text)]


def test_consent_request_without_name_greets_there(requester, make_contact, messenger):
    cid = make_contact()
    requester.request(cid)
    assert messenger.sent[0][1].startswith("Hi there!")


def test_consent_request_for_missing_contact(requester):
    with pytest.raises(NotFoundError):
        requester.request("missing")


def test_failed_consent_request_records_nothing(requester, make_contact, session_factory, messenger):
    cid = make_contact()
    messenger.fail = True

    with pytest.raises(TransientExternalError):
        requester.request(cid)
    assert _turns(session_factory, cid) == []


class HoldingMessenger:
    """Blocks the first send until released so a second inbound can race it."""

    def __init__(self):
        self.sent = []
        self.calls = 0
        self.entered = threading.Event()
        self.release = threading.Event()

    def send(self, phone, text):
        self.calls += 1
        if not self.entered.is_set():
            self.entered.set()
            assert self.release.wait(5)
        self.sent.append((phone, text))
        return f"SM{len(self.sent):04d}"


def test_inbound_for_one_phone_is_handled_one_at_a_time(make_contact, session_factory, text_model, settings):
    cid = make_contact()
    messenger = HoldingMessenger()
    machine = ConsentStateMachine(session_factory, messenger, IntentRouter(text_model, settings))
    outcomes, errors = [], []

    def deliver(body):
        try:
            outcomes.append(machine.handle_inbound("whatsapp:+27820000001", body))
        except Exception as ex:  # surfaced by the assert below
            errors.append(ex)

    first = threading.Thread(target=deliver, args=("YES",))
    first.start()
    assert messenger.entered.wait(5)
    second = threading.Thread(target=deliver, args=("NO",))
    second.start()
    time.sleep(0.2)
    assert messenger.calls == 1

    messenger.release.set()
    first.join(5)
    second.join(5)

    assert errors == []
    assert outcomes == [InboundOutcome.CONSENTED, InboundOutcome.DENIED]
    assert [t.message for t in _turns(session_factory, cid)] == ["YES", "NO"]
    assert _contact(session_factory, cid).consent_status is ConsentStatus.DENIED
    assert [text for _, text in messenger.sent] == [CONFIRMATION_TEXT, DENIAL_TEXT]


def test_unknown_senders_do_not_grow_the_lock_pool(machine):
    size = len(machine._locks)
    for i in range(1000):
        with pytest.raises(NotFoundError):
            machine.handle_inbound(f"whatsapp:+1555{i:07d}", "YES")
    assert len(machine._locks) == size


def test_lock_stripes_pick_the_same_lock_for_a_key():
    stripes = LockStripes(size=8)
    assert len(stripes) == 8
    assert stripes.for_key("27820000001") is stripes.for_key("27820000001")
