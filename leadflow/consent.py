import enum
import logging
import threading
from datetime import datetime, timezone

from jinja2 import Template
from sqlalchemy.orm import Session, sessionmaker

from .ai import ContactContext, IntentRouter
from .config import Settings
from .errors import NotFoundError
from .identity import normalize_phone
from .locks import LockStripes
from .messenger import Messenger, strip_channel_prefix
from .models import ConsentStatus, Contact, ConversationTurn, Sender

logger = logging.getLogger(__name__)

CONSENT_REQUEST_TMPL = Template(
    "Hi {{ name or 'there' }}! Welcome to {{ brand }}. To proceed with processing your data, "
    "please reply YES to consent to our data processing. Reply NO to deny. Thank you!"
)
CONFIRMATION_TEXT = "Thank you for your consent! Your data will be processed now."
DENIAL_TEXT = "Understood. Your data will not be processed. Thank you."
REMINDER_TEXT = (
    "We need your YES consent before continuing. "
    "Please reply YES to consent to our data processing, or NO to deny."
)


class InboundOutcome(str, enum.Enum):
    CONSENTED = "consented"
    DENIED = "denied"
    CONSENT_REQUIRED = "consent_required"
    AGENT_REPLIED = "agent_replied"


def now_utc():
    return datetime.now(tz=timezone.utc)


def _turn(contact: Contact, sender: Sender, message: str, agent_label: str | None = None) -> ConversationTurn:
    return ConversationTurn(
        contact_id=contact.id,
        sender=sender,
        message=message,
        agent_label=agent_label,
        ts=now_utc(),
    )


def find_contact(db: Session, phone: str) -> Contact | None:
    """Exact stored phone first, then the usual digit-only spellings of it."""
    q = db.query(Contact).order_by(Contact.created_at.desc())
    c = q.filter(Contact.phone == phone).first()
    if c:
        return c
    digits = normalize_phone(phone)
    if not digits:
        return None
    return q.filter(Contact.phone.in_([digits, "+" + digits])).first()


class ConsentRequester:
    """Sends the YES/NO consent prompt to a contact and logs it as a system turn."""

    def __init__(self, session_factory: sessionmaker, messenger: Messenger, settings: Settings):
        self.session_factory = session_factory
        self.messenger = messenger
        self.brand = settings.BRAND_NAME

    def render(self, contact: Contact) -> str:
        return CONSENT_REQUEST_TMPL.render(name=contact.first_name, brand=self.brand)

    def request(self, contact_id: str) -> str:
        db: Session = self.session_factory()
        try:
            c = db.get(Contact, contact_id)
            if c is None:
                raise NotFoundError(f"Contact {contact_id} not found")
            text = self.render(c)
            delivery_id = self.messenger.send(c.phone, text)
            db.add(_turn(c, Sender.SYSTEM, text))
            db.commit()
            logger.info("Consent request sent to contact %s (delivery=%s)", c.id, delivery_id)
            return delivery_id
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class ConsentStateMachine:
    """
    Per-contact consent protocol driven by inbound messages.

    Exact YES/NO (trimmed, any case) always sets consented/denied. Anything
    else gets a reminder until the contact has consented, after which it is
    routed through the IntentRouter. Changes are staged, the outbound reply
    is sent, and only then committed, so a failed send leaves no trace.
    """

    def __init__(self, session_factory: sessionmaker, messenger: Messenger, router: IntentRouter):
        self.session_factory = session_factory
        self.messenger = messenger
        self.router = router
        self._locks = LockStripes()

    def _lock_for(self, phone: str) -> threading.Lock:
        return self._locks.for_key(normalize_phone(phone) or phone)

    def handle_inbound(self, sender: str, body: str) -> InboundOutcome:
        phone = strip_channel_prefix(sender)
        with self._lock_for(phone):
            return self._apply(phone, body)

    def _apply(self, phone: str, body: str) -> InboundOutcome:
        db: Session = self.session_factory()
        try:
            c = find_contact(db, phone)
            if c is None:
                logger.info("No contact found for phone %s", phone)
                raise NotFoundError(f"No contact for {phone}")

            normalized = body.strip().upper()

            if normalized == "YES":
                c.consent_status = ConsentStatus.CONSENTED
                c.consent_timestamp = now_utc()
                c.latest_message = body
                db.add(_turn(c, Sender.CONTACT, body))
                outcome, reply = InboundOutcome.CONSENTED, CONFIRMATION_TEXT
            elif normalized == "NO":
                c.consent_status = ConsentStatus.DENIED
                c.latest_message = body
                db.add(_turn(c, Sender.CONTACT, body))
                outcome, reply = InboundOutcome.DENIED, DENIAL_TEXT
            elif c.consent_status != ConsentStatus.CONSENTED:
                db.add(_turn(c, Sender.CONTACT, body))
                outcome, reply = InboundOutcome.CONSENT_REQUIRED, REMINDER_TEXT
            else:
                ctx = ContactContext(
                    name=" ".join(p for p in (c.first_name, c.last_name) if p) or None,
                    email=c.email,
                    phone=c.phone,
                    consent_timestamp=c.consent_timestamp,
                )
                agent = self.router.route(body, ctx)
                db.add(_turn(c, Sender.CONTACT, body))
                db.add(_turn(c, Sender.AGENT, agent.text, agent.agent_label))
                c.latest_message = body
                outcome, reply = InboundOutcome.AGENT_REPLIED, agent.text

            delivery_id = self.messenger.send(c.phone, reply)
            db.commit()
            logger.info(
                "Inbound from contact %s -> %s (status=%s, delivery=%s)",
                c.id, outcome.value, c.consent_status.value, delivery_id,
            )
            return outcome
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
