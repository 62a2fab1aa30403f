import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import google.generativeai as genai
from jinja2 import Template

from .config import Settings
from .errors import TransientExternalError

logger = logging.getLogger(__name__)


class Intent(str, enum.Enum):
    UPDATE_NUMBER = "update_number"
    CHECK_STATUS = "check_status"
    MISSING_DATA = "missing_data"
    GENERAL_SUPPORT = "general_support"
    FOLLOW_UP = "follow_up"


@dataclass
class ContactContext:
    name: str | None
    email: str | None
    phone: str
    consent_timestamp: datetime | None = None


@dataclass
class AgentReply:
    text: str
    agent_label: str
    intent: Intent


# =========================
# Triage prompt
# =========================
TRIAGE_SYSTEM = "You are a triage agent that identifies user intent."

TRIAGE_TMPL = Template("""You are a triage agent. Analyze this message and determine the user's intent.
Possible intents: {{ intents }}.
Message: "{{ message }}"
Lead info: Name: {{ name or 'Unknown' }}, Email: {{ email or 'None' }}, Phone: {{ phone }}
Respond with just the intent name.""")

# =========================
# Agent personas (system prompts)
# =========================
UPDATE_TMPL = Template("""You are a data collection agent. Help the user update their information.
Current lead data: Name: {{ name or 'Unknown' }}, Email: {{ email or 'None' }}, Phone: {{ phone }}.
Ask what information they want to update and guide them to provide it clearly.""")

STATUS_TMPL = Template("""You are a support agent. Provide status information about the lead.
Lead status: Consent granted on {{ consent_timestamp or 'an unknown date' }}. Data is being processed.
Be helpful and informative.""")

MISSING_TMPL = Template("""You are a data collection agent. The system detected missing information.
Current data: Name: {{ name or 'Unknown' }}, Email: {{ email or 'None' }}, Phone: {{ phone }}.
Politely ask the user to provide the missing information.""")

FOLLOW_TMPL = Template("""You are a follow-up agent. Send friendly reminders to complete missing information.
Keep it professional and encouraging.""")

GENERAL_TMPL = Template("""You are a helpful support agent for a lead management system.
Answer questions about the service, data processing, and help with any concerns.
Be professional, friendly, and concise.""")

PERSONAS: dict[Intent, tuple[str, Template]] = {
    Intent.UPDATE_NUMBER: ("Missing Data Agent", UPDATE_TMPL),
    Intent.CHECK_STATUS: ("Support Agent", STATUS_TMPL),
    Intent.MISSING_DATA: ("Missing Data Agent", MISSING_TMPL),
    Intent.FOLLOW_UP: ("Follow-Up Agent", FOLLOW_TMPL),
    Intent.GENERAL_SUPPORT: ("Support Agent", GENERAL_TMPL),
}


def intent_from_answer(answer: str) -> Intent:
    """Map the triage model's free-text answer onto the fixed vocabulary."""
    a = (answer or "").strip().lower()
    if "update" in a or "number" in a:
        return Intent.UPDATE_NUMBER
    if "status" in a or "check" in a:
        return Intent.CHECK_STATUS
    if "missing" in a or "data" in a:
        return Intent.MISSING_DATA
    if "follow" in a:
        return Intent.FOLLOW_UP
    return Intent.GENERAL_SUPPORT


def persona_for(intent: Intent, ctx: ContactContext) -> tuple[str, str]:
    label, tmpl = PERSONAS[intent]
    system = tmpl.render(
        name=ctx.name,
        email=ctx.email,
        phone=ctx.phone,
        consent_timestamp=ctx.consent_timestamp.isoformat() if ctx.consent_timestamp else None,
    )
    return label, system


# =========================
# Text model backends
# =========================
class TextModel(Protocol):
    def complete(self, system: str, prompt: str, *, temperature: float, max_tokens: int | None = None) -> str:
        ...


class GeminiTextModel:
    def __init__(self, settings: Settings):
        self.api_key = settings.GEMINI_API_KEY
        self.model_name = settings.GEMINI_MODEL

    def complete(self, system: str, prompt: str, *, temperature: float, max_tokens: int | None = None) -> str:
        if not self.api_key:
            raise TransientExternalError("Missing Gemini configuration")
        generation_config = {"temperature": temperature}
        if max_tokens:
            generation_config["max_output_tokens"] = max_tokens
        try:
            genai.configure(api_key=self.api_key)
            model = genai.GenerativeModel(self.model_name, system_instruction=system)
            resp = model.generate_content(prompt, generation_config=generation_config)
            return (getattr(resp, "text", "") or "").strip()
        except Exception as ex:
            logger.error("Gemini error: %s", ex)
            raise TransientExternalError("Text model request failed") from ex


# =========================
# Public API
# =========================
class IntentRouter:
    """
    Two sequential model calls: triage into an Intent, then generate the
    reply with that intent's persona. Either failing raises
    TransientExternalError and nothing is returned.
    """

    def __init__(self, model: TextModel, settings: Settings):
        self.model = model
        self.triage_temperature = settings.TRIAGE_TEMPERATURE
        self.agent_temperature = settings.AGENT_TEMPERATURE
        self.agent_max_tokens = settings.AGENT_MAX_TOKENS

    def classify(self, message: str, ctx: ContactContext) -> Intent:
        prompt = TRIAGE_TMPL.render(
            intents=", ".join(i.value for i in Intent),
            message=message,
            name=ctx.name,
            email=ctx.email,
            phone=ctx.phone,
        )
        answer = self.model.complete(TRIAGE_SYSTEM, prompt, temperature=self.triage_temperature)
        intent = intent_from_answer(answer)
        logger.info("Detected intent %s (raw=%r)", intent.value, answer)
        return intent

    def route(self, message: str, ctx: ContactContext) -> AgentReply:
        intent = self.classify(message, ctx)
        label, system = persona_for(intent, ctx)
        text = self.model.complete(
            system,
            message,
            temperature=self.agent_temperature,
            max_tokens=self.agent_max_tokens,
        )
        if not (text or "").strip():
            raise TransientExternalError("Empty reply from text model")
        return AgentReply(text=text.strip(), agent_label=label, intent=intent)
