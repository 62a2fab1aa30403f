from pydantic import BaseModel
from dotenv import load_dotenv
import os


def _parse_tokens(raw: str) -> dict[str, str]:
    """'tok1:owner1,tok2:owner2' -> {'tok1': 'owner1', 'tok2': 'owner2'}"""
    tokens = {}
    for pair in (raw or "").split(","):
        pair = pair.strip()
        if not pair or ":" not in pair:
            continue
        token, owner = pair.split(":", 1)
        if token.strip() and owner.strip():
            tokens[token.strip()] = owner.strip()
    return tokens


class Settings(BaseModel):
    DATABASE_URL: str = "sqlite:///./leadflow.db"
    API_TOKENS: dict[str, str] = {}
    BRAND_NAME: str = "LeadFlow"

    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_WHATSAPP_NUMBER: str = ""
    TWILIO_API_BASE: str = "https://api.twilio.com/2010-04-01"

    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.5-flash"
    TRIAGE_TEMPERATURE: float = 0.3
    AGENT_TEMPERATURE: float = 0.7
    AGENT_MAX_TOKENS: int = 200

    DEDUP_SCOPE: str = "global"  # global | owner
    RECORD_TTL_DAYS: int = 30
    EXPIRY_SWEEP_HOUR: int = 3
    INGEST_WORKERS: int = 4
    HTTP_TIMEOUT_SECONDS: float = 30.0

    TIMEZONE: str = "UTC"
    LOG_LEVEL: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        return cls(
            DATABASE_URL=os.getenv("DATABASE_URL", "sqlite:///./leadflow.db"),
            API_TOKENS=_parse_tokens(os.getenv("API_TOKENS", "")),
            BRAND_NAME=os.getenv("BRAND_NAME", "LeadFlow"),
            TWILIO_ACCOUNT_SID=os.getenv("TWILIO_ACCOUNT_SID", ""),
            TWILIO_AUTH_TOKEN=os.getenv("TWILIO_AUTH_TOKEN", ""),
            TWILIO_WHATSAPP_NUMBER=os.getenv("TWILIO_WHATSAPP_NUMBER", ""),
            TWILIO_API_BASE=os.getenv("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01"),
            GEMINI_API_KEY=os.getenv("GEMINI_API_KEY", ""),
            GEMINI_MODEL=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
            TRIAGE_TEMPERATURE=float(os.getenv("TRIAGE_TEMPERATURE", "0.3")),
            AGENT_TEMPERATURE=float(os.getenv("AGENT_TEMPERATURE", "0.7")),
            AGENT_MAX_TOKENS=int(os.getenv("AGENT_MAX_TOKENS", "200")),
            DEDUP_SCOPE=os.getenv("DEDUP_SCOPE", "global").strip().lower(),
            RECORD_TTL_DAYS=int(os.getenv("RECORD_TTL_DAYS", "30")),
            EXPIRY_SWEEP_HOUR=int(os.getenv("EXPIRY_SWEEP_HOUR", "3")),
            INGEST_WORKERS=int(os.getenv("INGEST_WORKERS", "4")),
            HTTP_TIMEOUT_SECONDS=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
            TIMEZONE=os.getenv("TIMEZONE", "UTC"),
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
        )
