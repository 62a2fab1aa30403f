"""Record identity, field validation and suppression checks used by ingestion."""
import hashlib
import re
from typing import Iterable

EMAIL_RE = re.compile(r"^[\w.-]+@[\w.-]+\.\w+$")
FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")
PHONE_MIN_DIGITS = 10
PHONE_MAX_DIGITS = 15


def normalize_phone(phone: str | None) -> str:
    return re.sub(r"\D", "", phone or "")


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def identity_hash(name: str | None, email: str | None, phone: str | None) -> str:
    """SHA-256 over (lowercased name, lowercased email, digits-only phone).

    Fields are joined with a unit separator so that shifting characters
    between adjacent fields yields a different fingerprint.
    """
    parts = [
        (name or "").strip().lower(),
        normalize_email(email),
        normalize_phone(phone),
    ]
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


def sanitize_cell(value: str | None) -> str:
    """Neutralize spreadsheet formula injection by quoting dangerous prefixes."""
    if not value:
        return ""
    trimmed = value.strip()
    if trimmed.startswith(FORMULA_PREFIXES):
        return "'" + trimmed
    return value


def is_valid_email(email: str | None) -> bool:
    return bool(email) and bool(EMAIL_RE.match(email.strip()))


def is_valid_phone(phone: str | None) -> bool:
    return PHONE_MIN_DIGITS <= len(normalize_phone(phone)) <= PHONE_MAX_DIGITS


def has_contact_method(name: str | None, email: str | None, phone: str | None) -> bool:
    email_ok = is_valid_email(email)
    phone_ok = is_valid_phone(phone)
    named = bool(name) and (email_ok or phone_ok)
    return named or email_ok or phone_ok


class SuppressionFilter:
    """In-memory do-not-contact set keyed on normalized email and phone."""

    def __init__(self, emails: Iterable[str] = (), phones: Iterable[str] = ()):
        self.emails = {normalize_email(e) for e in emails if normalize_email(e)}
        self.phones = {normalize_phone(p) for p in phones if normalize_phone(p)}

    @classmethod
    def from_entries(cls, entries) -> "SuppressionFilter":
        entries = list(entries)
        return cls(
            emails=[e.email for e in entries if e.email],
            phones=[e.phone for e in entries if e.phone],
        )

    def matches(self, email: str | None, phone: str | None) -> bool:
        e = normalize_email(email)
        p = normalize_phone(phone)
        return (bool(e) and e in self.emails) or (bool(p) and p in self.phones)

    def __len__(self) -> int:
        return len(self.emails) + len(self.phones)
