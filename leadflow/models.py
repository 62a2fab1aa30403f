import enum
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from .db import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum(cls):
    # store the lowercase values, not the member names
    return Enum(cls, values_callable=lambda e: [m.value for m in e], native_enum=False, length=20)


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ConsentStatus(str, enum.Enum):
    PENDING = "pending"
    CONSENTED = "consented"
    DENIED = "denied"


class Sender(str, enum.Enum):
    CONTACT = "contact"
    SYSTEM = "system"
    AGENT = "agent"


class RecordStatus(str, enum.Enum):
    VALID = "valid"


class Job(Base):
    __tablename__ = "cleaning_jobs"
    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(String, nullable=False, index=True)
    filename = Column(String, nullable=True)
    source = Column(String, nullable=True)
    status = Column(_enum(JobStatus), nullable=False, default=JobStatus.QUEUED)  # queued -> processing -> completed | failed
    total_records = Column(Integer, nullable=False, default=0)
    valid_records = Column(Integer, nullable=False, default=0)
    invalid_records = Column(Integer, nullable=False, default=0)
    duplicate_records = Column(Integer, nullable=False, default=0)
    suppressed_records = Column(Integer, nullable=False, default=0)
    expired_records = Column(Integer, nullable=False, default=0)
    confidence_score = Column(Integer, nullable=False, default=0)  # 0..100
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "source": self.source,
            "status": self.status.value,
            "total": self.total_records,
            "valid": self.valid_records,
            "invalid": self.invalid_records,
            "duplicate": self.duplicate_records,
            "suppressed": self.suppressed_records,
            "expired": self.expired_records,
            "confidence_score": self.confidence_score,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class RawRecord(Base):
    __tablename__ = "raw_records"
    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False, index=True)
    job_id = Column(String(36), ForeignKey("cleaning_jobs.id"), nullable=False, index=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    company = Column(String, nullable=True)
    source = Column(String, nullable=True)
    record_hash = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CleanRecord(Base):
    __tablename__ = "clean_records"
    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String, nullable=False, index=True)
    job_id = Column(String(36), ForeignKey("cleaning_jobs.id"), nullable=False, index=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    company = Column(String, nullable=True)
    source = Column(String, nullable=True)
    record_hash = Column(String(64), nullable=False, index=True)
    status = Column(_enum(RecordStatus), nullable=False, default=RecordStatus.VALID)
    is_expired = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class SuppressionEntry(Base):
    __tablename__ = "suppression_list"
    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=True, index=True)  # lowercased
    phone = Column(String, nullable=True, index=True)  # digits only
    reason = Column(String, nullable=True)  # opt_out | manual | regulator
    ts = Column(DateTime(timezone=True), server_default=func.now())


class Contact(Base):
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("phone", "owner_id", name="uq_contacts_phone_owner"),)
    id = Column(String(36), primary_key=True, default=_uuid)
    owner_id = Column(String, nullable=False, index=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    phone = Column(String, nullable=False, index=True)
    email = Column(String, nullable=True)
    consent_status = Column(_enum(ConsentStatus), nullable=False, default=ConsentStatus.PENDING)  # pending -> consented | denied
    consent_timestamp = Column(DateTime(timezone=True), nullable=True)
    latest_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class ConversationTurn(Base):
    __tablename__ = "conversation_turns"
    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(String(36), ForeignKey("contacts.id"), nullable=False, index=True)
    sender = Column(_enum(Sender), nullable=False)
    message = Column(Text, nullable=False)
    agent_label = Column(String, nullable=True)
    ts = Column(DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "sender": self.sender.value,
            "message": self.message,
            "agent": self.agent_label,
            "ts": self.ts.isoformat() if self.ts else None,
        }
