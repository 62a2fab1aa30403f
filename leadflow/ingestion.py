"""Upload ingestion: parse, classify, persist, and hand new contacts to the consent flow.

Each non-blank row is written to ``raw_records`` and then classified with a
fixed precedence (first match wins):

    invalid -> duplicate -> suppressed -> valid

Valid rows land in ``clean_records``; valid rows carrying a phone number
also upsert a ``Contact`` keyed on (phone, owner). Every Contact created by
the run gets one consent request once the job finishes, failed or not.
"""
import enum
import io
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone

import pandas as pd
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings
from .errors import StorageError, ValidationError
from .identity import (
    SuppressionFilter,
    has_contact_method,
    identity_hash,
    sanitize_cell,
)
from .locks import LockStripes
from .models import CleanRecord, Contact, Job, JobStatus, RawRecord, RecordStatus, SuppressionEntry

logger = logging.getLogger(__name__)

HEADER_MAP = {
    "name": "name",
    "full name": "name",
    "fullname": "name",
    "email": "email",
    "e-mail": "email",
    "email address": "email",
    "phone": "phone",
    "phone number": "phone",
    "mobile": "phone",
    "company": "company",
    "organization": "company",
    "organisation": "company",
}
CANONICAL_COLUMNS = ("name", "email", "phone")
PROGRESS_EVERY = 500
STORAGE_FAILURE_MESSAGE = "Storage error while processing upload"


def now_utc():
    return datetime.now(tz=timezone.utc)


def confidence_score(valid: int, total: int) -> int:
    """round(valid / total * 100) with halves rounded up; 0 for an empty batch."""
    if total <= 0:
        return 0
    return (200 * valid + total) // (2 * total)


class RowClass(str, enum.Enum):
    VALID = "valid"
    INVALID = "invalid"
    DUPLICATE = "duplicate"
    SUPPRESSED = "suppressed"


@dataclass
class LeadRow:
    name: str = ""
    email: str = ""
    phone: str = ""
    company: str = ""

    @property
    def record_hash(self) -> str:
        return identity_hash(self.name, self.email, self.phone)

    def sanitized(self) -> dict:
        return {
            "name": sanitize_cell(self.name),
            "email": sanitize_cell(self.email),
            "phone": sanitize_cell(self.phone),
            "company": sanitize_cell(self.company),
        }

    def split_name(self) -> tuple[str, str | None]:
        first, _, last = (self.name or "").strip().partition(" ")
        return first, (last.strip() or None)


@dataclass
class BatchStats:
    total: int = 0
    valid: int = 0
    invalid: int = 0
    duplicates: int = 0
    suppressed: int = 0
    expired: int = 0

    @property
    def confidence(self) -> int:
        return confidence_score(self.valid, self.total)

    def count(self, cls: RowClass) -> None:
        if cls is RowClass.VALID:
            self.valid += 1
        elif cls is RowClass.INVALID:
            self.invalid += 1
        elif cls is RowClass.DUPLICATE:
            self.duplicates += 1
        else:
            self.suppressed += 1

    def apply_to(self, job: Job) -> None:
        job.total_records = self.total
        job.valid_records = self.valid
        job.invalid_records = self.invalid
        job.duplicate_records = self.duplicates
        job.suppressed_records = self.suppressed
        job.expired_records = self.expired
        job.confidence_score = self.confidence


# ----------------------------
# Parsing
# ----------------------------
def normalize_cols(df: pd.DataFrame) -> pd.DataFrame:
    rename = {}
    taken = set()
    for orig in df.columns:
        norm = str(orig).lower().strip()
        target = HEADER_MAP.get(norm)
        # first column wins when several aliases map to one field
        if target and target not in taken:
            rename[orig] = target
            taken.add(target)
    return df.rename(columns=rename)


def parse_upload(data: bytes) -> pd.DataFrame:
    if not data or not data.strip():
        raise ValidationError("CSV file is empty")
    try:
        df = pd.read_csv(io.BytesIO(data), dtype=str, keep_default_na=False, skip_blank_lines=True)
    except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError, ValueError) as ex:
        raise ValidationError(
            "Failed to parse CSV file. Please ensure the file is properly formatted."
        ) from ex

    if len(df.index) == 0:
        raise ValidationError("No data found in CSV file. Please ensure the file contains data rows.")

    df = normalize_cols(df).fillna("")
    if not any(c in df.columns for c in CANONICAL_COLUMNS):
        raise ValidationError(
            "CSV must contain at least one of the following columns: name, email, phone"
        )
    return df


def is_blank_row(values) -> bool:
    return all(not str(v).strip() for v in values)


def extract_row(row: dict) -> LeadRow:
    def cell(key: str) -> str:
        v = row.get(key, "")
        return str(v).strip() if v is not None else ""

    return LeadRow(name=cell("name"), email=cell("email"), phone=cell("phone"), company=cell("company"))


def classify(
    lead: LeadRow,
    record_hash: str,
    batch_hashes: set,
    existing_hashes: set,
    suppression: SuppressionFilter,
) -> RowClass:
    """First-match-wins classification; records the hash of non-invalid rows in batch_hashes."""
    if not has_contact_method(lead.name, lead.email, lead.phone):
        return RowClass.INVALID
    if record_hash in batch_hashes or record_hash in existing_hashes:
        return RowClass.DUPLICATE
    batch_hashes.add(record_hash)
    if suppression.matches(lead.email, lead.phone):
        return RowClass.SUPPRESSED
    return RowClass.VALID


# ----------------------------
# Pipeline
# ----------------------------
class IngestionPipeline:
    def __init__(self, session_factory: sessionmaker, settings: Settings, consent_requester=None):
        self.session_factory = session_factory
        self.dedup_scope = settings.DEDUP_SCOPE
        self.consent_requester = consent_requester

    def create_job(self, owner_id: str, filename: str | None, source: str | None) -> Job:
        db: Session = self.session_factory()
        try:
            job = Job(
                owner_id=owner_id,
                filename=filename,
                source=source,
                status=JobStatus.PROCESSING,
                started_at=now_utc(),
            )
            db.add(job)
            db.commit()
            return job
        except SQLAlchemyError as ex:
            db.rollback()
            raise StorageError("Failed to create cleaning job") from ex
        finally:
            db.close()

    def ingest(self, data: bytes, filename: str | None, source: str, owner_id: str) -> Job:
        """Create the job and process it in the calling thread."""
        job = self.create_job(owner_id, filename, source)
        return self.run(job.id, data, owner_id, source)

    def run(self, job_id: str, data: bytes, owner_id: str, source: str) -> Job:
        """Process one upload; always leaves the job completed or failed.

        Contacts already committed when the job fails still get their
        consent request, since a re-upload sees them as existing.
        """
        logger.info("Starting processing for job %s (owner=%s)", job_id, owner_id)
        committed_contacts: list[str] = []
        try:
            try:
                stats = self._process(job_id, data, owner_id, source, committed_contacts)
            except ValidationError as ex:
                logger.warning("Job %s rejected: %s", job_id, ex)
                return self._finish(job_id, JobStatus.FAILED, error=str(ex))
            except (StorageError, SQLAlchemyError):
                logger.exception("Storage failure in job %s", job_id)
                return self._finish(job_id, JobStatus.FAILED, error=STORAGE_FAILURE_MESSAGE)
            except Exception as ex:
                logger.exception("Error processing job %s", job_id)
                return self._finish(
                    job_id, JobStatus.FAILED, error=str(ex) or "Unknown error occurred during processing"
                )

            job = self._finish(job_id, JobStatus.COMPLETED, stats=stats)
            logger.info("Completed job %s: %s (confidence=%s)", job_id, stats, stats.confidence)
            return job
        finally:
            self._request_consent(committed_contacts)

    def reset_working_set(self, db: Session, owner_id: str, job_id: str) -> int:
        """Drop the owner's staged raw records from earlier uploads."""
        n = (
            db.query(RawRecord)
            .filter(RawRecord.owner_id == owner_id, RawRecord.job_id != job_id)
            .delete(synchronize_session=False)
        )
        db.commit()
        logger.info("Cleared %d raw records for owner %s", n, owner_id)
        return n

    def _existing_hashes(self, db: Session, owner_id: str) -> set:
        q = db.query(CleanRecord.record_hash)
        if self.dedup_scope == "owner":
            q = q.filter(CleanRecord.owner_id == owner_id)
        return {h for (h,) in q.all()}

    def _process(self, job_id: str, data: bytes, owner_id: str, source: str, committed_contacts: list) -> BatchStats:
        # contact ids reach committed_contacts only once their row is committed
        df = parse_upload(data)
        logger.info("Parsed %d rows for job %s", len(df.index), job_id)

        db: Session = self.session_factory()
        try:
            self.reset_working_set(db, owner_id, job_id)

            suppression = SuppressionFilter.from_entries(db.query(SuppressionEntry).all())
            existing_hashes = self._existing_hashes(db, owner_id)
            batch_hashes: set = set()
            pending_contacts: list[str] = []
            stats = BatchStats()
            job = db.get(Job, job_id)

            for row in df.to_dict(orient="records"):
                if is_blank_row(row.values()):
                    continue
                stats.total += 1

                lead = extract_row(row)
                record_hash = lead.record_hash
                clean_fields = lead.sanitized()
                db.add(RawRecord(
                    owner_id=owner_id,
                    job_id=job_id,
                    source=source,
                    record_hash=record_hash,
                    **clean_fields,
                ))

                cls = classify(lead, record_hash, batch_hashes, existing_hashes, suppression)
                stats.count(cls)
                if cls is RowClass.VALID:
                    db.add(CleanRecord(
                        owner_id=owner_id,
                        job_id=job_id,
                        source=source,
                        record_hash=record_hash,
                        status=RecordStatus.VALID,
                        is_expired=False,
                        created_at=now_utc(),
                        **clean_fields,
                    ))
                    if lead.phone:
                        contact = self._upsert_contact(db, owner_id, lead)
                        if contact is not None:
                            pending_contacts.append(contact.id)

                if stats.total % PROGRESS_EVERY == 0:
                    stats.apply_to(job)
                    db.commit()
                    committed_contacts.extend(pending_contacts)
                    pending_contacts.clear()

            db.commit()
            committed_contacts.extend(pending_contacts)
            return stats
        except SQLAlchemyError as ex:
            db.rollback()
            raise StorageError(str(ex)) from ex
        finally:
            db.close()

    def _upsert_contact(self, db: Session, owner_id: str, lead: LeadRow) -> Contact | None:
        """Insert a pending Contact for (phone, owner) unless one exists; None when it did."""
        existing = (
            db.query(Contact)
            .filter(Contact.phone == lead.phone, Contact.owner_id == owner_id)
            .first()
        )
        if existing:
            return None
        first, last = lead.split_name()
        c = Contact(
            owner_id=owner_id,
            first_name=first or None,
            last_name=last,
            phone=lead.phone,
            email=lead.email or None,
        )
        db.add(c)
        # assigns the id and makes the row visible to later lookups in this batch
        db.flush()
        return c

    def _finish(self, job_id: str, status: JobStatus, stats: BatchStats | None = None, error: str | None = None) -> Job:
        db: Session = self.session_factory()
        try:
            job = db.get(Job, job_id)
            if job is None:
                raise StorageError(f"Job {job_id} disappeared")
            if stats is not None:
                stats.apply_to(job)
            job.status = status
            job.error_message = error
            job.completed_at = now_utc()
            db.commit()
            return job
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not record final status %s for job %s", status.value, job_id)
            raise
        finally:
            db.close()

    def _request_consent(self, contact_ids: list) -> None:
        if self.consent_requester is None or not contact_ids:
            return
        logger.info("Triggering consent requests for %d new contacts", len(contact_ids))
        for contact_id in contact_ids:
            try:
                self.consent_requester.request(contact_id)
            except Exception:
                logger.exception("Error sending consent request for contact %s", contact_id)


# ----------------------------
# Background runner
# ----------------------------
class IngestionRunner:
    """
    Runs pipeline jobs on a thread pool. submit() returns right away with
    the job (already in `processing`) and a Future resolving to the final
    Job. Jobs for one owner run one at a time; different owners overlap.
    """

    def __init__(self, pipeline: IngestionPipeline, max_workers: int = 4):
        self.pipeline = pipeline
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ingest")
        self._owner_locks = LockStripes()
        self._guard = threading.Lock()
        self._futures: dict[str, Future] = {}

    def _run_serialized(self, job_id: str, data: bytes, owner_id: str, source: str) -> Job:
        with self._owner_locks.for_key(owner_id):
            try:
                return self.pipeline.run(job_id, data, owner_id, source)
            except Exception:
                # nobody may ever call wait(); make the failure visible here
                logger.exception("Job %s crashed before reaching a final status", job_id)
                raise

    def submit(self, data: bytes, filename: str | None, source: str, owner_id: str) -> tuple[Job, Future]:
        job = self.pipeline.create_job(owner_id, filename, source)
        fut = self._executor.submit(self._run_serialized, job.id, data, owner_id, source)
        with self._guard:
            self._futures[job.id] = fut
        fut.add_done_callback(lambda f, jid=job.id: self._forget(jid))
        return job, fut

    def _forget(self, job_id: str) -> None:
        with self._guard:
            self._futures.pop(job_id, None)

    def wait(self, job_id: str, timeout: float | None = None) -> Job | None:
        """Block until the job's run finishes; None if it is not in flight."""
        with self._guard:
            fut = self._futures.get(job_id)
        if fut is None:
            return None
        return fut.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
