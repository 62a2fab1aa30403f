import logging

from fastapi import Depends, FastAPI, File, Form, Header, Request, UploadFile
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .ai import GeminiTextModel, IntentRouter, TextModel
from .config import Settings
from .consent import ConsentRequester, ConsentStateMachine, InboundOutcome
from .db import init_db, make_engine, make_session_factory
from .errors import (
    AuthError,
    LeadFlowError,
    NotFoundError,
    StorageError,
    TransientExternalError,
    ValidationError,
)
from .identity import normalize_email, normalize_phone
from .ingestion import IngestionPipeline, IngestionRunner
from .logging_config import configure_logging
from .messenger import Messenger, TwilioWhatsAppMessenger
from .models import Contact, ConversationTurn, Job, SuppressionEntry
from .scheduler import build_scheduler

logger = logging.getLogger(__name__)

STATUS_FOR_ERROR = {
    AuthError: 401,
    ValidationError: 400,
    NotFoundError: 404,
    StorageError: 500,
    TransientExternalError: 500,
}

ACK_TEXT = {
    InboundOutcome.CONSENTED: "Consent granted",
    InboundOutcome.DENIED: "Consent denied",
    InboundOutcome.CONSENT_REQUIRED: "Consent required",
    InboundOutcome.AGENT_REPLIED: "Reply sent",
}


class SuppressionIn(BaseModel):
    email: str | None = None
    phone: str | None = None
    reason: str | None = "manual"


def create_app(
    settings: Settings | None = None,
    messenger: Messenger | None = None,
    text_model: TextModel | None = None,
) -> FastAPI:
    """Wire every component from one Settings instance.

    Run with ``uvicorn leadflow.main:create_app --factory``.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.LOG_LEVEL)

    engine = make_engine(settings.DATABASE_URL)
    init_db(engine)
    SessionLocal = make_session_factory(engine)

    messenger = messenger or TwilioWhatsAppMessenger(settings)
    text_model = text_model or GeminiTextModel(settings)

    requester = ConsentRequester(SessionLocal, messenger, settings)
    router = IntentRouter(text_model, settings)
    pipeline = IngestionPipeline(SessionLocal, settings, consent_requester=requester)

    app = FastAPI(title="LeadFlow")
    app.state.settings = settings
    app.state.session_factory = SessionLocal
    app.state.consent = ConsentStateMachine(SessionLocal, messenger, router)
    app.state.requester = requester
    app.state.runner = IngestionRunner(pipeline, max_workers=settings.INGEST_WORKERS)
    app.state.scheduler = None

    @app.on_event("startup")
    async def startup():
        app.state.scheduler = build_scheduler(settings, SessionLocal)
        app.state.scheduler.start()
        logger.info("[scheduler] started with jobs: %s", app.state.scheduler.get_jobs())

    @app.on_event("shutdown")
    async def shutdown():
        if app.state.scheduler is not None:
            app.state.scheduler.shutdown(wait=False)
        app.state.runner.shutdown(wait=True)
        close = getattr(messenger, "close", None)
        if close is not None:
            close()

    @app.exception_handler(LeadFlowError)
    async def leadflow_error(request: Request, ex: LeadFlowError):
        status = next((code for cls, code in STATUS_FOR_ERROR.items() if isinstance(ex, cls)), 500)
        detail = "Storage error" if isinstance(ex, StorageError) else str(ex)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, ex)
        return JSONResponse(status_code=status, content={"error": detail})

    def current_owner(authorization: str | None = Header(None)) -> str:
        if not authorization or not authorization.lower().startswith("bearer "):
            raise AuthError("Missing authorization header")
        token = authorization[len("bearer "):].strip()
        owner = settings.API_TOKENS.get(token)
        if not owner:
            raise AuthError("Unauthorized")
        return owner

    def owned_contact(contact_id: str, owner_id: str) -> Contact:
        db = SessionLocal()
        try:
            c = db.get(Contact, contact_id)
        finally:
            db.close()
        if c is None or c.owner_id != owner_id:
            raise NotFoundError("Contact not found")
        return c

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/uploads")
    def upload(
        file: UploadFile | None = File(None),
        source: str = Form("Manual Upload"),
        owner_id: str = Depends(current_owner),
    ):
        if file is None:
            raise ValidationError("No file provided")
        data = file.file.read()
        logger.info("Processing file %s for owner %s", file.filename, owner_id)
        job, _ = app.state.runner.submit(data, file.filename, source or "Manual Upload", owner_id)
        return {"message": "Processing started", "jobId": job.id}

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str, owner_id: str = Depends(current_owner)):
        db = SessionLocal()
        try:
            job = db.get(Job, job_id)
            if job is None or job.owner_id != owner_id:
                raise NotFoundError("Job not found")
            return job.to_dict()
        finally:
            db.close()

    @app.post("/webhooks/whatsapp", response_class=PlainTextResponse)
    def whatsapp_webhook(
        sender: str | None = Form(None, alias="From"),
        body: str | None = Form(None, alias="Body"),
    ):
        if not sender or not (sender.replace("whatsapp:", "").strip()) or not body:
            raise ValidationError("Invalid request")
        outcome = app.state.consent.handle_inbound(sender, body)
        return ACK_TEXT[outcome]

    @app.post("/contacts/{contact_id}/consent-request")
    def resend_consent(contact_id: str, owner_id: str = Depends(current_owner)):
        c = owned_contact(contact_id, owner_id)
        delivery_id = requester.request(c.id)
        return {"success": True, "messageSid": delivery_id}

    @app.get("/contacts/{contact_id}/conversation")
    def conversation(contact_id: str, owner_id: str = Depends(current_owner)):
        c = owned_contact(contact_id, owner_id)
        db = SessionLocal()
        try:
            turns = (
                db.query(ConversationTurn)
                .filter(ConversationTurn.contact_id == c.id)
                .order_by(ConversationTurn.id)
                .all()
            )
            return {
                "contact_id": c.id,
                "consent_status": c.consent_status.value,
                "turns": [t.to_dict() for t in turns],
            }
        finally:
            db.close()

    @app.post("/suppressions")
    def add_suppression(entry: SuppressionIn, owner_id: str = Depends(current_owner)):
        email = normalize_email(entry.email) or None
        phone = normalize_phone(entry.phone) or None
        if not email and not phone:
            raise ValidationError("Provide an email or a phone")
        db = SessionLocal()
        try:
            db.add(SuppressionEntry(email=email, phone=phone, reason=entry.reason))
            db.commit()
        finally:
            db.close()
        logger.info("Suppression added by %s (email=%s, phone=%s)", owner_id, email, phone)
        return {"email": email, "phone": phone}

    return app
