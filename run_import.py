import argparse
import json
from pathlib import Path

from leadflow.config import Settings
from leadflow.consent import ConsentRequester
from leadflow.db import init_db, make_engine, make_session_factory
from leadflow.ingestion import IngestionPipeline
from leadflow.logging_config import configure_logging
from leadflow.messenger import TwilioWhatsAppMessenger


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Clean a lead CSV for one owner")
    parser.add_argument("path", help="path/to/leads.csv")
    parser.add_argument("--owner", required=True, help="owner id the records belong to")
    parser.add_argument("--source", default="Manual Upload", help="source label stored on each record")
    parser.add_argument("--no-consent", action="store_true", help="skip consent requests for new contacts")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    configure_logging(settings.LOG_LEVEL)

    engine = make_engine(settings.DATABASE_URL)
    init_db(engine)
    SessionLocal = make_session_factory(engine)

    requester = None
    if not args.no_consent:
        requester = ConsentRequester(SessionLocal, TwilioWhatsAppMessenger(settings), settings)
    pipeline = IngestionPipeline(SessionLocal, settings, consent_requester=requester)

    path = Path(args.path)
    job = pipeline.ingest(path.read_bytes(), path.name, args.source, args.owner)
    print(json.dumps(job.to_dict(), indent=2))
    return 0 if job.status.value == "completed" else 1


if __name__ == "__main__":
    raise SystemExit(main())
