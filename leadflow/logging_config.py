"""Logging setup shared by the API service and the import CLI."""
import logging


def configure_logging(level: str | None = None) -> None:
    """Initialize root logging with the shared format.

    Called once at process start with ``Settings.LOG_LEVEL``.
    """
    logging.basicConfig(
        level=(level or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
