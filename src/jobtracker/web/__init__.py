"""Web layer: FastAPI app streaming pipeline events as NDJSON."""

from jobtracker.web.app import create_app

__all__ = ["create_app"]
