"""FastAPI JSON API for finmail."""

from finmail.web.app import create_app

__all__ = ["create_app"]
