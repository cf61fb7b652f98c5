"""JSON HTTP surface for the scan pipeline."""

from .app import create_app

__all__ = ["create_app"]
