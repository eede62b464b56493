"""JSON review API for batch processing."""

from .app import create_app

__all__ = ["create_app"]
