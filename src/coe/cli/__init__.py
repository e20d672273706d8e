"""Command-line interface for coe."""

from .app import app

__all__ = ["app"]
