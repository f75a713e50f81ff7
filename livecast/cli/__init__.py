"""Command-line interface for livecast."""

from .commands import app

__all__ = ["app"]
