"""API routes for the status server."""

from . import status

__all__ = ["status"]
