"""Calendar feed ingester and event query API."""

from .api import app

__all__ = ["app"]
