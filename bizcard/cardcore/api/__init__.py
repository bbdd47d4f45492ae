"""
API module for CardCore.

This module provides the HTTP interface (FastAPI) over the services.

Invariants:
    - Owner-scoped routes require the principal header
    - Version conflicts are answered with 409 and the current version

How to change safely:
    - Add routes, don't change the shape of existing responses
"""

from .http_server import create_app
from .settings import Settings

__all__ = [
    "create_app",
    "Settings",
]
