"""
equitender/blueprints/notifications/__init__.py

Blueprint package export.
"""

from __future__ import annotations

from .routes import notifications_bp  # noqa: F401
