"""
equitender/blueprints/offers/__init__.py

Blueprint package export.
"""

from __future__ import annotations

from .routes import offers_bp  # noqa: F401
