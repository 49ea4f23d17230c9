"""
equitender/blueprints/payments/__init__.py

Blueprint package export.
"""

from __future__ import annotations

from .routes import payments_bp  # noqa: F401
