"""
Tender/Offer lifecycle state machines.

All status writes go through these modules.
"""

from __future__ import annotations

from . import offers, tenders  # noqa: F401
