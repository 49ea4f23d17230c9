"""
equitender/anonymity.py

AnonymityGate: decides whether a bidder's identity may be shown to the
procuring organization of a tender.

Rules:
- CLASSIC tenders: identity always visible.
- ANONYMOUS tenders: visible once now > deadline, or once identity_revealed is set.
- Evaluated on every read. Never cached, so a read one second after the
  deadline already sees identities.

Read paths that surface organization name / city / canton / contact details
must go through present_offer(); it substitutes the offer's anonymous_id.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from .models import DisclosureMode, Offer, Tender
from .utils import utcnow

IDENTITY_FIELDS = ("name", "email", "phone", "address", "city", "canton")


def can_reveal_identity(tender: Tender, now: Optional[datetime] = None) -> bool:
    """Pure decision, no side effects."""
    if tender.mode != DisclosureMode.ANONYMOUS:
        return True
    now = now or utcnow()
    return bool(tender.identity_revealed or now > tender.deadline)


# Collaborator-facing alias
can_reveal = can_reveal_identity


def may_reveal_now(tender: Tender, now: datetime, explicit: bool = False) -> bool:
    """
    Whether identity_revealed may flip to true at `now`.

    explicit: an authorized actor is taking a disclosure action (reveal, award).
    """
    if tender.mode != DisclosureMode.ANONYMOUS or tender.identity_revealed:
        return False
    return explicit or now > tender.deadline


def bidder_label(offer: Offer, tender: Optional[Tender] = None, now: Optional[datetime] = None) -> str:
    """Name to print in texts addressed to the procuring side (equity log, notifications)."""
    tender = tender or offer.tender
    if can_reveal_identity(tender, now):
        return offer.organization.name
    return offer.anonymous_id or "Anonymous bidder"


def _organization_view(offer: Offer) -> Dict[str, Any]:
    org = offer.organization
    return {
        "id": org.id,
        "name": org.name,
        "email": org.email,
        "phone": org.phone,
        "address": org.address,
        "city": org.city,
        "canton": org.canton,
    }


def present_offer(offer: Offer, viewer_organization_id: Optional[int], now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Serialize an offer for a viewer.

    The bidding organization always sees its own identity. Anyone else sees the
    anonymous id in place of every identity field while the gate is closed.
    """
    tender = offer.tender
    revealed = viewer_organization_id == offer.organization_id or can_reveal_identity(tender, now)

    if revealed:
        bidder = _organization_view(offer)
    else:
        bidder = {"id": None, **{key: None for key in IDENTITY_FIELDS}}
        bidder["name"] = offer.anonymous_id

    return {
        "id": offer.id,
        "tender_id": offer.tender_id,
        "status": offer.status,
        "offer_number": offer.offer_number,
        "price": str(offer.price) if offer.price is not None else None,
        "currency": offer.currency,
        "project_summary": offer.project_summary,
        "description": offer.description,
        "methodology": offer.methodology,
        "timeline": offer.timeline,
        "validity_days": offer.validity_days,
        "documents": offer.documents or [],
        "submitted_at": offer.submitted_at.isoformat() if offer.submitted_at else None,
        "viewed_at": offer.viewed_at.isoformat() if offer.viewed_at else None,
        "anonymous_id": offer.anonymous_id,
        "payment_status": offer.payment_status,
        "identity_revealed": revealed,
        "bidder": bidder,
    }
