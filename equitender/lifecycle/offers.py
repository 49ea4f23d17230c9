"""
equitender/lifecycle/offers.py

OfferStateMachine.

    DRAFT --submit--> SUBMITTED <--unshortlist-- SHORTLISTED
                        |   +--shortlist-------------^ |
                        |---accept / reject / withdraw-+
    ACCEPTED --(tender award)--> AWARDED
    Terminal: REJECTED, AWARDED, WITHDRAWN

IMPORTANT:
- One active offer (DRAFT/SUBMITTED/SHORTLISTED/ACCEPTED) per organization and
  tender. Checked here inside the transaction; the partial unique index
  uq_offers_active_per_org settles concurrent submissions.
- Nothing changes on an AWARDED or CANCELLED tender.
- Texts that reach the procuring side (equity log, notifications) name the
  bidder through bidder_label(), i.e. the anonymous id until disclosure.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .. import audit
from ..anonymity import bidder_label, can_reveal_identity, present_offer
from ..errors import (
    DeadlinePassed,
    DuplicateActiveOffer,
    InvalidTransition,
    NotFound,
    SelfBidProhibited,
    ValidationError,
)
from ..extensions import db
from ..models import EquityAction, NotificationType, Offer, OfferStatus, PaymentStatus, Tender, TenderStatus
from ..notifications import Notice
from ..security import Actor, AuthorizationGuard
from ..utils import clean_str, format_money, parse_decimal, parse_optional_int, utcnow
from .base import compare_and_set, load_offer, load_tender, transition

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "price",
    "currency",
    "offer_number",
    "project_summary",
    "description",
    "methodology",
    "timeline",
    "validity_days",
    "documents",
)

_REVIEWABLE = (OfferStatus.SUBMITTED, OfferStatus.SHORTLISTED)


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def _validated_documents(raw: Any) -> List[Dict[str, Any]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("Documents must be a list.", code="invalid_documents")
    documents = []
    for item in raw:
        if not isinstance(item, dict) or not clean_str(item.get("name")) or not clean_str(item.get("url")):
            raise ValidationError("Each document needs a name and a url.", code="invalid_documents")
        documents.append(
            {
                "name": clean_str(item.get("name")),
                "url": clean_str(item.get("url")),
                "size": parse_optional_int(item.get("size")),
                "mime_type": clean_str(item.get("mime_type")),
            }
        )
    return documents


def _validated_fields(fields: Dict[str, Any], *, partial: bool, default_currency: str) -> Dict[str, Any]:
    """Normalize offer fields. partial=True: only keys present in `fields`."""
    values: Dict[str, Any] = {}
    present = {key for key in EDITABLE_FIELDS if key in fields}

    if not partial or "price" in present:
        price = parse_decimal(fields.get("price"))
        if price is None or price <= Decimal("0"):
            raise ValidationError("Price must be a positive amount.", code="invalid_price")
        values["price"] = price

    if not partial or "currency" in present:
        currency = (clean_str(fields.get("currency")) or default_currency).upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError("Currency must be a 3-letter ISO code.", code="invalid_currency")
        values["currency"] = currency

    if not partial or "validity_days" in present:
        raw = fields.get("validity_days")
        validity = parse_optional_int(raw)
        if clean_str(raw) is not None and (validity is None or validity <= 0):
            raise ValidationError("Validity must be a positive number of days.", code="invalid_validity")
        values["validity_days"] = validity or 90

    if not partial or "documents" in present:
        values["documents"] = _validated_documents(fields.get("documents"))

    for key in ("offer_number", "project_summary", "description", "methodology", "timeline"):
        if not partial or key in present:
            values[key] = clean_str(fields.get(key))

    return values


def _require_status(offer: Offer, allowed, message: str) -> None:
    if offer.status not in allowed:
        raise InvalidTransition(message, details={"status": offer.status})


def _require_live_tender(tender: Tender) -> None:
    if tender.status in TenderStatus.TERMINAL:
        raise InvalidTransition(
            f"The tender is {tender.status.lower()}; its offers can no longer change.",
            code="tender_finalized",
            details={"tender_status": tender.status},
        )


def _active_offer(tender_id: int, organization_id: int, exclude_offer_id: Optional[int] = None) -> Optional[Offer]:
    query = Offer.query.filter(
        Offer.tender_id == tender_id,
        Offer.organization_id == organization_id,
        Offer.status.in_(OfferStatus.ACTIVE),
    )
    if exclude_offer_id is not None:
        query = query.filter(Offer.id != exclude_offer_id)
    return query.first()


def _new_anonymous_id(tender_id: int) -> str:
    """BID-XXXXXX, unique within the tender (uq_offer_anonymous_id backs it)."""
    taken = {
        value
        for (value,) in db.session.query(Offer.anonymous_id)
        .filter(Offer.tender_id == tender_id, Offer.anonymous_id.isnot(None))
        .all()
    }
    while True:
        candidate = "BID-" + secrets.token_hex(3).upper()
        if candidate not in taken:
            return candidate


def _bidder_name_for_log(actor: Actor, offer: Offer, tender: Tender, now: datetime) -> Optional[str]:
    """A bidder-side actor is recorded under the offer's label until identities are disclosed."""
    if actor.belongs_to(offer.organization_id) and not can_reveal_identity(tender, now):
        return bidder_label(offer, tender, now)
    return None


# ---------------------------------------------------------------------
# Bidder side
# ---------------------------------------------------------------------
def save_draft(tender_id: int, organization_id: int, actor: Actor, fields: Dict[str, Any]) -> Offer:
    """Create or update the organization's DRAFT offer. Drafts are not audited."""
    with transition("offer.save_draft"):
        AuthorizationGuard.require(actor, organization_id, "offer.save_draft")
        tender = load_tender(tender_id)
        if tender.organization_id == organization_id:
            raise SelfBidProhibited("An organization cannot bid on its own tender.")
        if not actor.belongs_to(tender.organization_id) and tender.status == TenderStatus.DRAFT:
            raise NotFound("Tender not found.")
        if tender.status != TenderStatus.PUBLISHED:
            raise InvalidTransition(
                "Offers can only be prepared for published tenders.",
                details={"tender_status": tender.status},
            )
        if utcnow() > tender.deadline:
            raise DeadlinePassed("The deadline for this tender has passed.")

        existing = _active_offer(tender.id, organization_id)
        if existing is not None and existing.status != OfferStatus.DRAFT:
            raise DuplicateActiveOffer(
                "Your organization already has an active offer for this tender.",
                details={"offer_id": existing.id, "status": existing.status},
            )

        values = _validated_fields(fields, partial=existing is not None, default_currency=tender.currency)
        if existing is not None:
            if values:
                compare_and_set(Offer, existing.id, (OfferStatus.DRAFT,), values)
            offer = existing
        else:
            offer = Offer(
                tender_id=tender.id,
                organization_id=organization_id,
                created_by_id=actor.user_id,
                status=OfferStatus.DRAFT,
                **values,
            )
            db.session.add(offer)
            db.session.flush()

    return offer


def submit(offer_id: int, actor: Actor, *, mark_paid: bool = False) -> Offer:
    """
    DRAFT -> SUBMITTED.

    The deadline check comes first: a late submission is a window violation
    whatever state the tender is in.
    """
    with transition("offer.submit") as fx:
        offer = load_offer(offer_id, for_update=True)
        AuthorizationGuard.require(actor, offer.organization_id, "offer.submit")
        tender = load_tender(offer.tender_id, for_update=True)

        now = utcnow()
        if now > tender.deadline:
            raise DeadlinePassed(
                "The deadline for this tender has passed.",
                details={"deadline": tender.deadline.isoformat()},
            )
        if tender.organization_id == offer.organization_id:
            raise SelfBidProhibited("An organization cannot bid on its own tender.")
        _require_status(offer, (OfferStatus.DRAFT,), "Only draft offers can be submitted.")
        _require_live_tender(tender)
        if tender.status != TenderStatus.PUBLISHED:
            raise InvalidTransition(
                "The tender is not open for offers.",
                details={"tender_status": tender.status},
            )
        if _active_offer(tender.id, offer.organization_id, exclude_offer_id=offer.id) is not None:
            raise DuplicateActiveOffer("Your organization already has an active offer for this tender.")

        values: Dict[str, Any] = {"status": OfferStatus.SUBMITTED, "submitted_at": now}
        if tender.is_anonymous and not offer.anonymous_id:
            values["anonymous_id"] = _new_anonymous_id(tender.id)
        if mark_paid:
            values.update(payment_status=PaymentStatus.PAID, paid_at=now)
        compare_and_set(Offer, offer.id, (OfferStatus.DRAFT,), values)

        label = bidder_label(offer, tender, now)
        price = format_money(offer.price, offer.currency)
        audit.append(
            tender.id,
            actor,
            EquityAction.OFFER_RECEIVED,
            f"Offer received from {label} ({price})",
            {
                "offer_id": offer.id,
                "anonymous_id": offer.anonymous_id,
                "price": offer.price,
                "currency": offer.currency,
                "paid": mark_paid,
            },
            user_name=_bidder_name_for_log(actor, offer, tender, now),
        )

        fx.notify_organization(
            tender.organization_id,
            None,
            Notice(
                NotificationType.OFFER_RECEIVED,
                "New offer received",
                f'{label} submitted an offer for "{tender.title}" ({price}).',
                {"tender_id": tender.id, "offer_id": offer.id},
            ),
        )
        fx.email(
            offer.organization_id,
            f"Offer submitted: {tender.title}",
            f'Your offer for "{tender.title}" ({price}) has been submitted.\n'
            f"Deadline: {tender.deadline:%Y-%m-%d %H:%M} UTC",
        )

    logger.info("Offer %s submitted on tender %s", offer_id, offer.tender_id)
    return offer


def withdraw(offer_id: int, actor: Actor) -> Offer:
    """SUBMITTED/SHORTLISTED -> WITHDRAWN, before the tender deadline only."""
    with transition("offer.withdraw") as fx:
        offer = load_offer(offer_id, for_update=True)
        AuthorizationGuard.require(actor, offer.organization_id, "offer.withdraw")
        tender = load_tender(offer.tender_id)
        _require_live_tender(tender)
        _require_status(offer, _REVIEWABLE, "Only submitted or shortlisted offers can be withdrawn.")

        now = utcnow()
        if now > tender.deadline:
            raise DeadlinePassed("Offers cannot be withdrawn after the tender deadline.")

        compare_and_set(Offer, offer.id, _REVIEWABLE, {"status": OfferStatus.WITHDRAWN})

        label = bidder_label(offer, tender, now)
        audit.append(
            tender.id,
            actor,
            EquityAction.OFFER_WITHDRAWN,
            f"Offer from {label} withdrawn",
            {"offer_id": offer.id, "anonymous_id": offer.anonymous_id},
            user_name=_bidder_name_for_log(actor, offer, tender, now),
        )

        fx.notify_organization(
            tender.organization_id,
            None,
            Notice(
                NotificationType.OFFER_WITHDRAWN,
                "Offer withdrawn",
                f'{label} withdrew its offer for "{tender.title}".',
                {"tender_id": tender.id, "offer_id": offer.id},
            ),
        )

    logger.info("Offer %s withdrawn", offer_id)
    return offer


def delete_draft(offer_id: int, actor: Actor) -> None:
    """Hard delete a DRAFT offer. Not audited."""
    with transition("offer.delete_draft"):
        offer = load_offer(offer_id, for_update=True)
        AuthorizationGuard.require(actor, offer.organization_id, "offer.delete_draft")
        _require_status(offer, (OfferStatus.DRAFT,), "Only draft offers can be deleted.")

        count = Offer.query.filter(Offer.id == offer.id, Offer.status == OfferStatus.DRAFT).delete(
            synchronize_session=False
        )
        if count != 1:
            raise InvalidTransition("Offer is no longer a draft.", code="concurrent_modification")
        db.session.expunge(offer)


def record_payment(offer_id: int, payment_status: str) -> None:
    """Payment bookkeeping on a DRAFT offer (no lifecycle transition, not audited)."""
    values: Dict[str, Any] = {"payment_status": payment_status}
    if payment_status == PaymentStatus.PAID:
        values["paid_at"] = utcnow()
    with transition("offer.record_payment"):
        compare_and_set(Offer, offer_id, (OfferStatus.DRAFT,), values)


# ---------------------------------------------------------------------
# Procuring side
# ---------------------------------------------------------------------
def _load_for_review(offer_id: int, actor: Actor, capability: str):
    offer = load_offer(offer_id, for_update=True)
    tender = load_tender(offer.tender_id)
    AuthorizationGuard.require(actor, tender.organization_id, capability)
    _require_live_tender(tender)
    return offer, tender


def shortlist(offer_id: int, actor: Actor) -> Offer:
    with transition("offer.shortlist") as fx:
        offer, tender = _load_for_review(offer_id, actor, "offer.shortlist")
        _require_status(offer, (OfferStatus.SUBMITTED,), "Only submitted offers can be shortlisted.")

        compare_and_set(Offer, offer.id, (OfferStatus.SUBMITTED,), {"status": OfferStatus.SHORTLISTED})

        now = utcnow()
        audit.append(
            tender.id,
            actor,
            EquityAction.OFFER_SHORTLISTED,
            f"Offer from {bidder_label(offer, tender, now)} shortlisted",
            {"offer_id": offer.id, "anonymous_id": offer.anonymous_id},
        )

        if can_reveal_identity(tender, now):
            fx.notify_organization(
                offer.organization_id,
                None,
                Notice(
                    NotificationType.OFFER_SHORTLISTED,
                    "Offer shortlisted",
                    f'Your offer for "{tender.title}" has been shortlisted.',
                    {"tender_id": tender.id, "offer_id": offer.id},
                ),
            )

    return offer


def unshortlist(offer_id: int, actor: Actor) -> Offer:
    """SHORTLISTED -> SUBMITTED. Logged as a reversal, the bidder is not told."""
    with transition("offer.unshortlist"):
        offer, tender = _load_for_review(offer_id, actor, "offer.unshortlist")
        _require_status(offer, (OfferStatus.SHORTLISTED,), "Only shortlisted offers can be moved back.")

        compare_and_set(Offer, offer.id, (OfferStatus.SHORTLISTED,), {"status": OfferStatus.SUBMITTED})

        audit.append(
            tender.id,
            actor,
            EquityAction.OFFER_UNSHORTLISTED,
            f"Offer from {bidder_label(offer, tender)} removed from the shortlist",
            {"offer_id": offer.id, "anonymous_id": offer.anonymous_id},
        )

    return offer


def reject(offer_id: int, actor: Actor) -> Offer:
    """SUBMITTED/SHORTLISTED -> REJECTED (terminal)."""
    with transition("offer.reject") as fx:
        offer, tender = _load_for_review(offer_id, actor, "offer.reject")
        _require_status(offer, _REVIEWABLE, "Only submitted or shortlisted offers can be rejected.")

        compare_and_set(Offer, offer.id, _REVIEWABLE, {"status": OfferStatus.REJECTED})

        audit.append(
            tender.id,
            actor,
            EquityAction.OFFER_REJECTED,
            f"Offer from {bidder_label(offer, tender)} rejected",
            {"offer_id": offer.id, "anonymous_id": offer.anonymous_id},
        )

        fx.notify_organization(
            offer.organization_id,
            None,
            Notice(
                NotificationType.OFFER_REJECTED,
                "Offer not selected",
                f'Your offer for "{tender.title}" was not selected.',
                {"tender_id": tender.id, "offer_id": offer.id},
            ),
        )
        fx.email(
            offer.organization_id,
            f"Offer not selected: {tender.title}",
            f'Your offer for "{tender.title}" was not selected. Thank you for your participation.',
        )

    return offer


def accept(offer_id: int, actor: Actor) -> Offer:
    """
    SUBMITTED/SHORTLISTED -> ACCEPTED.

    ACCEPTED is not terminal: it marks the offer the tender award will finalize.
    A tender holds at most one ACCEPTED offer (uq_offers_one_accepted_per_tender).
    """
    with transition("offer.accept") as fx:
        offer, tender = _load_for_review(offer_id, actor, "offer.accept")
        _require_status(offer, _REVIEWABLE, "Only submitted or shortlisted offers can be accepted.")
        if tender.status not in (TenderStatus.PUBLISHED, TenderStatus.CLOSED):
            raise InvalidTransition(
                "Offers can only be accepted on published or closed tenders.",
                details={"tender_status": tender.status},
            )
        already = Offer.query.filter(
            Offer.tender_id == tender.id,
            Offer.status == OfferStatus.ACCEPTED,
        ).first()
        if already is not None:
            raise InvalidTransition(
                "Another offer is already accepted for this tender.",
                code="already_accepted",
                details={"offer_id": already.id},
            )

        compare_and_set(Offer, offer.id, _REVIEWABLE, {"status": OfferStatus.ACCEPTED})

        now = utcnow()
        audit.append(
            tender.id,
            actor,
            EquityAction.OFFER_ACCEPTED,
            f"Offer from {bidder_label(offer, tender, now)} accepted",
            {"offer_id": offer.id, "anonymous_id": offer.anonymous_id, "price": offer.price},
        )

        if can_reveal_identity(tender, now):
            fx.notify_organization(
                offer.organization_id,
                None,
                Notice(
                    NotificationType.OFFER_ACCEPTED,
                    "Offer accepted",
                    f'Your offer for "{tender.title}" has been accepted. The award will follow.',
                    {"tender_id": tender.id, "offer_id": offer.id},
                ),
            )

    return offer


# ---------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------
def get_for_viewer(offer_id: int, actor: Actor) -> Dict[str, Any]:
    """
    Masked offer payload.

    Bidding org members see their own offer in full. Procuring org members see
    non-draft offers through the anonymity gate. Everyone else gets NotFound.
    """
    offer = db.session.get(Offer, offer_id)
    if offer is None:
        raise NotFound("Offer not found.")

    if AuthorizationGuard.can(actor, offer.organization_id, "offer.view_own"):
        return present_offer(offer, offer.organization_id)

    tender = offer.tender
    if offer.status != OfferStatus.DRAFT and AuthorizationGuard.can(actor, tender.organization_id, "offer.view_received"):
        return present_offer(offer, tender.organization_id)

    raise NotFound("Offer not found.")


def list_received(tender_id: int, actor: Actor) -> List[Dict[str, Any]]:
    """Non-draft offers of a tender for its procuring organization, masked, in submission order."""
    tender = db.session.get(Tender, tender_id)
    if tender is None or not AuthorizationGuard.can(actor, tender.organization_id, "offer.view_received"):
        raise NotFound("Tender not found.")

    offers = (
        Offer.query.filter(Offer.tender_id == tender.id, Offer.status != OfferStatus.DRAFT)
        .order_by(Offer.submitted_at.asc(), Offer.id.asc())
        .all()
    )
    now = utcnow()
    return [present_offer(offer, tender.organization_id, now) for offer in offers]


def list_own(organization_id: int, actor: Actor, *, tender_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """Offers of a bidding organization (drafts included), newest first."""
    AuthorizationGuard.require(actor, organization_id, "offer.view_own")

    query = Offer.query.filter(Offer.organization_id == organization_id)
    if tender_id is not None:
        query = query.filter(Offer.tender_id == tender_id)

    results = []
    for offer in query.order_by(Offer.created_at.desc(), Offer.id.desc()).all():
        payload = present_offer(offer, organization_id)
        tender = offer.tender
        payload["tender"] = {
            "id": tender.id,
            "title": tender.title,
            "status": tender.status,
            "deadline": tender.deadline.isoformat(),
        }
        results.append(payload)
    return results


def has_submitted(tender_id: int, actor: Actor) -> Dict[str, Any]:
    """Whether one of the actor's organizations holds a non-draft active offer on the tender."""
    if not actor.memberships:
        return {"has_submitted": False, "offer_id": None}

    offer = (
        Offer.query.filter(
            Offer.tender_id == tender_id,
            Offer.organization_id.in_(list(actor.memberships)),
            Offer.status.in_([s for s in OfferStatus.ACTIVE if s != OfferStatus.DRAFT]),
        )
        .order_by(Offer.id.asc())
        .first()
    )
    return {"has_submitted": offer is not None, "offer_id": offer.id if offer else None}


def mark_viewed(offer_id: int, actor: Actor) -> Offer:
    """First opening of a received offer by the procuring organization. Not audited."""
    offer = db.session.get(Offer, offer_id)
    if offer is None or offer.status == OfferStatus.DRAFT:
        raise NotFound("Offer not found.")
    if not AuthorizationGuard.can(actor, offer.tender.organization_id, "offer.view_received"):
        raise NotFound("Offer not found.")

    if offer.viewed_at is None:
        with transition("offer.mark_viewed"):
            Offer.query.filter(Offer.id == offer.id, Offer.viewed_at.is_(None)).update(
                {"viewed_at": utcnow()},
                synchronize_session="fetch",
            )
    return offer


def unread_offers(organization_id: int, actor: Actor) -> Dict[str, Any]:
    """SUBMITTED offers not yet opened, in total and per tender of the procuring organization."""
    AuthorizationGuard.require(actor, organization_id, "offer.view_received")

    rows = (
        db.session.query(Tender.id, Tender.title, db.func.count(Offer.id))
        .join(Offer, Offer.tender_id == Tender.id)
        .filter(
            Tender.organization_id == organization_id,
            Offer.status == OfferStatus.SUBMITTED,
            Offer.viewed_at.is_(None),
        )
        .group_by(Tender.id, Tender.title)
        .order_by(Tender.id.asc())
        .all()
    )
    tenders = [{"tender_id": tid, "title": title, "unread": count} for tid, title, count in rows]
    return {"count": sum(t["unread"] for t in tenders), "tenders": tenders}
