"""
equitender/lifecycle/tenders.py

TenderStateMachine.

    DRAFT --publish--> PUBLISHED --close--> CLOSED --award--> AWARDED
      |                   |  +------------------award---------^
      |                   +--cancel--> CANCELLED
      +--cancel--> CANCELLED
      +--delete_draft (hard delete)

Each transition: guard -> status/timing preconditions -> conditional write +
equity log entry (one transaction) -> notifications after commit.
identity_revealed only ever flips false -> true (close after the deadline,
award, explicit reveal).
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .. import audit
from ..anonymity import can_reveal_identity, may_reveal_now
from ..errors import DeadlineNotReached, DeadlinePassed, InvalidTransition, LifecycleError, NotFound, ValidationError
from ..extensions import db
from ..models import (
    DisclosureMode,
    EquityAction,
    NotificationType,
    Offer,
    OfferStatus,
    Organization,
    PaymentStatus,
    SavedSearch,
    Tender,
    TenderStatus,
    Visibility,
)
from ..notifications import Notice
from ..security import Actor, AuthorizationGuard
from ..utils import clean_str, format_money, parse_datetime, parse_decimal, utcnow
from .base import compare_and_set, load_tender, transition

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "title",
    "summary",
    "description",
    "market_category",
    "budget",
    "currency",
    "city",
    "canton",
    "deadline",
    "mode",
    "visibility",
)

# Offers whose bidders are still "in the race" (notified on cancel / close)
_LIVE_OFFER_STATUSES = (OfferStatus.SUBMITTED, OfferStatus.SHORTLISTED, OfferStatus.ACCEPTED)


# ---------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------
def _validated_fields(fields: Dict[str, Any], *, partial: bool) -> Dict[str, Any]:
    """
    Normalize tender fields from a payload.

    partial=True (draft update): only keys present in `fields` are returned.
    """
    values: Dict[str, Any] = {}
    present = {key for key in EDITABLE_FIELDS if key in fields}

    if not partial or "title" in present:
        title = clean_str(fields.get("title"))
        if not title:
            raise ValidationError("Title is required.", code="title_required")
        values["title"] = title[:255]

    if not partial or "deadline" in present:
        deadline = parse_datetime(fields.get("deadline"))
        if deadline is None:
            raise ValidationError("A valid deadline (ISO-8601 instant) is required.", code="deadline_required")
        values["deadline"] = deadline

    if not partial or "description" in present:
        values["description"] = clean_str(fields.get("description")) or ""

    if not partial or "mode" in present:
        mode = (clean_str(fields.get("mode")) or DisclosureMode.CLASSIC).upper()
        if mode not in DisclosureMode.ALL:
            raise ValidationError(f"Unknown disclosure mode: {mode}.", code="invalid_mode")
        values["mode"] = mode

    if not partial or "visibility" in present:
        visibility = (clean_str(fields.get("visibility")) or Visibility.PUBLIC).upper()
        if visibility not in Visibility.ALL:
            raise ValidationError(f"Unknown visibility: {visibility}.", code="invalid_visibility")
        values["visibility"] = visibility

    if "budget" in present:
        raw = fields.get("budget")
        budget = parse_decimal(raw)
        if clean_str(raw) is not None and (budget is None or budget < Decimal("0")):
            raise ValidationError("Budget must be a non-negative amount.", code="invalid_budget")
        values["budget"] = budget

    if "currency" in present or not partial:
        currency = (clean_str(fields.get("currency")) or "CHF").upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError("Currency must be a 3-letter ISO code.", code="invalid_currency")
        values["currency"] = currency

    for key in ("summary", "market_category", "city", "canton"):
        if key in present or not partial:
            values[key] = clean_str(fields.get(key))

    return values


def _require_status(tender: Tender, allowed, message: str) -> None:
    if tender.status not in allowed:
        raise InvalidTransition(message, details={"status": tender.status})


def _live_bidder_organization_ids(tender_id: int) -> List[int]:
    rows = (
        db.session.query(Offer.organization_id)
        .filter(Offer.tender_id == tender_id, Offer.status.in_(_LIVE_OFFER_STATUSES))
        .distinct()
        .all()
    )
    return [org_id for (org_id,) in rows]


def _received_offers_count(tender_id: int) -> int:
    return Offer.query.filter(Offer.tender_id == tender_id, Offer.status != OfferStatus.DRAFT).count()


# ---------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------
def create(organization_id: int, actor: Actor, fields: Dict[str, Any], *, payment_pending: bool = False) -> Tender:
    """
    Create a DRAFT tender.

    payment_pending: the publication will be paid; the payment hook publishes
    (or deletes) the draft when the checkout completes (or expires).
    """
    with transition("tender.create"):
        AuthorizationGuard.require(actor, organization_id, "tender.create")
        if db.session.get(Organization, organization_id) is None:
            raise NotFound("Organization not found.")

        values = _validated_fields(fields, partial=False)
        tender = Tender(
            organization_id=organization_id,
            created_by_id=actor.user_id,
            status=TenderStatus.DRAFT,
            payment_status=PaymentStatus.PENDING if payment_pending else PaymentStatus.NONE,
            **values,
        )
        db.session.add(tender)
        db.session.flush()

        audit.append(
            tender.id,
            actor,
            EquityAction.TENDER_CREATED,
            f'Tender created: "{tender.title}"',
            {"market_category": tender.market_category, "visibility": tender.visibility, "mode": tender.mode},
        )

    logger.info("Tender %s created by user %s", tender.id, actor.user_id)
    return tender


def update_draft(tender_id: int, actor: Actor, fields: Dict[str, Any]) -> Tender:
    """Edit a DRAFT tender. Drafts are not audited."""
    with transition("tender.update_draft"):
        tender = load_tender(tender_id, for_update=True)
        AuthorizationGuard.require(actor, tender.organization_id, "tender.update_draft")
        _require_status(tender, (TenderStatus.DRAFT,), "Only draft tenders can be edited.")

        values = _validated_fields(fields, partial=True)
        if values:
            compare_and_set(Tender, tender.id, (TenderStatus.DRAFT,), values)

    return tender


def delete_draft(tender_id: int, actor: Actor, *, reason: str = "deleted") -> None:
    """Hard delete a DRAFT tender and its draft offers. The equity trail is kept."""
    with transition("tender.delete_draft"):
        tender = load_tender(tender_id, for_update=True)
        AuthorizationGuard.require(actor, tender.organization_id, "tender.delete_draft")
        _require_status(tender, (TenderStatus.DRAFT,), "Only draft tenders can be deleted.")

        title = tender.title
        Offer.query.filter(Offer.tender_id == tender.id).delete(synchronize_session=False)
        count = Tender.query.filter(Tender.id == tender.id, Tender.status == TenderStatus.DRAFT).delete(
            synchronize_session=False
        )
        if count != 1:
            raise InvalidTransition("Tender is no longer a draft.", code="concurrent_modification")

        audit.append(
            tender_id,
            actor,
            EquityAction.TENDER_DELETED,
            f'Draft tender deleted: "{title}"',
            {"reason": reason},
        )
        db.session.expunge(tender)

    logger.info("Draft tender %s deleted (%s)", tender_id, reason)


def publish(tender_id: int, actor: Actor, *, mark_paid: bool = False) -> Tender:
    """DRAFT -> PUBLISHED. Saved-search subscribers and the org admins are notified after commit."""
    with transition("tender.publish") as fx:
        tender = load_tender(tender_id, for_update=True)
        AuthorizationGuard.require(actor, tender.organization_id, "tender.publish")
        _require_status(tender, (TenderStatus.DRAFT,), "Only draft tenders can be published.")

        now = utcnow()
        if tender.deadline <= now:
            raise DeadlinePassed("The deadline must be in the future to publish the tender.")

        values: Dict[str, Any] = {"status": TenderStatus.PUBLISHED, "published_at": now}
        if mark_paid:
            values["payment_status"] = PaymentStatus.PAID
        compare_and_set(Tender, tender.id, (TenderStatus.DRAFT,), values)

        audit.append(
            tender.id,
            actor,
            EquityAction.TENDER_PUBLISHED,
            f'Tender published: "{tender.title}"',
            {"published_at": now, "deadline": tender.deadline, "paid": mark_paid},
        )

        fx.notify_organization(
            tender.organization_id,
            actor.user_id,
            Notice(
                NotificationType.TENDER_PUBLISHED,
                "Tender published",
                f'"{tender.title}" is now open for offers until {tender.deadline:%Y-%m-%d %H:%M} UTC.',
                {"tender_id": tender.id},
            ),
        )
        fx.email(
            tender.organization_id,
            f"Tender published: {tender.title}",
            f'Your tender "{tender.title}" has been published.\n'
            f"Deadline: {tender.deadline:%Y-%m-%d %H:%M} UTC\n"
            + (f"Budget: {format_money(tender.budget, tender.currency)}\n" if tender.budget is not None else ""),
        )
        for user_id, organization_id in _saved_search_subscribers(tender):
            fx.notify_user(
                user_id,
                Notice(
                    NotificationType.TENDER_MATCH,
                    "New tender matching your search",
                    f'"{tender.title}" matches one of your saved searches.',
                    {"tender_id": tender.id},
                ),
                organization_id=organization_id,
            )

    logger.info("Tender %s published", tender_id)
    return tender


def _saved_search_subscribers(tender: Tender) -> List[tuple]:
    """(user_id, organization_id) pairs with an alert-enabled saved search matching a PUBLIC tender."""
    if tender.visibility != Visibility.PUBLIC:
        return []
    own_members = set(tender.organization.member_ids())
    seen = set()
    subscribers = []
    for search in SavedSearch.query.filter_by(alerts_enabled=True).order_by(SavedSearch.id.asc()).all():
        if search.user_id in own_members or search.user_id in seen:
            continue
        if search.matches(tender):
            seen.add(search.user_id)
            subscribers.append((search.user_id, search.organization_id))
    return subscribers


def close(tender_id: int, actor: Actor) -> Tender:
    """
    PUBLISHED -> CLOSED.

    Before the deadline this is an early close and needs OWNER/ADMIN. After the
    deadline an ANONYMOUS tender's identities are revealed in the same write.
    """
    with transition("tender.close") as fx:
        tender = load_tender(tender_id, for_update=True)
        now = utcnow()
        early = now <= tender.deadline
        AuthorizationGuard.require(actor, tender.organization_id, "tender.close_early" if early else "tender.close")
        _require_status(tender, (TenderStatus.PUBLISHED,), "Only published tenders can be closed.")

        values: Dict[str, Any] = {"status": TenderStatus.CLOSED, "closed_at": now}
        revealing = may_reveal_now(tender, now)
        if revealing:
            values.update(identity_revealed=True, revealed_at=now)
        compare_and_set(Tender, tender.id, (TenderStatus.PUBLISHED,), values)

        offers_count = _received_offers_count(tender.id)
        audit.append(
            tender.id,
            actor,
            EquityAction.TENDER_CLOSED,
            f"Tender closed with {offers_count} offer(s) received" + (" (early close)" if early else ""),
            {
                "offers_count": offers_count,
                "early": early,
                "identity_revealed": bool(tender.identity_revealed or revealing),
            },
        )

        if offers_count:
            fx.email(
                tender.organization_id,
                f"Tender closed: {tender.title}",
                f'Your tender "{tender.title}" is closed. {offers_count} offer(s) received.',
            )

    logger.info("Tender %s closed (early=%s)", tender_id, early)
    return tender


def award(tender_id: int, actor: Actor, winning_offer_id: int) -> Tender:
    """
    CLOSED/PUBLISHED -> AWARDED, finalizing an ACCEPTED offer.

    The winner becomes AWARDED, every other SUBMITTED/SHORTLISTED offer is
    REJECTED, and an ANONYMOUS tender is revealed before the award notices are
    built. One TENDER_AWARDED entry is written, followed by one grouped
    OFFER_REJECTED entry when other offers were still in the race.
    """
    with transition("tender.award") as fx:
        tender = load_tender(tender_id, for_update=True)
        AuthorizationGuard.require(actor, tender.organization_id, "tender.award")
        _require_status(
            tender,
            (TenderStatus.CLOSED, TenderStatus.PUBLISHED),
            "Only published or closed tenders can be awarded.",
        )

        winner = db.session.get(Offer, winning_offer_id)
        if winner is None or winner.tender_id != tender.id:
            raise NotFound("Winning offer not found for this tender.")
        if winner.status != OfferStatus.ACCEPTED:
            raise InvalidTransition(
                "The winning offer must be accepted before the tender can be awarded.",
                code="offer_not_accepted",
                details={"offer_status": winner.status},
            )

        now = utcnow()
        values: Dict[str, Any] = {"status": TenderStatus.AWARDED, "awarded_at": now}
        if may_reveal_now(tender, now, explicit=True):
            values.update(identity_revealed=True, revealed_at=now)
        compare_and_set(Tender, tender.id, (TenderStatus.CLOSED, TenderStatus.PUBLISHED), values)
        compare_and_set(Offer, winner.id, (OfferStatus.ACCEPTED,), {"status": OfferStatus.AWARDED})

        losers = (
            Offer.query.filter(
                Offer.tender_id == tender.id,
                Offer.id != winner.id,
                Offer.status.in_((OfferStatus.SUBMITTED, OfferStatus.SHORTLISTED)),
            )
            .order_by(Offer.id.asc())
            .all()
        )
        loser_ids = [o.id for o in losers]
        loser_org_ids = [o.organization_id for o in losers]
        if loser_ids:
            Offer.query.filter(
                Offer.id.in_(loser_ids),
                Offer.status.in_((OfferStatus.SUBMITTED, OfferStatus.SHORTLISTED)),
            ).update({"status": OfferStatus.REJECTED}, synchronize_session="fetch")

        db.session.refresh(tender)
        winner_org = winner.organization
        price = format_money(winner.price, winner.currency)

        audit.append(
            tender.id,
            actor,
            EquityAction.TENDER_AWARDED,
            f'Tender awarded to "{winner_org.name}" for {price}',
            {
                "winning_offer_id": winner.id,
                "winner_organization_id": winner_org.id,
                "winner_organization": winner_org.name,
                "price": winner.price,
                "currency": winner.currency,
                "rejected_count": len(loser_ids),
                "rejected_offer_ids": loser_ids,
                "identity_revealed": bool(tender.identity_revealed),
            },
        )
        if loser_ids:
            audit.append(
                tender.id,
                actor,
                EquityAction.OFFER_REJECTED,
                f"{len(loser_ids)} offer(s) rejected with the award",
                {
                    "rejected_count": len(loser_ids),
                    "rejected_offer_ids": loser_ids,
                    "winning_offer_id": winner.id,
                },
            )

        # Winner: notice + email with the emitter's contact details
        emitter = tender.organization
        fx.notify_organization(
            winner.organization_id,
            None,
            Notice(
                NotificationType.TENDER_AWARDED,
                "Contract awarded",
                f'Congratulations! "{tender.title}" has been awarded to you.',
                {"tender_id": tender.id, "offer_id": winner.id},
            ),
        )
        fx.email(
            winner.organization_id,
            f"Contract awarded: {tender.title}",
            f'Your offer for "{tender.title}" ({price}) has been selected.\n'
            f"Contact: {emitter.name}, {emitter.email or '-'}, {emitter.phone or '-'}, "
            f"{emitter.address or ''} {emitter.city or ''} {emitter.canton or ''}".rstrip(),
        )

        # Emitter: email with the winner's contact details (identity is disclosed at this point)
        fx.email(
            tender.organization_id,
            f"Award confirmed: {tender.title}",
            f'"{tender.title}" has been awarded to {winner_org.name} for {price}.\n'
            f"Contact: {winner_org.email or '-'}, {winner_org.phone or '-'}, "
            f"{winner_org.city or ''} {winner_org.canton or ''}".rstrip(),
        )

        # Losers: one notice + one email each
        for offer_id, org_id in zip(loser_ids, loser_org_ids):
            fx.notify_organization(
                org_id,
                None,
                Notice(
                    NotificationType.OFFER_REJECTED,
                    "Offer not selected",
                    f'Your offer for "{tender.title}" was not selected.',
                    {"tender_id": tender.id, "offer_id": offer_id},
                ),
            )
            fx.email(
                org_id,
                f"Tender awarded: {tender.title}",
                f'The tender "{tender.title}" has been awarded to another bidder. Thank you for your offer.',
            )

    logger.info("Tender %s awarded to offer %s (%d rejected)", tender_id, winning_offer_id, len(loser_ids))
    return tender


def cancel(tender_id: int, actor: Actor) -> Tender:
    """DRAFT/PUBLISHED -> CANCELLED. Every bidder still in the race is notified."""
    with transition("tender.cancel") as fx:
        tender = load_tender(tender_id, for_update=True)
        AuthorizationGuard.require(actor, tender.organization_id, "tender.cancel")
        _require_status(
            tender,
            (TenderStatus.DRAFT, TenderStatus.PUBLISHED),
            "Only draft or published tenders can be cancelled.",
        )

        previous_status = tender.status
        now = utcnow()
        compare_and_set(
            Tender,
            tender.id,
            (TenderStatus.DRAFT, TenderStatus.PUBLISHED),
            {"status": TenderStatus.CANCELLED, "cancelled_at": now},
        )

        bidder_org_ids = _live_bidder_organization_ids(tender.id)
        audit.append(
            tender.id,
            actor,
            EquityAction.TENDER_CANCELLED,
            f'Tender cancelled: "{tender.title}"',
            {"previous_status": previous_status, "notified_bidders": len(bidder_org_ids)},
        )

        for org_id in bidder_org_ids:
            fx.notify_organization(
                org_id,
                None,
                Notice(
                    NotificationType.TENDER_CANCELLED,
                    "Tender cancelled",
                    f'The tender "{tender.title}" has been cancelled by its issuer.',
                    {"tender_id": tender.id},
                ),
            )
            fx.email(
                org_id,
                f"Tender cancelled: {tender.title}",
                f'The tender "{tender.title}" you submitted an offer for has been cancelled.',
            )

    logger.info("Tender %s cancelled (%d bidder organization(s) notified)", tender_id, len(bidder_org_ids))
    return tender


def reveal_identities(tender_id: int, actor: Actor) -> Tender:
    """Explicit, one-way disclosure of bidder identities on an ANONYMOUS tender after its deadline."""
    with transition("tender.reveal_identities"):
        tender = load_tender(tender_id, for_update=True)
        AuthorizationGuard.require(actor, tender.organization_id, "tender.reveal_identities")

        if tender.mode != DisclosureMode.ANONYMOUS:
            raise InvalidTransition("This tender is not anonymous.", code="not_anonymous")
        if tender.identity_revealed:
            raise InvalidTransition("Identities have already been revealed.", code="already_revealed")
        now = utcnow()
        if now <= tender.deadline:
            raise DeadlineNotReached("Identities can only be revealed after the tender deadline.")

        count = Tender.query.filter(Tender.id == tender.id, Tender.identity_revealed.is_(False)).update(
            {"identity_revealed": True, "revealed_at": now},
            synchronize_session="fetch",
        )
        if count != 1:
            raise InvalidTransition("Identities have already been revealed.", code="already_revealed")

        audit.append(
            tender.id,
            actor,
            EquityAction.IDENTITY_REVEALED,
            "Bidder identities revealed",
            {"revealed_at": now, "offers_count": _received_offers_count(tender.id)},
        )

    logger.info("Tender %s identities revealed by user %s", tender_id, actor.user_id)
    return tender


def close_expired(now: Optional[datetime] = None) -> List[int]:
    """
    System sweep: close every PUBLISHED tender whose deadline has passed.

    Each tender is its own transition; one failure does not stop the sweep.
    """
    now = now or utcnow()
    due = (
        Tender.query.filter(Tender.status == TenderStatus.PUBLISHED, Tender.deadline < now)
        .order_by(Tender.deadline.asc())
        .all()
    )
    closed: List[int] = []
    system = Actor.system()
    for tender in due:
        try:
            close(tender.id, system)
        except LifecycleError as exc:
            logger.warning("Could not close expired tender %s: %s", tender.id, exc.message)
            continue
        closed.append(tender.id)
    return closed


# ---------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------
def get_for_viewer(tender_id: int, actor: Actor) -> Tender:
    """
    Members of the issuing organization see every status; others never see
    drafts. PRIVATE only keeps a tender out of listings and search alerts.
    """
    tender = db.session.get(Tender, tender_id)
    if tender is None:
        raise NotFound("Tender not found.")
    if actor.belongs_to(tender.organization_id):
        return tender
    if tender.status == TenderStatus.DRAFT:
        raise NotFound("Tender not found.")
    return tender


def list_visible(actor: Actor, *, status: Optional[str] = None) -> List[Tender]:
    """PUBLIC non-draft tenders plus every tender of the actor's organizations, newest first."""
    own = list(actor.memberships)
    query = Tender.query.filter(
        db.or_(
            Tender.organization_id.in_(own),
            db.and_(Tender.visibility == Visibility.PUBLIC, Tender.status != TenderStatus.DRAFT),
        )
    )
    if status:
        query = query.filter(Tender.status == status.upper())
    return query.order_by(Tender.created_at.desc(), Tender.id.desc()).all()


def serialize_tender(tender: Tender, actor: Actor, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Tender payload. The issuer of an ANONYMOUS tender is masked for outsiders until disclosure."""
    is_member = actor.belongs_to(tender.organization_id)
    issuer_visible = is_member or can_reveal_identity(tender, now)
    data = {
        "id": tender.id,
        "title": tender.title,
        "summary": tender.summary,
        "description": tender.description,
        "market_category": tender.market_category,
        "budget": str(tender.budget) if tender.budget is not None else None,
        "currency": tender.currency,
        "city": tender.city,
        "canton": tender.canton,
        "deadline": tender.deadline.isoformat(),
        "mode": tender.mode,
        "visibility": tender.visibility,
        "status": tender.status,
        "identity_revealed": bool(tender.identity_revealed),
        "published_at": tender.published_at.isoformat() if tender.published_at else None,
        "organization": (
            {"id": tender.organization_id, "name": tender.organization.name}
            if issuer_visible
            else {"id": None, "name": None}
        ),
    }
    if is_member:
        data["payment_status"] = tender.payment_status
        data["offers_count"] = _received_offers_count(tender.id)
    return data


def record_payment(tender_id: int, payment_status: str) -> None:
    """Payment bookkeeping on a DRAFT tender (no lifecycle transition, not audited)."""
    with transition("tender.record_payment"):
        compare_and_set(Tender, tender_id, (TenderStatus.DRAFT,), {"payment_status": payment_status})
