"""
equitender/lifecycle/base.py

Transaction boundary shared by the tender and offer state machines.

Every transition runs inside `transition()`:

    with transition() as fx:
        ...checks...            # raise LifecycleError -> rollback, nothing written
        compare_and_set(...)    # conditional UPDATE, the store arbitrates races
        audit.append(...)       # same transaction as the state change
        fx.notify_organization(...)   # intent only, delivered after commit

On success the session is committed, THEN the collected intents are handed to
the NotificationFanout. Fanout failures are logged by the fanout and never
reach the caller.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from sqlalchemy.exc import IntegrityError

from ..errors import DuplicateActiveOffer, InvalidTransition, NotFound
from ..extensions import db
from ..models import Offer, Role, Tender
from ..notifications import EmailNotice, Intent, Notice, OrganizationNotice, UserNotice, get_fanout

logger = logging.getLogger(__name__)

_ACTIVE_OFFER_INDEX_MARKERS = ("uq_offers_active_per_org", "offers.tender_id, offers.organization_id")


class Effects:
    """Collects post-commit intents for one transition."""

    def __init__(self):
        self.intents: List[Intent] = []

    def notify_organization(self, organization_id: int, exclude_user_id: Optional[int], notice: Notice) -> None:
        self.intents.append(OrganizationNotice(organization_id, exclude_user_id, notice))

    def notify_user(self, user_id: int, notice: Notice, organization_id: Optional[int] = None) -> None:
        self.intents.append(UserNotice(user_id, organization_id, notice))

    def email(self, organization_id: int, subject: str, body: str, roles=(Role.OWNER, Role.ADMIN)) -> None:
        self.intents.append(EmailNotice(organization_id, subject, body, tuple(roles)))


def translate_integrity_error(exc: IntegrityError) -> Exception:
    """Map a store constraint violation to the lifecycle taxonomy."""
    text = str(getattr(exc, "orig", exc))
    if any(marker in text for marker in _ACTIVE_OFFER_INDEX_MARKERS):
        return DuplicateActiveOffer("Your organization already has an active offer for this tender.")
    return InvalidTransition(
        "The record was modified concurrently. Reload and try again.",
        code="concurrent_modification",
    )


@contextmanager
def transition(name: str = "transition") -> Iterator[Effects]:
    """One atomic unit of work; intents are dispatched after a successful commit."""
    fx = Effects()
    try:
        yield fx
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        logger.info("%s rejected by store constraint: %s", name, exc.orig)
        raise translate_integrity_error(exc) from exc
    except Exception:
        db.session.rollback()
        raise

    logger.debug("%s committed, dispatching %d intent(s)", name, len(fx.intents))
    if fx.intents:
        get_fanout().dispatch(fx.intents)


def compare_and_set(model: Any, entity_id: int, expected: Iterable[str], values: Dict[str, Any]) -> None:
    """
    Conditional status write: UPDATE ... WHERE id = :id AND status IN (:expected).

    Zero rows means another transition changed the status first.
    """
    expected = tuple(expected)
    count = (
        model.query.filter(model.id == entity_id, model.status.in_(expected))
        .update(values, synchronize_session="fetch")
    )
    if count != 1:
        raise InvalidTransition(
            f"{model.__name__} {entity_id} is no longer in status {', '.join(expected)}.",
            code="concurrent_modification",
        )


def load_tender(tender_id: int, *, for_update: bool = False) -> Tender:
    query = Tender.query.filter(Tender.id == tender_id)
    if for_update:
        query = query.with_for_update()
    tender = query.first()
    if tender is None:
        raise NotFound("Tender not found.")
    return tender


def load_offer(offer_id: int, *, for_update: bool = False) -> Offer:
    query = Offer.query.filter(Offer.id == offer_id)
    if for_update:
        query = query.with_for_update()
    offer = query.first()
    if offer is None:
        raise NotFound("Offer not found.")
    return offer
