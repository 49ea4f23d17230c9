"""
equitender/payments.py

PaymentConfirmationHook: entry point used by the payment subsystem once a
checkout session completes or expires.

Event -> hook:
- checkout.session.completed -> confirm(metadata)
- checkout.session.expired   -> void(metadata)

metadata: {"type": "tender_publication" | "offer_submission",
           "tender_id" | "offer_id", "organization_id"}

IMPORTANT:
- Signature verification happens before the hook; events reaching it are trusted.
- The hook never writes a status itself. It calls the state machines with a
  system actor acting on behalf of the record's creator, so every invariant
  (deadline, one active offer, self-bid) still applies.
- Events are replayed by gateways; an already-processed event is acknowledged
  and ignored.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .errors import LifecycleError, NotFound, ValidationError
from .extensions import db
from .lifecycle import offers, tenders
from .models import Offer, OfferStatus, PaymentStatus, Tender, TenderStatus
from .security import Actor
from .utils import parse_optional_int

logger = logging.getLogger(__name__)

TENDER_PUBLICATION = "tender_publication"
OFFER_SUBMISSION = "offer_submission"

EVENT_COMPLETED = "checkout.session.completed"
EVENT_EXPIRED = "checkout.session.expired"


class PaymentConfirmationHook:
    """Confirm or void a pending tender publication / offer submission."""

    # -- metadata --------------------------------------------------------------
    @staticmethod
    def _kind(metadata: Dict[str, Any]) -> str:
        kind = (metadata or {}).get("type")
        if kind not in (TENDER_PUBLICATION, OFFER_SUBMISSION):
            raise ValidationError(f"Unknown payment type: {kind!r}.", code="invalid_payment_metadata")
        return kind

    @staticmethod
    def _id(metadata: Dict[str, Any], key: str) -> int:
        value = parse_optional_int(metadata.get(key))
        if value is None:
            raise ValidationError(f"Payment metadata is missing {key}.", code="invalid_payment_metadata")
        return value

    @staticmethod
    def _check_organization(metadata: Dict[str, Any], organization_id: int) -> None:
        declared = parse_optional_int(metadata.get("organization_id"))
        if declared is not None and declared != organization_id:
            raise ValidationError(
                "Payment organization does not match the record.",
                code="organization_mismatch",
            )

    @staticmethod
    def _on_behalf_of(user) -> Actor:
        return Actor.system(on_behalf_of=user)

    # -- confirm ---------------------------------------------------------------
    def confirm(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        if self._kind(metadata) == TENDER_PUBLICATION:
            return self._confirm_tender(self._id(metadata, "tender_id"), metadata)
        return self._confirm_offer(self._id(metadata, "offer_id"), metadata)

    def _confirm_tender(self, tender_id: int, metadata: Dict[str, Any]) -> Dict[str, Any]:
        tender = db.session.get(Tender, tender_id)
        if tender is None:
            raise NotFound("Tender not found.")
        self._check_organization(metadata, tender.organization_id)

        if tender.status != TenderStatus.DRAFT and tender.payment_status == PaymentStatus.PAID:
            return {"status": "already_processed", "tender_id": tender.id}

        actor = self._on_behalf_of(tender.created_by)
        try:
            tenders.publish(tender.id, actor, mark_paid=True)
        except LifecycleError as exc:
            # Money was taken; keep the trace for a refund
            if tender.status == TenderStatus.DRAFT:
                tenders.record_payment(tender.id, PaymentStatus.PAID)
            logger.error("Paid publication of tender %s could not be completed: %s", tender.id, exc.message)
            raise

        logger.info("Tender %s published after payment", tender.id)
        return {"status": "published", "tender_id": tender.id}

    def _confirm_offer(self, offer_id: int, metadata: Dict[str, Any]) -> Dict[str, Any]:
        offer = db.session.get(Offer, offer_id)
        if offer is None:
            raise NotFound("Offer not found.")
        self._check_organization(metadata, offer.organization_id)

        if offer.status != OfferStatus.DRAFT and offer.payment_status == PaymentStatus.PAID:
            return {"status": "already_processed", "offer_id": offer.id}

        actor = self._on_behalf_of(offer.created_by)
        try:
            offers.submit(offer.id, actor, mark_paid=True)
        except LifecycleError as exc:
            if offer.status == OfferStatus.DRAFT:
                offers.record_payment(offer.id, PaymentStatus.PAID)
            logger.error("Paid submission of offer %s could not be completed: %s", offer.id, exc.message)
            raise

        logger.info("Offer %s submitted after payment", offer.id)
        return {"status": "submitted", "offer_id": offer.id}

    # -- void ------------------------------------------------------------------
    def void(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        if self._kind(metadata) == TENDER_PUBLICATION:
            return self._void_tender(self._id(metadata, "tender_id"))
        return self._void_offer(self._id(metadata, "offer_id"))

    def _void_tender(self, tender_id: int) -> Dict[str, Any]:
        tender = db.session.get(Tender, tender_id)
        if tender is None or tender.status != TenderStatus.DRAFT or tender.payment_status != PaymentStatus.PENDING:
            return {"status": "ignored", "tender_id": tender_id}

        tenders.delete_draft(tender.id, Actor.system(), reason="payment_expired")
        logger.info("Pending tender %s deleted after checkout expiry", tender_id)
        return {"status": "deleted", "tender_id": tender_id}

    def _void_offer(self, offer_id: int) -> Dict[str, Any]:
        offer = db.session.get(Offer, offer_id)
        if offer is None or offer.status != OfferStatus.DRAFT:
            return {"status": "ignored", "offer_id": offer_id}

        offers.record_payment(offer.id, PaymentStatus.FAILED)
        logger.info("Offer %s payment marked failed after checkout expiry", offer_id)
        return {"status": "payment_failed", "offer_id": offer_id}

    # -- gateway events --------------------------------------------------------
    def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """Route a gateway event ({"type", "data": {"object": {"metadata"}}})."""
        event_type = (event or {}).get("type")
        session: Dict[str, Any] = ((event or {}).get("data") or {}).get("object") or {}
        metadata: Optional[Dict[str, Any]] = session.get("metadata") or {}

        if event_type == EVENT_COMPLETED:
            return self.confirm(metadata)
        if event_type == EVENT_EXPIRED:
            return self.void(metadata)

        logger.debug("Ignoring payment event %s", event_type)
        return {"status": "ignored", "event": event_type}
