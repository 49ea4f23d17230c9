"""
equitender/comments.py

Internal comments of the procuring organization on received offers.

Rules:
- Any member of the procuring organization may read and add comments on a
  non-draft offer. The bidding organization never sees them.
- Only the author deletes a comment.
- Texts sent to the team name the bidder through bidder_label(), so an
  ANONYMOUS tender keeps the anonymous id until disclosure.
- Comments are not lifecycle transitions and are not written to the equity log.

update_internal_note() is the single-note entry point kept for older clients;
a non-empty note is stored as a comment.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .anonymity import bidder_label
from .errors import NotFound, Unauthorized, ValidationError
from .extensions import db
from .lifecycle.base import transition
from .models import NotificationType, Offer, OfferComment, OfferStatus
from .notifications import Notice
from .security import Actor, AuthorizationGuard
from .utils import clean_str

logger = logging.getLogger(__name__)

MAX_COMMENT_LENGTH = 5000


def _load_offer_for_team(offer_id: int, actor: Actor) -> Offer:
    offer = db.session.get(Offer, offer_id)
    if offer is None or offer.status == OfferStatus.DRAFT:
        raise NotFound("Offer not found.")
    if not AuthorizationGuard.can(actor, offer.tender.organization_id, "offer.comment"):
        raise NotFound("Offer not found.")
    return offer


def serialize_comment(comment: OfferComment) -> Dict[str, Any]:
    author = comment.author
    return {
        "id": comment.id,
        "offer_id": comment.offer_id,
        "content": comment.content,
        "author": {"id": author.id, "name": author.name, "email": author.email} if author else None,
        "created_at": comment.created_at.isoformat() if comment.created_at else None,
    }


def add_comment(offer_id: int, actor: Actor, content: Any) -> OfferComment:
    text = clean_str(content)
    if not text:
        raise ValidationError("Comment cannot be empty.", code="comment_required")
    if len(text) > MAX_COMMENT_LENGTH:
        raise ValidationError(f"Comment is limited to {MAX_COMMENT_LENGTH} characters.", code="comment_too_long")

    with transition("offer.comment") as fx:
        offer = _load_offer_for_team(offer_id, actor)
        tender = offer.tender

        comment = OfferComment(offer_id=offer.id, author_id=actor.user_id, content=text)
        db.session.add(comment)
        db.session.flush()

        fx.notify_organization(
            tender.organization_id,
            actor.user_id,
            Notice(
                NotificationType.COMMENT_ADDED,
                "New comment",
                f"{actor.name} commented on the offer from {bidder_label(offer, tender)}.",
                {"tender_id": tender.id, "offer_id": offer.id, "comment_id": comment.id},
            ),
        )

    logger.info("Comment %s added on offer %s by user %s", comment.id, offer_id, actor.user_id)
    return comment


def list_comments(offer_id: int, actor: Actor) -> List[OfferComment]:
    offer = _load_offer_for_team(offer_id, actor)
    return (
        OfferComment.query.filter_by(offer_id=offer.id)
        .order_by(OfferComment.created_at.asc(), OfferComment.id.asc())
        .all()
    )


def delete_comment(comment_id: int, actor: Actor) -> None:
    with transition("offer.delete_comment"):
        comment = db.session.get(OfferComment, comment_id)
        if comment is None:
            raise NotFound("Comment not found.")
        _load_offer_for_team(comment.offer_id, actor)
        if comment.author_id != actor.user_id:
            raise Unauthorized("Only the author can delete a comment.", code="not_comment_author")
        db.session.delete(comment)


def update_internal_note(offer_id: int, actor: Actor, note: Any) -> Optional[OfferComment]:
    if not clean_str(note):
        # an empty note leaves the history untouched, but access is still checked
        _load_offer_for_team(offer_id, actor)
        return None
    return add_comment(offer_id, actor, note)
