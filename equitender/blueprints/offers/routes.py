"""
equitender/blueprints/offers/routes.py

Offer routes (JSON API).

Bidding organization:
- GET    /offers/?organization_id=&tender_id=   own offers (drafts included)
- GET    /offers/has-submitted?tender_id=       does one of my organizations hold a live offer
- POST   /offers/                 save draft {tender_id, organization_id?, price, ...}
- DELETE /offers/<id>             delete draft

Both sides:
- GET    /offers/<id>             masked for the procuring side until disclosure
- POST   /offers/<id>/<action>    submit, shortlist, unshortlist, reject, accept, withdraw

Procuring organization:
- GET    /offers/unread?organization_id=        unopened SUBMITTED offers per tender
- POST   /offers/<id>/view        mark as opened
- GET    /offers/<id>/comments    internal comments
- POST   /offers/<id>/comments    {content}
- PUT    /offers/<id>/internal-note  {note}
- DELETE /offers/comments/<comment_id>
"""

from __future__ import annotations

from flask import Blueprint, abort, jsonify, request

from ... import comments
from ...errors import ValidationError
from ...lifecycle import offers as offer_machine
from ...security import Actor, actor_required
from ...utils import json_payload, parse_optional_int

offers_bp = Blueprint("offers", __name__, url_prefix="/offers")

TRANSITIONS = {
    "submit": offer_machine.submit,
    "shortlist": offer_machine.shortlist,
    "unshortlist": offer_machine.unshortlist,
    "reject": offer_machine.reject,
    "accept": offer_machine.accept,
    "withdraw": offer_machine.withdraw,
}


def _organization_id(value, actor: Actor) -> int:
    """organization_id from the request, or the actor's only organization."""
    organization_id = parse_optional_int(value)
    if organization_id is not None:
        return organization_id
    if len(actor.memberships) == 1:
        return next(iter(actor.memberships))
    raise ValidationError("organization_id is required.", code="organization_required")


# ---------------------------------------------------------------------
# Bidding organization
# ---------------------------------------------------------------------
@offers_bp.route("/", methods=["GET"])
@actor_required
def list_own(actor: Actor):
    organization_id = _organization_id(request.args.get("organization_id"), actor)
    tender_id = parse_optional_int(request.args.get("tender_id"))
    return jsonify({"offers": offer_machine.list_own(organization_id, actor, tender_id=tender_id)})


@offers_bp.route("/has-submitted", methods=["GET"])
@actor_required
def has_submitted(actor: Actor):
    tender_id = parse_optional_int(request.args.get("tender_id"))
    if tender_id is None:
        raise ValidationError("tender_id is required.", code="tender_required")
    return jsonify(offer_machine.has_submitted(tender_id, actor))


@offers_bp.route("/", methods=["POST"])
@actor_required
def save_draft(actor: Actor):
    data = json_payload()
    tender_id = parse_optional_int(data.get("tender_id"))
    if tender_id is None:
        raise ValidationError("tender_id is required.", code="tender_required")

    offer = offer_machine.save_draft(tender_id, _organization_id(data.get("organization_id"), actor), actor, data)
    return jsonify({"offer": offer_machine.get_for_viewer(offer.id, actor)}), 201


@offers_bp.route("/<int:offer_id>", methods=["DELETE"])
@actor_required
def delete_offer(offer_id: int, actor: Actor):
    offer_machine.delete_draft(offer_id, actor)
    return jsonify({"status": "deleted", "offer_id": offer_id})


# ---------------------------------------------------------------------
# Both sides
# ---------------------------------------------------------------------
@offers_bp.route("/<int:offer_id>", methods=["GET"])
@actor_required
def get_offer(offer_id: int, actor: Actor):
    return jsonify({"offer": offer_machine.get_for_viewer(offer_id, actor)})


@offers_bp.route("/<int:offer_id>/<action>", methods=["POST"])
@actor_required
def transition_offer(offer_id: int, action: str, actor: Actor):
    handler = TRANSITIONS.get(action)
    if handler is None:
        abort(404)
    handler(offer_id, actor)
    return jsonify({"offer": offer_machine.get_for_viewer(offer_id, actor)})


# ---------------------------------------------------------------------
# Procuring organization
# ---------------------------------------------------------------------
@offers_bp.route("/unread", methods=["GET"])
@actor_required
def unread(actor: Actor):
    organization_id = _organization_id(request.args.get("organization_id"), actor)
    return jsonify(offer_machine.unread_offers(organization_id, actor))


@offers_bp.route("/<int:offer_id>/view", methods=["POST"])
@actor_required
def mark_viewed(offer_id: int, actor: Actor):
    offer_machine.mark_viewed(offer_id, actor)
    return jsonify({"offer": offer_machine.get_for_viewer(offer_id, actor)})


@offers_bp.route("/<int:offer_id>/comments", methods=["GET"])
@actor_required
def list_comments(offer_id: int, actor: Actor):
    rows = comments.list_comments(offer_id, actor)
    return jsonify({"comments": [comments.serialize_comment(c) for c in rows]})


@offers_bp.route("/<int:offer_id>/comments", methods=["POST"])
@actor_required
def add_comment(offer_id: int, actor: Actor):
    comment = comments.add_comment(offer_id, actor, json_payload().get("content"))
    return jsonify({"comment": comments.serialize_comment(comment)}), 201


@offers_bp.route("/<int:offer_id>/internal-note", methods=["PUT"])
@actor_required
def update_internal_note(offer_id: int, actor: Actor):
    comment = comments.update_internal_note(offer_id, actor, json_payload().get("note"))
    return jsonify({"comment": comments.serialize_comment(comment) if comment else None})


@offers_bp.route("/comments/<int:comment_id>", methods=["DELETE"])
@actor_required
def delete_comment(comment_id: int, actor: Actor):
    comments.delete_comment(comment_id, actor)
    return jsonify({"status": "deleted", "comment_id": comment_id})
