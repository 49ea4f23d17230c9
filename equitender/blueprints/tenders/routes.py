"""
equitender/blueprints/tenders/routes.py

Tender routes (JSON API).

Includes:
- List / detail (visibility rules of the lifecycle read side)
- Draft create / update / delete
- Transitions: publish, close, cancel, reveal, award
- Received offers (masked through the anonymity gate) and the equity log

IMPORTANT:
- UI is never trusted. Routes resolve the actor and hand over to
  equitender.lifecycle.tenders; authorization and state rules live there.
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from ... import audit
from ...errors import ValidationError
from ...lifecycle import offers as offer_machine
from ...lifecycle import tenders as tender_machine
from ...security import Actor, actor_required
from ...utils import json_payload, parse_optional_int

tenders_bp = Blueprint("tenders", __name__, url_prefix="/tenders")


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------
def _organization_id(data: dict, actor: Actor) -> int:
    """organization_id from the payload, or the actor's only organization."""
    organization_id = parse_optional_int(data.get("organization_id"))
    if organization_id is not None:
        return organization_id
    if len(actor.memberships) == 1:
        return next(iter(actor.memberships))
    raise ValidationError("organization_id is required.", code="organization_required")


def _tender_response(tender_id: int, actor: Actor, status: int = 200):
    tender = tender_machine.get_for_viewer(tender_id, actor)
    return jsonify({"tender": tender_machine.serialize_tender(tender, actor)}), status


# ---------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------
@tenders_bp.route("/", methods=["GET"])
@actor_required
def list_tenders(actor: Actor):
    tenders = tender_machine.list_visible(actor, status=request.args.get("status"))
    return jsonify({"tenders": [tender_machine.serialize_tender(t, actor) for t in tenders]})


@tenders_bp.route("/<int:tender_id>", methods=["GET"])
@actor_required
def get_tender(tender_id: int, actor: Actor):
    return _tender_response(tender_id, actor)


@tenders_bp.route("/<int:tender_id>/offers", methods=["GET"])
@actor_required
def list_offers(tender_id: int, actor: Actor):
    return jsonify({"offers": offer_machine.list_received(tender_id, actor)})


@tenders_bp.route("/<int:tender_id>/equity-log", methods=["GET"])
@actor_required
def equity_log(tender_id: int, actor: Actor):
    entries = audit.list_entries(tender_id, actor)
    return jsonify({"entries": [audit.serialize_entry(e) for e in entries]})


# ---------------------------------------------------------------------
# Drafts
# ---------------------------------------------------------------------
@tenders_bp.route("/", methods=["POST"])
@actor_required
def create_tender(actor: Actor):
    data = json_payload()
    tender = tender_machine.create(
        _organization_id(data, actor),
        actor,
        data,
        payment_pending=bool(data.get("payment_pending")),
    )
    return _tender_response(tender.id, actor, status=201)


@tenders_bp.route("/<int:tender_id>", methods=["PATCH"])
@actor_required
def update_tender(tender_id: int, actor: Actor):
    tender_machine.update_draft(tender_id, actor, json_payload())
    return _tender_response(tender_id, actor)


@tenders_bp.route("/<int:tender_id>", methods=["DELETE"])
@actor_required
def delete_tender(tender_id: int, actor: Actor):
    tender_machine.delete_draft(tender_id, actor)
    return jsonify({"status": "deleted", "tender_id": tender_id})


# ---------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------
@tenders_bp.route("/<int:tender_id>/publish", methods=["POST"])
@actor_required
def publish_tender(tender_id: int, actor: Actor):
    tender_machine.publish(tender_id, actor)
    return _tender_response(tender_id, actor)


@tenders_bp.route("/<int:tender_id>/close", methods=["POST"])
@actor_required
def close_tender(tender_id: int, actor: Actor):
    tender_machine.close(tender_id, actor)
    return _tender_response(tender_id, actor)


@tenders_bp.route("/<int:tender_id>/cancel", methods=["POST"])
@actor_required
def cancel_tender(tender_id: int, actor: Actor):
    tender_machine.cancel(tender_id, actor)
    return _tender_response(tender_id, actor)


@tenders_bp.route("/<int:tender_id>/reveal", methods=["POST"])
@actor_required
def reveal_identities(tender_id: int, actor: Actor):
    tender_machine.reveal_identities(tender_id, actor)
    return _tender_response(tender_id, actor)


@tenders_bp.route("/<int:tender_id>/award", methods=["POST"])
@actor_required
def award_tender(tender_id: int, actor: Actor):
    winning_offer_id = parse_optional_int(json_payload().get("winning_offer_id"))
    if winning_offer_id is None:
        raise ValidationError("winning_offer_id is required.", code="winning_offer_required")
    tender_machine.award(tender_id, actor, winning_offer_id)
    return _tender_response(tender_id, actor)
