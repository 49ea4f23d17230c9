"""
In-app notification inbox of the current user.

- GET  /notifications/?unread=1
- POST /notifications/<id>/read
- POST /notifications/read-all
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from ... import notifications
from ...security import Actor, actor_required

notifications_bp = Blueprint("notifications", __name__, url_prefix="/notifications")


@notifications_bp.route("/", methods=["GET"])
@actor_required
def list_notifications(actor: Actor):
    unread_only = request.args.get("unread") in ("1", "true", "yes")
    rows = notifications.list_for_user(actor.user_id, unread_only=unread_only)
    return jsonify({"notifications": [notifications.serialize_notification(n) for n in rows]})


@notifications_bp.route("/<int:notification_id>/read", methods=["POST"])
@actor_required
def mark_read(notification_id: int, actor: Actor):
    n = notifications.mark_read(actor.user_id, notification_id)
    return jsonify({"notification": notifications.serialize_notification(n)})


@notifications_bp.route("/read-all", methods=["POST"])
@actor_required
def mark_all_read(actor: Actor):
    return jsonify({"updated": notifications.mark_all_read(actor.user_id)})
