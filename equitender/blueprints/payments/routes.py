"""
Payment gateway webhook.

POST /payments/webhook  (header X-Webhook-Secret: PAYMENT_WEBHOOK_SECRET)

The gateway's own signature check runs upstream; this endpoint only accepts
callers holding the shared secret, then hands the event to
PaymentConfirmationHook.
"""

from __future__ import annotations

import hmac
import logging

from flask import Blueprint, current_app, jsonify, request

from ...errors import Unauthorized
from ...payments import PaymentConfirmationHook
from ...utils import json_payload

logger = logging.getLogger(__name__)

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


def _check_secret() -> None:
    expected = current_app.config.get("PAYMENT_WEBHOOK_SECRET") or ""
    provided = request.headers.get("X-Webhook-Secret", "")
    if not expected or not hmac.compare_digest(expected, provided):
        logger.warning("Payment webhook called with an invalid secret from %s", request.remote_addr)
        raise Unauthorized("Invalid webhook secret.", code="invalid_webhook_secret")


@payments_bp.route("/webhook", methods=["POST"])
def webhook():
    _check_secret()
    result = PaymentConfirmationHook().handle_event(json_payload())
    return jsonify({"received": True, **result})
