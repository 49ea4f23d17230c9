"""
Authentication Routes (JSON)

Provides:
- POST /auth/login   {email, password}
- POST /auth/logout
- GET  /auth/me      current user and organization memberships

Rules:
- Only active users may log in.
- Credentials validated via password hash; the response never says which part was wrong.
"""

from __future__ import annotations

from flask import Blueprint, jsonify
from flask_login import current_user, login_required, login_user, logout_user

from ...errors import Unauthorized, ValidationError
from ...models import User
from ...security import Actor, actor_required
from ...utils import clean_str, json_payload

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")


def _user_payload(user: User, actor: Actor) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "memberships": [
            {"organization_id": org_id, "role": role} for org_id, role in sorted(actor.memberships.items())
        ],
    }


# ============================================================
# LOGIN
# ============================================================

@auth_bp.route("/login", methods=["POST"])
def login():
    """Authenticate a user and open a session."""
    data = json_payload()
    email = (clean_str(data.get("email")) or "").lower()
    password = data.get("password") or ""
    if not email or not password:
        raise ValidationError("Email and password are required.", code="credentials_required")

    user = User.query.filter_by(email=email).first()
    if not user or not user.check_password(password) or not user.is_active:
        raise Unauthorized("Invalid email or password.", code="invalid_credentials")

    login_user(user)
    return jsonify({"user": _user_payload(user, Actor.for_user(user))})


# ============================================================
# LOGOUT
# ============================================================

@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout():
    """Log out the current user."""
    logout_user()
    return jsonify({"status": "logged_out"})


@auth_bp.route("/me")
@actor_required
def me(actor: Actor):
    return jsonify({"user": _user_payload(current_user, actor)})
