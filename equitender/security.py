"""
equitender/security.py

Access control for the tender/offer lifecycle (AuthorizationGuard).

Key rules:
- UI is never trusted; every transition asks the guard server-side.
- Permissions are a fixed capability table: role -> set of transition names.
  Each transition declares the single capability it needs; role lists are never
  repeated at call sites.
- The guard only answers "may this role in this organization do X". Status and
  timing rules belong to the state machines.

The Actor is resolved from the Flask-Login session (CurrentActor.resolve) in
HTTP requests, or built explicitly (CLI, payment hook, tests).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Callable, Dict, FrozenSet, Optional

from flask_login import current_user

from .errors import Unauthorized
from .models import OrganizationMember, Role

# ---------------------------------------------------------------------
# Capability table
# ---------------------------------------------------------------------
_EDITORS = frozenset({Role.OWNER, Role.ADMIN, Role.EDITOR})
_MANAGERS = frozenset({Role.OWNER, Role.ADMIN})
_MEMBERS = frozenset(Role.ALL)

TRANSITION_ROLES: Dict[str, FrozenSet[str]] = {
    # Tender (procuring organization)
    "tender.create": _EDITORS,
    "tender.update_draft": _EDITORS,
    "tender.delete_draft": _EDITORS,
    "tender.publish": _EDITORS,
    "tender.close": _EDITORS,
    "tender.close_early": _MANAGERS,
    "tender.award": _MANAGERS,
    "tender.cancel": _MANAGERS,
    "tender.reveal_identities": _MANAGERS,
    "tender.view": _MEMBERS,
    "equity_log.view": _MANAGERS,
    # Offer (procuring organization)
    "offer.view_received": _MEMBERS,
    "offer.shortlist": _MANAGERS,
    "offer.unshortlist": _MANAGERS,
    "offer.reject": _MANAGERS,
    "offer.accept": _MANAGERS,
    # Offer (bidding organization)
    "offer.save_draft": _EDITORS,
    "offer.submit": _EDITORS,
    "offer.withdraw": _EDITORS,
    "offer.delete_draft": _EDITORS,
    "offer.view_own": _MEMBERS,
    # Internal comments (procuring organization)
    "offer.comment": _MEMBERS,
}

# Inverted view, role -> capabilities
CAPABILITIES: Dict[str, FrozenSet[str]] = {
    role: frozenset(name for name, roles in TRANSITION_ROLES.items() if role in roles)
    for role in Role.ALL
}


# ---------------------------------------------------------------------
# Actor
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class Actor:
    """Caller identity: user id plus role per organization."""

    user_id: Optional[int]
    memberships: Dict[int, str] = field(default_factory=dict)
    name: Optional[str] = None
    is_system: bool = False

    def role_in(self, organization_id: int) -> Optional[str]:
        return self.memberships.get(organization_id)

    def belongs_to(self, organization_id: int) -> bool:
        return organization_id in self.memberships

    @classmethod
    def for_user(cls, user: Any) -> "Actor":
        """Build an actor from a User row (memberships loaded from the DB)."""
        rows = OrganizationMember.query.filter_by(user_id=user.id).all()
        return cls(
            user_id=user.id,
            memberships={m.organization_id: m.role for m in rows},
            name=getattr(user, "name", None) or getattr(user, "email", None),
        )

    @classmethod
    def system(cls, on_behalf_of: Any = None) -> "Actor":
        """
        Actor used by the CLI sweep and the payment hook.

        on_behalf_of: the User the system acts for (e.g. the tender creator), recorded in the equity log.
        """
        if on_behalf_of is None:
            return cls(user_id=None, name="system", is_system=True)
        base = cls.for_user(on_behalf_of)
        return cls(user_id=base.user_id, memberships=base.memberships, name=base.name, is_system=True)


class CurrentActor:
    """Resolution of the session user into an Actor."""

    @staticmethod
    def resolve() -> Actor:
        if not current_user.is_authenticated:
            raise Unauthorized("Authentication required.", code="authentication_required")
        return Actor.for_user(current_user)


# ---------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------
class AuthorizationGuard:
    """Approve or deny an operation against the capability table."""

    @staticmethod
    def allows(role: Optional[str], transition: str) -> bool:
        if role is None:
            return False
        if transition not in TRANSITION_ROLES:
            raise KeyError(f"Unknown transition capability: {transition}")
        return transition in CAPABILITIES.get(role, frozenset())

    @classmethod
    def can(cls, actor: Actor, organization_id: int, transition: str) -> bool:
        return cls.allows(actor.role_in(organization_id), transition)

    @classmethod
    def require(cls, actor: Actor, organization_id: int, transition: str) -> str:
        """
        Return the actor's role, or raise Unauthorized.

        System actors bypass the role check; they are only constructed by
        trusted entry points (CLI, payment hook).
        """
        if actor.is_system:
            return actor.role_in(organization_id) or Role.OWNER
        role = actor.role_in(organization_id)
        if not cls.allows(role, transition):
            raise Unauthorized(
                "You are not allowed to perform this action for this organization.",
                details={"transition": transition},
            )
        return role


def actor_required(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator: resolve the session actor and pass it as the `actor` keyword."""
    @wraps(view_func)
    def wrapper(*args: Any, **kwargs: Any):
        kwargs["actor"] = CurrentActor.resolve()
        return view_func(*args, **kwargs)

    return wrapper
