"""Unit tests for the capability table and AuthorizationGuard."""

import pytest

from equitender.errors import Unauthorized
from equitender.models import Role
from equitender.security import CAPABILITIES, TRANSITION_ROLES, Actor, AuthorizationGuard, CurrentActor


class TestCapabilityTable:
    """Tests for the role -> transition mapping."""

    @pytest.mark.parametrize("role", [Role.OWNER, Role.ADMIN, Role.EDITOR])
    def test_editors_manage_drafts_and_publish(self, role: str) -> None:
        for transition in ("tender.create", "tender.publish", "offer.save_draft", "offer.submit", "offer.withdraw"):
            assert AuthorizationGuard.allows(role, transition)

    @pytest.mark.parametrize(
        "transition",
        ["tender.award", "tender.cancel", "tender.close_early", "tender.reveal_identities",
         "offer.shortlist", "offer.reject", "offer.accept", "equity_log.view"],
    )
    def test_review_actions_need_owner_or_admin(self, transition: str) -> None:
        assert AuthorizationGuard.allows(Role.OWNER, transition)
        assert AuthorizationGuard.allows(Role.ADMIN, transition)
        assert not AuthorizationGuard.allows(Role.EDITOR, transition)
        assert not AuthorizationGuard.allows(Role.VIEWER, transition)

    def test_viewer_is_read_only(self) -> None:
        assert CAPABILITIES[Role.VIEWER] == {"tender.view", "offer.view_received", "offer.view_own", "offer.comment"}

    def test_no_role_allows_nothing(self) -> None:
        assert not any(AuthorizationGuard.allows(None, t) for t in TRANSITION_ROLES)

    def test_unknown_transition_is_a_programming_error(self) -> None:
        with pytest.raises(KeyError):
            AuthorizationGuard.allows(Role.OWNER, "tender.teleport")


class TestGuard:
    """Tests for can / require against an actor's memberships."""

    def test_role_is_per_organization(self) -> None:
        actor = Actor(user_id=1, memberships={10: Role.OWNER, 20: Role.VIEWER})
        assert AuthorizationGuard.can(actor, 10, "tender.award")
        assert not AuthorizationGuard.can(actor, 20, "tender.award")
        assert not AuthorizationGuard.can(actor, 30, "tender.view")

    def test_require_returns_role(self) -> None:
        actor = Actor(user_id=1, memberships={10: Role.EDITOR})
        assert AuthorizationGuard.require(actor, 10, "tender.publish") == Role.EDITOR

    def test_require_raises_unauthorized_with_transition(self) -> None:
        actor = Actor(user_id=1, memberships={10: Role.VIEWER})
        with pytest.raises(Unauthorized) as exc_info:
            AuthorizationGuard.require(actor, 10, "tender.publish")
        assert exc_info.value.kind == "unauthorized"
        assert exc_info.value.details == {"transition": "tender.publish"}

    def test_system_actor_bypasses_roles(self) -> None:
        assert AuthorizationGuard.require(Actor.system(), 99, "tender.close") == Role.OWNER


class TestActorResolution:
    """Tests for building actors from users and sessions."""

    def test_for_user_loads_memberships(self, world) -> None:
        assert world.owner.memberships == {world.procurer.id: Role.OWNER}
        assert world.owner.name == "Olivia Owner"

    def test_system_on_behalf_of_keeps_user(self, world) -> None:
        from equitender.extensions import db
        from equitender.models import User

        user = db.session.get(User, world.a_editor.user_id)
        actor = Actor.system(on_behalf_of=user)
        assert actor.is_system
        assert actor.user_id == user.id
        assert actor.role_in(world.bidder_a.id) == Role.EDITOR

    def test_anonymous_request_is_unauthorized(self, app) -> None:
        with app.test_request_context("/"):
            with pytest.raises(Unauthorized) as exc_info:
                CurrentActor.resolve()
        assert exc_info.value.code == "authentication_required"
