"""Pytest fixtures for equitender tests."""

from __future__ import annotations

from datetime import timedelta
from typing import Callable, List

import pytest

from equitender import create_app
from equitender.extensions import db
from equitender.lifecycle import offers, tenders
from equitender.models import (
    DisclosureMode,
    Offer,
    Organization,
    OrganizationMember,
    Role,
    Tender,
    User,
)
from equitender.notifications import Intent, LogEmailSender, NotificationFanout, init_fanout
from equitender.security import Actor
from equitender.utils import utcnow


class RecordingFanout(NotificationFanout):
    """Default fanout that also keeps every dispatched intent."""

    def __init__(self):
        super().__init__(LogEmailSender())
        self.dispatched: List[Intent] = []

    def dispatch(self, intents):
        intents = list(intents)
        self.dispatched.extend(intents)
        return super().dispatch(intents)

    @property
    def outbox(self):
        return self.email_sender.outbox

    def notice_types(self) -> List[str]:
        return [i.notice.type for i in self.dispatched if hasattr(i, "notice")]


@pytest.fixture
def app():
    """Flask app on an in-memory database, inside an app context."""
    app = create_app("config.TestConfig")
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def fanout(app) -> RecordingFanout:
    recording = RecordingFanout()
    init_fanout(app, recording)
    return recording


@pytest.fixture
def client(app):
    return app.test_client()


# ---------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------
@pytest.fixture
def make_org(app) -> Callable[..., Organization]:
    def _make(name: str, **kwargs) -> Organization:
        org = Organization(name=name, email=f"contact@{name.lower().replace(' ', '-')}.ch", **kwargs)
        db.session.add(org)
        db.session.commit()
        return org

    return _make


@pytest.fixture
def make_member(app) -> Callable[..., Actor]:
    """Create a user with a role in an organization and return its Actor."""
    counter = {"n": 0}

    def _make(org: Organization, role: str = Role.OWNER, name: str | None = None, password: str = "secret") -> Actor:
        counter["n"] += 1
        user = User(email=f"user{counter['n']}@example.ch", name=name or f"User {counter['n']}", is_active=True)
        user.set_password(password)
        db.session.add(user)
        db.session.flush()
        db.session.add(OrganizationMember(organization_id=org.id, user_id=user.id, role=role))
        db.session.commit()
        return Actor.for_user(user)

    return _make


class World:
    """A procuring organization and two bidders with members in every role used by the tests."""

    def __init__(self, make_org, make_member):
        self.procurer = make_org("Commune de Sion", city="Sion", canton="VS")
        self.bidder_a = make_org("Alpha Bau AG", city="Bern", canton="BE", phone="031 000 00 00")
        self.bidder_b = make_org("Beta Engineering SA", city="Lausanne", canton="VD")

        self.owner = make_member(self.procurer, Role.OWNER, name="Olivia Owner")
        self.admin = make_member(self.procurer, Role.ADMIN, name="Adrian Admin")
        self.editor = make_member(self.procurer, Role.EDITOR, name="Elena Editor")
        self.viewer = make_member(self.procurer, Role.VIEWER, name="Victor Viewer")

        self.a_owner = make_member(self.bidder_a, Role.OWNER, name="Anna Alpha")
        self.a_editor = make_member(self.bidder_a, Role.EDITOR, name="Arno Alpha")
        self.a_viewer = make_member(self.bidder_a, Role.VIEWER, name="Aline Alpha")
        self.b_owner = make_member(self.bidder_b, Role.OWNER, name="Bruno Beta")


@pytest.fixture
def world(make_org, make_member) -> World:
    return World(make_org, make_member)


def set_deadline(tender_id: int, delta: timedelta) -> None:
    """Move a tender's deadline relative to now (test setup only)."""
    Tender.query.filter_by(id=tender_id).update({"deadline": utcnow() + delta})
    db.session.commit()


@pytest.fixture
def published_tender(world, fanout) -> Callable[..., Tender]:
    """Create and publish a tender of the procuring organization."""

    def _make(mode: str = DisclosureMode.CLASSIC, deadline_in: timedelta = timedelta(days=7), **fields) -> Tender:
        payload = {
            "title": fields.pop("title", "Renovation of the school building"),
            "description": fields.pop("description", "Full renovation including insulation."),
            "deadline": (utcnow() + timedelta(days=7)).isoformat() + "Z",
            "mode": mode,
            "market_category": fields.pop("market_category", "construction"),
            "budget": fields.pop("budget", "120000"),
            "canton": fields.pop("canton", "VS"),
            **fields,
        }
        tender = tenders.create(world.procurer.id, world.editor, payload)
        tenders.publish(tender.id, world.editor)
        if deadline_in != timedelta(days=7):
            set_deadline(tender.id, deadline_in)
        return db.session.get(Tender, tender.id)

    return _make


@pytest.fixture
def submitted_offer(world) -> Callable[..., Offer]:
    """Save and submit an offer for a bidder organization."""

    def _make(tender: Tender, org: Organization | None = None, actor: Actor | None = None, price: str = "50000") -> Offer:
        org = org or world.bidder_a
        actor = actor or (world.a_editor if org.id == world.bidder_a.id else world.b_owner)
        offer = offers.save_draft(tender.id, org.id, actor, {"price": price, "description": "Our proposal"})
        offers.submit(offer.id, actor)
        return db.session.get(Offer, offer.id)

    return _make


@pytest.fixture
def move_deadline(app) -> Callable[[int, timedelta], None]:
    return set_deadline
