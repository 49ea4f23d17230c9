"""Unit tests for the anonymity gate and masked offer presentation."""

from datetime import datetime, timedelta

from equitender import audit
from equitender.anonymity import bidder_label, can_reveal, can_reveal_identity, may_reveal_now, present_offer
from equitender.models import DisclosureMode, EquityAction, EquityLog, Offer, Organization, Tender


DEADLINE = datetime(2026, 3, 9, 14, 0, 0)


def _tender(mode: str = DisclosureMode.ANONYMOUS, revealed: bool = False) -> Tender:
    return Tender(id=1, organization_id=1, title="T", deadline=DEADLINE, mode=mode, identity_revealed=revealed)


def _offer(tender: Tender) -> Offer:
    org = Organization(id=2, name="Alpha Bau AG", email="info@alpha.ch", city="Bern", canton="BE")
    offer = Offer(id=5, tender_id=tender.id, organization_id=org.id, price=50000, anonymous_id="BID-1A2B3C")
    offer.tender = tender
    offer.organization = org
    return offer


class TestCanRevealIdentity:
    """Tests for the pure reveal decision."""

    def test_classic_is_always_visible(self) -> None:
        assert can_reveal_identity(_tender(DisclosureMode.CLASSIC), DEADLINE - timedelta(days=1))

    def test_anonymous_hidden_until_deadline(self) -> None:
        tender = _tender()
        assert not can_reveal_identity(tender, DEADLINE - timedelta(seconds=1))
        assert not can_reveal_identity(tender, DEADLINE)

    def test_anonymous_visible_one_instant_after_deadline(self) -> None:
        assert can_reveal_identity(_tender(), DEADLINE + timedelta(milliseconds=1))

    def test_explicit_reveal_opens_gate_before_deadline(self) -> None:
        assert can_reveal(_tender(revealed=True), DEADLINE - timedelta(days=3))


class TestMayRevealNow:
    """Tests for when identity_revealed may flip."""

    def test_never_for_classic(self) -> None:
        assert not may_reveal_now(_tender(DisclosureMode.CLASSIC), DEADLINE + timedelta(days=1), explicit=True)

    def test_never_twice(self) -> None:
        assert not may_reveal_now(_tender(revealed=True), DEADLINE + timedelta(days=1), explicit=True)

    def test_after_deadline_or_explicit(self) -> None:
        tender = _tender()
        assert not may_reveal_now(tender, DEADLINE - timedelta(hours=1))
        assert may_reveal_now(tender, DEADLINE - timedelta(hours=1), explicit=True)
        assert may_reveal_now(tender, DEADLINE + timedelta(hours=1))


class TestPresentOffer:
    """Tests for the masked read path."""

    def test_procurer_sees_anonymous_id_before_deadline(self) -> None:
        offer = _offer(_tender())
        data = present_offer(offer, viewer_organization_id=1, now=DEADLINE - timedelta(hours=1))
        assert data["identity_revealed"] is False
        assert data["bidder"]["name"] == "BID-1A2B3C"
        assert data["bidder"]["id"] is None
        assert data["bidder"]["city"] is None
        assert data["bidder"]["canton"] is None
        assert data["bidder"]["email"] is None
        assert "Alpha" not in str(data)

    def test_procurer_sees_identity_after_deadline(self) -> None:
        offer = _offer(_tender())
        data = present_offer(offer, viewer_organization_id=1, now=DEADLINE + timedelta(seconds=1))
        assert data["bidder"]["name"] == "Alpha Bau AG"
        assert data["bidder"]["canton"] == "BE"

    def test_bidder_always_sees_itself(self) -> None:
        offer = _offer(_tender())
        data = present_offer(offer, viewer_organization_id=2, now=DEADLINE - timedelta(days=1))
        assert data["bidder"]["name"] == "Alpha Bau AG"

    def test_bidder_label_follows_gate(self) -> None:
        offer = _offer(_tender())
        assert bidder_label(offer, now=DEADLINE - timedelta(days=1)) == "BID-1A2B3C"
        assert bidder_label(offer, now=DEADLINE + timedelta(days=1)) == "Alpha Bau AG"


class TestMaskedEquityLog:
    """Tests for bidder-side entries read by the procuring organization."""

    def test_bidder_user_id_withheld_until_disclosure(self, world, published_tender, submitted_offer, move_deadline) -> None:
        tender = published_tender(mode=DisclosureMode.ANONYMOUS)
        offer = submitted_offer(tender)

        [received] = [
            audit.serialize_entry(e)
            for e in audit.list_entries(tender.id, world.owner)
            if e.action == EquityAction.OFFER_RECEIVED
        ]
        assert received["user_id"] is None
        assert received["user_name"] == offer.anonymous_id

        move_deadline(tender.id, -timedelta(seconds=1))
        entry = EquityLog.query.filter_by(tender_id=tender.id, action=EquityAction.OFFER_RECEIVED).one()
        assert audit.serialize_entry(entry)["user_id"] == world.a_editor.user_id

    def test_procurer_entries_keep_user_id(self, world, published_tender) -> None:
        tender = published_tender(mode=DisclosureMode.ANONYMOUS)
        entry = EquityLog.query.filter_by(tender_id=tender.id, action=EquityAction.TENDER_PUBLISHED).one()
        assert audit.serialize_entry(entry)["user_id"] == world.editor.user_id
