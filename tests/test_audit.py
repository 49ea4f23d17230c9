"""Unit tests for the equity log."""

import pytest

from equitender import audit
from equitender.errors import NotFound
from equitender.extensions import db
from equitender.lifecycle import tenders
from equitender.models import EquityAction, EquityLog


class TestAppend:
    """Tests for append / sequencing."""

    def test_sequence_increases_per_tender(self, world) -> None:
        audit.append(1, world.owner, EquityAction.TENDER_CREATED, "created")
        audit.append(1, world.owner, EquityAction.TENDER_PUBLISHED, "published")
        audit.append(2, world.owner, EquityAction.TENDER_CREATED, "other tender")
        db.session.commit()

        first = EquityLog.query.filter_by(tender_id=1).order_by(EquityLog.sequence).all()
        assert [e.sequence for e in first] == [1, 2]
        assert EquityLog.query.filter_by(tender_id=2).one().sequence == 1

    def test_snapshot_and_metadata_are_stored(self, world) -> None:
        from decimal import Decimal

        entry = audit.append(7, world.admin, EquityAction.TENDER_AWARDED, "awarded", {"price": Decimal("10.50")})
        db.session.commit()
        assert entry.user_name_snapshot == "Adrian Admin"
        assert entry.details == {"price": "10.50"}

    def test_name_override(self, world) -> None:
        entry = audit.append(7, world.a_editor, EquityAction.OFFER_RECEIVED, "x", user_name="BID-000001")
        assert entry.user_name_snapshot == "BID-000001"

    def test_entries_cannot_be_updated(self, world) -> None:
        entry = audit.append(3, world.owner, EquityAction.TENDER_CREATED, "created")
        db.session.commit()
        entry.description = "rewritten"
        with pytest.raises(RuntimeError):
            db.session.commit()
        db.session.rollback()

    def test_entries_cannot_be_deleted(self, world) -> None:
        entry = audit.append(3, world.owner, EquityAction.TENDER_CREATED, "created")
        db.session.commit()
        db.session.delete(entry)
        with pytest.raises(RuntimeError):
            db.session.commit()
        db.session.rollback()


class TestListEntries:
    """Tests for the read-only listing."""

    def test_owner_and_admin_read_in_creation_order(self, world, published_tender) -> None:
        tender = published_tender()
        for actor in (world.owner, world.admin):
            entries = audit.list_entries(tender.id, actor)
            assert [e.action for e in entries] == [EquityAction.TENDER_CREATED, EquityAction.TENDER_PUBLISHED]

    @pytest.mark.parametrize("who", ["editor", "viewer", "a_owner"])
    def test_others_get_not_found(self, world, published_tender, who: str) -> None:
        tender = published_tender()
        with pytest.raises(NotFound):
            audit.list_entries(tender.id, getattr(world, who))

    def test_missing_tender(self, world) -> None:
        with pytest.raises(NotFound):
            audit.list_entries(999, world.owner)

    def test_serialize_entry(self, world, published_tender) -> None:
        tender = published_tender(title="Road works")
        data = audit.serialize_entry(audit.list_entries(tender.id, world.owner)[0])
        assert data["action"] == "TENDER_CREATED"
        assert data["sequence"] == 1
        assert data["user_name"] == "Elena Editor"
        assert "Road works" in data["description"]


def test_deleted_draft_keeps_its_trail(world) -> None:
    """The log survives the hard delete of a draft tender."""
    tender = tenders.create(world.procurer.id, world.editor, {"title": "Temp", "deadline": "2099-01-01T00:00:00Z"})
    tender_id = tender.id
    tenders.delete_draft(tender_id, world.editor)

    actions = [e.action for e in EquityLog.query.filter_by(tender_id=tender_id).order_by(EquityLog.sequence)]
    assert actions == [EquityAction.TENDER_CREATED, EquityAction.TENDER_DELETED]
