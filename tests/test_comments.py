"""Tests for internal comments on received offers."""

import pytest

from equitender import comments
from equitender.errors import NotFound, Unauthorized, ValidationError
from equitender.lifecycle import offers
from equitender.models import DisclosureMode, EquityLog, Notification, NotificationType, OfferComment
from equitender.notifications import OrganizationNotice


class TestAddComment:
    """Tests for adding comments."""

    def test_team_member_comments_and_team_is_notified(self, world, fanout, published_tender, submitted_offer) -> None:
        offer = submitted_offer(published_tender())
        logged = EquityLog.query.count()

        comment = comments.add_comment(offer.id, world.viewer, "  Price looks low, check the insulation lot.  ")

        assert comment.content == "Price looks low, check the insulation lot."
        assert comment.author_id == world.viewer.user_id
        notified = {n.user_id for n in Notification.query.filter_by(type=NotificationType.COMMENT_ADDED)}
        assert notified == {world.owner.user_id, world.admin.user_id, world.editor.user_id}
        assert EquityLog.query.count() == logged

    def test_notice_keeps_the_bidder_anonymous(self, world, fanout, published_tender, submitted_offer) -> None:
        offer = submitted_offer(published_tender(mode=DisclosureMode.ANONYMOUS))

        comments.add_comment(offer.id, world.owner, "Shortlist candidate")

        [notice] = [
            i.notice
            for i in fanout.dispatched
            if isinstance(i, OrganizationNotice) and i.notice.type == NotificationType.COMMENT_ADDED
        ]
        assert offer.anonymous_id in notice.message
        assert "Alpha" not in notice.message

    @pytest.mark.parametrize("content", [None, "", "   ", "x" * (comments.MAX_COMMENT_LENGTH + 1)])
    def test_content_is_validated(self, world, published_tender, submitted_offer, content) -> None:
        offer = submitted_offer(published_tender())
        with pytest.raises(ValidationError):
            comments.add_comment(offer.id, world.owner, content)
        assert OfferComment.query.count() == 0

    def test_bidders_and_drafts_are_out_of_reach(self, world, published_tender, submitted_offer) -> None:
        tender = published_tender()
        offer = submitted_offer(tender)
        draft = offers.save_draft(tender.id, world.bidder_b.id, world.b_owner, {"price": "1"})
        with pytest.raises(NotFound):
            comments.add_comment(offer.id, world.a_owner, "self review")
        with pytest.raises(NotFound):
            comments.list_comments(offer.id, world.b_owner)
        with pytest.raises(NotFound):
            comments.add_comment(draft.id, world.owner, "too early")


class TestReadAndDelete:
    """Tests for listing, deleting and the single-note entry point."""

    def test_list_in_creation_order(self, world, published_tender, submitted_offer) -> None:
        offer = submitted_offer(published_tender())
        comments.add_comment(offer.id, world.owner, "first")
        comments.add_comment(offer.id, world.editor, "second")

        listed = [comments.serialize_comment(c) for c in comments.list_comments(offer.id, world.viewer)]
        assert [c["content"] for c in listed] == ["first", "second"]
        assert listed[1]["author"]["name"] == "Elena Editor"

    def test_only_author_deletes(self, world, published_tender, submitted_offer) -> None:
        offer = submitted_offer(published_tender())
        comment_id = comments.add_comment(offer.id, world.editor, "mine").id

        with pytest.raises(Unauthorized) as exc_info:
            comments.delete_comment(comment_id, world.owner)
        assert exc_info.value.code == "not_comment_author"

        comments.delete_comment(comment_id, world.editor)
        assert OfferComment.query.count() == 0
        with pytest.raises(NotFound):
            comments.delete_comment(comment_id, world.editor)

    def test_internal_note(self, world, published_tender, submitted_offer) -> None:
        offer = submitted_offer(published_tender())

        assert comments.update_internal_note(offer.id, world.owner, "  ") is None
        note = comments.update_internal_note(offer.id, world.owner, "Call references")
        assert note.content == "Call references"
        with pytest.raises(NotFound):
            comments.update_internal_note(offer.id, world.a_owner, "")
