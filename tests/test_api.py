"""HTTP tests for the JSON API."""

from datetime import timedelta

import pytest

from equitender.extensions import db
from equitender.lifecycle import tenders
from equitender.models import DisclosureMode, Tender, TenderStatus, User
from equitender.security import Actor
from equitender.utils import utcnow


def login(client, actor: Actor, password: str = "secret"):
    email = db.session.get(User, actor.user_id).email
    return client.post("/auth/login", json={"email": email, "password": password})


def error_of(response) -> dict:
    return response.get_json()["error"]


class TestAuth:
    """Tests for session endpoints."""

    def test_login_and_me(self, client, world) -> None:
        response = login(client, world.owner)
        assert response.status_code == 200

        me = client.get("/auth/me").get_json()["user"]
        assert me["name"] == "Olivia Owner"
        assert me["memberships"] == [{"organization_id": world.procurer.id, "role": "OWNER"}]

    def test_wrong_password(self, client, world) -> None:
        response = login(client, world.owner, password="nope")
        assert response.status_code == 403
        assert error_of(response)["code"] == "invalid_credentials"

    def test_anonymous_caller_is_refused(self, client, world) -> None:
        response = client.get("/tenders/")
        assert response.status_code == 403
        assert error_of(response)["code"] == "authentication_required"

    def test_logout(self, client, world) -> None:
        login(client, world.owner)
        assert client.post("/auth/logout").status_code == 200
        assert client.get("/auth/me").status_code == 403


class TestTenderEndpoints:
    """Tests for tender routes."""

    def test_create_and_publish(self, client, world, fanout) -> None:
        login(client, world.editor)
        deadline = (utcnow() + timedelta(days=5)).isoformat() + "Z"

        created = client.post("/tenders/", json={"title": "Street lighting", "deadline": deadline, "budget": "80000"})
        assert created.status_code == 201
        tender_id = created.get_json()["tender"]["id"]

        published = client.post(f"/tenders/{tender_id}/publish")
        assert published.status_code == 200
        assert published.get_json()["tender"]["status"] == TenderStatus.PUBLISHED

        listed = client.get("/tenders/").get_json()["tenders"]
        assert [t["id"] for t in listed] == [tender_id]

    def test_validation_error(self, client, world) -> None:
        login(client, world.editor)
        response = client.post("/tenders/", json={"deadline": "2030-01-01T00:00:00Z"})
        assert response.status_code == 400
        assert error_of(response) == {
            "kind": "validation",
            "code": "title_required",
            "message": error_of(response)["message"],
        }

    def test_non_object_body(self, client, world) -> None:
        login(client, world.editor)
        response = client.post("/tenders/", json=["not", "an", "object"])
        assert response.status_code == 400
        assert error_of(response)["code"] == "invalid_body"

    def test_unknown_tender(self, client, world) -> None:
        login(client, world.editor)
        response = client.get("/tenders/999")
        assert response.status_code == 404
        assert error_of(response)["kind"] == "not_found"

    def test_viewer_cannot_publish(self, client, world) -> None:
        login(client, world.editor)
        deadline = (utcnow() + timedelta(days=5)).isoformat() + "Z"
        tender_id = client.post("/tenders/", json={"title": "Bridge", "deadline": deadline}).get_json()["tender"]["id"]
        client.post("/auth/logout")

        login(client, world.viewer)
        response = client.post(f"/tenders/{tender_id}/publish")
        assert response.status_code == 403
        assert error_of(response)["kind"] == "unauthorized"

    def test_reveal_before_deadline(self, client, world, published_tender) -> None:
        tender = published_tender(DisclosureMode.ANONYMOUS)
        login(client, world.owner)

        response = client.post(f"/tenders/{tender.id}/reveal")
        assert response.status_code == 422
        assert error_of(response) == {
            "kind": "window_violation",
            "code": "deadline_not_reached",
            "message": error_of(response)["message"],
        }

    def test_award_requires_winner(self, client, world, published_tender) -> None:
        tender = published_tender()
        login(client, world.owner)
        response = client.post(f"/tenders/{tender.id}/award", json={})
        assert response.status_code == 400
        assert error_of(response)["code"] == "winning_offer_required"


class TestOfferEndpoints:
    """Tests for offer routes."""

    def test_submit_then_duplicate(self, client, world, published_tender) -> None:
        tender = published_tender()
        login(client, world.a_editor)

        draft = client.post("/offers/", json={"tender_id": tender.id, "price": "65000"})
        assert draft.status_code == 201
        offer_id = draft.get_json()["offer"]["id"]

        submitted = client.post(f"/offers/{offer_id}/submit")
        assert submitted.get_json()["offer"]["status"] == "SUBMITTED"

        again = client.post("/offers/", json={"tender_id": tender.id, "price": "60000"})
        assert again.status_code == 409
        assert error_of(again)["code"] == "duplicate_active_offer"

    def test_non_finite_price_is_a_validation_error(self, client, world, published_tender) -> None:
        tender = published_tender()
        login(client, world.a_editor)

        response = client.post("/offers/", json={"tender_id": tender.id, "price": "NaN"})
        assert response.status_code == 400
        assert error_of(response)["code"] == "invalid_price"

    def test_unknown_action(self, client, world, published_tender, submitted_offer) -> None:
        offer = submitted_offer(published_tender())
        login(client, world.owner)
        response = client.post(f"/offers/{offer.id}/promote")
        assert response.status_code == 404
        assert error_of(response)["kind"] == "http"

    def test_anonymous_offers_are_masked(self, client, world, published_tender, submitted_offer) -> None:
        tender = published_tender(DisclosureMode.ANONYMOUS)
        offer = submitted_offer(tender)
        login(client, world.owner)

        response = client.get(f"/tenders/{tender.id}/offers")
        assert response.status_code == 200
        [presented] = response.get_json()["offers"]
        assert presented["bidder"]["name"] == offer.anonymous_id
        assert presented["identity_revealed"] is False
        assert "Alpha" not in response.get_data(as_text=True)

        log = client.get(f"/tenders/{tender.id}/equity-log").get_data(as_text=True)
        assert offer.anonymous_id in log
        assert "Alpha" not in log

    def test_bidder_sees_own_identity(self, client, world, published_tender, submitted_offer) -> None:
        offer = submitted_offer(published_tender(DisclosureMode.ANONYMOUS))
        login(client, world.a_viewer)
        presented = client.get(f"/offers/{offer.id}").get_json()["offer"]
        assert presented["bidder"]["name"] == "Alpha Bau AG"

    def test_bidder_lists_own_offers(self, client, world, published_tender, submitted_offer) -> None:
        tender = published_tender()
        offer = submitted_offer(tender)
        login(client, world.a_viewer)

        listed = client.get("/offers/").get_json()["offers"]
        assert [o["id"] for o in listed] == [offer.id]
        assert listed[0]["tender"]["title"] == tender.title

        status = client.get(f"/offers/has-submitted?tender_id={tender.id}").get_json()
        assert status == {"has_submitted": True, "offer_id": offer.id}

    def test_viewed_and_unread(self, client, world, published_tender, submitted_offer) -> None:
        tender = published_tender()
        offer = submitted_offer(tender)
        login(client, world.owner)

        before = client.get("/offers/unread").get_json()
        assert before["count"] == 1
        assert before["tenders"][0]["tender_id"] == tender.id

        viewed = client.post(f"/offers/{offer.id}/view")
        assert viewed.status_code == 200
        assert viewed.get_json()["offer"]["viewed_at"] is not None
        assert client.get("/offers/unread").get_json()["count"] == 0

    def test_comments_routes(self, client, world, published_tender, submitted_offer) -> None:
        offer = submitted_offer(published_tender())
        login(client, world.editor)

        created = client.post(f"/offers/{offer.id}/comments", json={"content": "Check references"})
        assert created.status_code == 201
        comment = created.get_json()["comment"]
        assert comment["author"]["name"] == "Elena Editor"

        listed = client.get(f"/offers/{offer.id}/comments").get_json()["comments"]
        assert [c["content"] for c in listed] == ["Check references"]

        empty = client.post(f"/offers/{offer.id}/comments", json={"content": " "})
        assert empty.status_code == 400
        assert error_of(empty)["code"] == "comment_required"

        deleted = client.delete(f"/offers/comments/{comment['id']}")
        assert deleted.get_json() == {"status": "deleted", "comment_id": comment["id"]}

    def test_bidder_cannot_read_comments(self, client, world, published_tender, submitted_offer) -> None:
        offer = submitted_offer(published_tender())
        login(client, world.a_owner)
        response = client.get(f"/offers/{offer.id}/comments")
        assert response.status_code == 404
        assert error_of(response)["kind"] == "not_found"


class TestNotificationEndpoints:
    """Tests for the in-app inbox."""

    def test_inbox(self, client, world, published_tender, submitted_offer) -> None:
        submitted_offer(published_tender())
        login(client, world.owner)

        unread = client.get("/notifications/?unread=1").get_json()["notifications"]
        assert any(n["type"] == "OFFER_RECEIVED" for n in unread)

        first = client.post(f"/notifications/{unread[0]['id']}/read")
        assert first.get_json()["notification"]["read"] is True

        rest = client.post("/notifications/read-all").get_json()
        assert rest["updated"] == len(unread) - 1
        assert client.post("/notifications/999999/read").status_code == 404


class TestWebhook:
    """Tests for the payment webhook."""

    @pytest.fixture
    def pending(self, world) -> Tender:
        return tenders.create(
            world.procurer.id,
            world.editor,
            {"title": "Paid", "deadline": (utcnow() + timedelta(days=3)).isoformat() + "Z"},
            payment_pending=True,
        )

    def test_secret_required(self, client, pending) -> None:
        response = client.post("/payments/webhook", json={"type": "checkout.session.completed"})
        assert response.status_code == 403
        assert error_of(response)["code"] == "invalid_webhook_secret"

    def test_completed_checkout_publishes(self, client, pending, fanout) -> None:
        event = {
            "type": "checkout.session.completed",
            "data": {"object": {"metadata": {"type": "tender_publication", "tender_id": pending.id}}},
        }
        response = client.post("/payments/webhook", json=event, headers={"X-Webhook-Secret": "test-webhook-secret"})

        assert response.status_code == 200
        assert response.get_json() == {"received": True, "status": "published", "tender_id": pending.id}
        db.session.expire_all()
        assert db.session.get(Tender, pending.id).status == TenderStatus.PUBLISHED
