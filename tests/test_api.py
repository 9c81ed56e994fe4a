"""
Tests for the authenticated HTTP endpoints.

Tests cover:
- Bearer token auth (401)
- POST /subscribe end-to-end
- GET /users
- POST /send in test and production mode
- GET /messages and GET /messages/{phone}
- Health and metrics endpoints
"""

import pytest

from smsrelay.broadcast import TEST_MODE_PREFIX
from smsrelay.models import Message, Subscriber
from smsrelay.storage import ensure_subscriber, upsert_active

from conftest import SYSTEM_NUMBER, TEST_NUMBER


class TestAuth:
    """Test bearer token protection."""

    @pytest.mark.parametrize("method,path", [
        ("post", "/subscribe"),
        ("get", "/users"),
        ("post", "/send"),
        ("get", "/messages"),
        ("get", "/messages/4087977416"),
    ])
    def test_missing_token(self, client, method, path):
        kwargs = {"json": {}} if method == "post" else {}
        response = getattr(client, method)(path, **kwargs)

        assert response.status_code == 401
        assert response.json()["status"] == "error"
        assert response.json()["message"] == "Unauthorized"

    def test_wrong_token(self, client):
        response = client.get("/users", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_non_bearer_scheme(self, client):
        response = client.get("/users", headers={"Authorization": "Basic test-key-1"})
        assert response.status_code == 401

    def test_second_configured_key(self, client):
        response = client.get("/users", headers={"Authorization": "Bearer test-key-2"})
        assert response.status_code == 200


class TestSubscribe:
    """Test POST /subscribe."""

    def test_subscribe_end_to_end(self, client, auth_headers, carrier, database, settings):
        response = client.post("/subscribe", json={"phone": "4087977416"}, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["subscriber"]["phone_number"] == "+14087977416"
        assert data["subscriber"]["active"] is True

        assert carrier.sent == [(SYSTEM_NUMBER, "+14087977416", settings.SUBSCRIBE_MESSAGE)]
        with database.session() as db:
            messages = db.query(Message).all()
            assert len(messages) == 1
            assert messages[0].receiver.phone_number == "+14087977416"
            assert messages[0].sender.phone_number == SYSTEM_NUMBER

    def test_subscribe_twice_keeps_one_row(self, client, auth_headers, database):
        client.post("/subscribe", json={"phone": "(408) 797-7416"}, headers=auth_headers)
        client.post("/subscribe", json={"phone": "+1 408 797 7416"}, headers=auth_headers)

        with database.session() as db:
            assert db.query(Subscriber).filter(Subscriber.phone_number == "+14087977416").count() == 1

    @pytest.mark.parametrize("body", [{"phone": "12345"}, {"phone": ""}, {}])
    def test_invalid_phone(self, client, auth_headers, carrier, body):
        response = client.post("/subscribe", json=body, headers=auth_headers)

        assert response.status_code == 400
        assert response.json() == {
            "status": "error",
            "message": "Invalid US phone number",
            "code": "INVALID_PHONE_FORMAT",
        }
        assert carrier.sent == []

    def test_numeric_phone(self, client, auth_headers, carrier):
        response = client.post("/subscribe", json={"phone": 4087977416}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["subscriber"]["phone_number"] == "+14087977416"
        assert carrier.recipients() == ["+14087977416"]

    def test_phone_of_wrong_type(self, client, auth_headers, carrier):
        response = client.post("/subscribe", json={"phone": ["4087977416"]}, headers=auth_headers)

        assert response.status_code == 400
        data = response.json()
        assert data["status"] == "error"
        assert data["code"] == "INVALID_REQUEST"
        assert data["details"][0]["loc"] == ["body", "phone"]
        assert carrier.sent == []

    def test_carrier_failure(self, client, auth_headers, carrier, database):
        carrier.fail_numbers.add("+14087977416")

        response = client.post("/subscribe", json={"phone": "4087977416"}, headers=auth_headers)

        assert response.status_code == 500
        assert response.json()["code"] == "CARRIER_ERROR"
        with database.session() as db:
            # Subscriber and ledger row both exist despite the failed send
            assert db.query(Subscriber).filter(Subscriber.active.is_(True)).count() == 1
            assert db.query(Message).count() == 1


class TestUsers:
    """Test GET /users."""

    def test_lists_all_subscribers(self, client, auth_headers, database):
        with database.session() as db:
            upsert_active(db, "+14085550101")
            ensure_subscriber(db, "+14085550102")

        response = client.get("/users", headers=auth_headers)

        assert response.status_code == 200
        users = response.json()["users"]
        assert [(u["phone_number"], u["active"]) for u in users] == [
            ("+14085550101", True),
            ("+14085550102", False),
        ]
        assert set(users[0]) == {"id", "phone_number", "active", "created_at", "updated_at"}


class TestSend:
    """Test POST /send."""

    @pytest.fixture
    def active_subscribers(self, database):
        phones = ["+14085550101", "+14085550102", "+14085550103"]
        with database.session() as db:
            for phone in phones:
                upsert_active(db, phone)
            ensure_subscriber(db, "+14085550104")
        return phones

    def test_production_send(self, client, auth_headers, carrier, database, active_subscribers):
        response = client.post(
            "/send",
            json={"message": "Stream starts now"},
            headers={**auth_headers, "x-production": "true"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "message": "Message sent to 3 users",
            "count": 3,
            "production": True,
        }
        assert sorted(carrier.recipients()) == active_subscribers
        with database.session() as db:
            receivers = sorted(m.receiver.phone_number for m in db.query(Message).all())
            assert receivers == active_subscribers

    def test_test_mode_send(self, client, auth_headers, carrier, active_subscribers):
        response = client.post("/send", json={"message": "Stream starts now"}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["production"] is False
        assert response.json()["count"] == 1
        assert carrier.sent == [(SYSTEM_NUMBER, TEST_NUMBER, TEST_MODE_PREFIX + "Stream starts now")]

    def test_production_header_must_be_true(self, client, auth_headers, carrier, active_subscribers):
        response = client.post(
            "/send",
            json={"message": "hi"},
            headers={**auth_headers, "x-production": "yes"},
        )

        assert response.json()["production"] is False
        assert carrier.recipients() == [TEST_NUMBER]

    def test_missing_message(self, client, auth_headers, carrier):
        response = client.post("/send", json={}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["message"] == "Message body is required"
        assert carrier.sent == []

    def test_malformed_json_body(self, client, auth_headers, carrier):
        response = client.post(
            "/send",
            content=b"not json",
            headers={**auth_headers, "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["status"] == "error"
        assert response.json()["code"] == "INVALID_REQUEST"
        assert carrier.sent == []

    def test_partial_failure_reports_progress(self, client, auth_headers, carrier, active_subscribers):
        carrier.fail_numbers.add(active_subscribers[2])

        response = client.post(
            "/send",
            json={"message": "hi"},
            headers={**auth_headers, "x-production": "true"},
        )

        assert response.status_code == 500
        data = response.json()
        assert data["code"] == "BROADCAST_ABORTED"
        assert data["details"] == {"sent": 2}


class TestMessages:
    """Test GET /messages and GET /messages/{phone}."""

    def test_empty_ledger(self, client, auth_headers):
        response = client.get("/messages", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "messages": []}

    def test_ledger_newest_first_with_summaries(self, client, auth_headers):
        client.post("/subscribe", json={"phone": "4085550101"}, headers=auth_headers)
        client.post("/inbound", data={"Body": "hello", "From": "+14085550101", "To": SYSTEM_NUMBER})

        response = client.get("/messages", headers=auth_headers)

        messages = response.json()["messages"]
        assert [m["content"] for m in messages][0] == "hello"
        assert messages[0]["sender"]["phone_number"] == "+14085550101"
        assert messages[0]["receiver"]["phone_number"] == SYSTEM_NUMBER
        assert set(messages[0]["sender"]) == {"id", "phone_number", "active"}

    def test_ledger_limit(self, client, auth_headers):
        client.post("/subscribe", json={"phone": "4085550101"}, headers=auth_headers)
        client.post("/subscribe", json={"phone": "4085550102"}, headers=auth_headers)

        response = client.get("/messages", params={"limit": 1}, headers=auth_headers)

        assert len(response.json()["messages"]) == 1
        assert response.json()["messages"][0]["receiver"]["phone_number"] == "+14085550102"

    def test_invalid_limit(self, client, auth_headers):
        response = client.get("/messages", params={"limit": 0}, headers=auth_headers)

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_REQUEST"

    def test_conversation(self, client, auth_headers):
        client.post("/subscribe", json={"phone": "4085550101"}, headers=auth_headers)
        client.post("/subscribe", json={"phone": "4085550102"}, headers=auth_headers)
        client.post("/inbound", data={"Body": "thanks", "From": "+14085550101", "To": SYSTEM_NUMBER})

        response = client.get("/messages/+14085550101", headers=auth_headers)

        assert response.status_code == 200
        messages = response.json()["messages"]
        assert len(messages) == 2
        assert messages[0]["content"] == "thanks"
        phones = {m["sender"]["phone_number"] for m in messages} | {m["receiver"]["phone_number"] for m in messages}
        assert phones == {"+14085550101", SYSTEM_NUMBER}

    def test_conversation_unknown_phone(self, client, auth_headers):
        client.post("/subscribe", json={"phone": "4085550101"}, headers=auth_headers)

        response = client.get("/messages/4085550199", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["message"] == "User not found"

    def test_conversation_invalid_phone(self, client, auth_headers):
        response = client.get("/messages/123", headers=auth_headers)
        assert response.status_code == 400


class TestOperationalEndpoints:
    """Test health, metrics and request id."""

    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "ok", "reason": None}

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_metrics(self, client, auth_headers):
        client.get("/users", headers=auth_headers)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_request_id_header(self, client):
        response = client.get("/health/live")
        assert "x-request-id" in response.headers
