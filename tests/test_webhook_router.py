import time

from deskrelay.models import Conversation, Customer


def _envelope(*messages, contacts=None):
    return {
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{"value": {"contacts": contacts or [], "messages": list(messages)}}]}],
    }


def _text(message_id, body, sender="15550001"):
    return {"id": message_id, "from": sender, "timestamp": "1767225600", "type": "text", "text": {"body": body}}


def _wait_for(condition, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return False


class TestWebhook:
    def test_delivery_is_acknowledged_and_answered(self, client, db, channel, provider):
        provider.replies = ["Hello Dana!"]
        payload = _envelope(
            _text("wamid.1", "hi"),
            contacts=[{"wa_id": "15550001", "profile": {"name": "Dana"}}],
        )

        response = client.post("/webhook", json=payload)

        assert response.status_code == 200
        assert response.json() == {"status": "EVENT_RECEIVED", "accepted": 1, "ignored": 0}
        assert _wait_for(lambda: channel.texts() == ["Hello Dana!"])
        db.expire_all()
        customer = db.query(Customer).filter(Customer.phone_number == "15550001").one()
        assert customer.name == "Dana"

    def test_redelivery_is_ignored(self, client, provider, channel):
        payload = _envelope(_text("wamid.1", "hi"))

        first = client.post("/webhook", json=payload)
        second = client.post("/webhook", json=payload)

        assert first.json()["accepted"] == 1
        assert second.json() == {"status": "EVENT_RECEIVED", "accepted": 0, "ignored": 1}
        assert _wait_for(lambda: len(channel.texts()) == 1)
        assert len(provider.appended) == 1

    def test_burst_is_answered_once(self, client, provider, channel):
        response = client.post(
            "/webhook",
            json=_envelope(_text("wamid.1", "hi"), _text("wamid.2", "I need help"), _text("wamid.3", "with my order")),
        )

        assert response.json()["accepted"] == 3
        assert _wait_for(lambda: len(channel.texts()) == 1)
        assert provider.appended[0][1] == "hi\n\nI need help\n\nwith my order"

    def test_status_callbacks_are_acknowledged(self, client):
        payload = {"entry": [{"changes": [{"value": {"statuses": [{"id": "wamid.1", "status": "delivered"}]}}]}]}

        response = client.post("/webhook", json=payload)

        assert response.json() == {"status": "EVENT_RECEIVED", "accepted": 0, "ignored": 0}

    def test_body_must_be_json(self, client):
        response = client.post("/webhook", content=b"not json", headers={"Content-Type": "application/json"})

        assert response.status_code == 400

    def test_stats(self, client):
        client.post("/webhook", json=_envelope(_text("wamid.1", "hi")))

        body = client.get("/webhook/stats").json()

        assert body["dedup"]["backend"] == "memory"
        assert body["dedup"]["receipts"] == 1
        assert "active_batches" in body["batch_queue"]


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_db_check(self, client, make_agent, make_conversation):
        make_agent()
        make_conversation()

        body = client.get("/db-check").json()

        assert body["agents"] == 1
        assert body["conversations"] == 1
        assert body["customers"] == 1


class TestConfirmationButtons:
    def test_rejection_is_acknowledged_before_reassignment(
        self, client, db, provider, make_agent, make_customer, make_conversation
    ):
        agent = make_agent()
        customer = make_customer(phone="15550001")
        conversation = make_conversation(customer=customer, status="resolved")
        provider.json_delay = 2.0
        button = {
            "id": "wamid.btn",
            "from": "15550001",
            "timestamp": "1767225600",
            "type": "interactive",
            "interactive": {
                "type": "button_reply",
                "button_reply": {"id": f"not_resolved_{conversation.id}", "title": "No"},
            },
        }

        started = time.monotonic()
        response = client.post("/webhook", json=_envelope(button))
        elapsed = time.monotonic() - started

        assert response.json()["accepted"] == 1
        assert elapsed < 1.0

        def reassigned():
            db.expire_all()
            stored = db.get(Conversation, conversation.id)
            return stored.status == "assigned" and stored.assigned_agent_id == agent.id

        assert _wait_for(reassigned)
        assert _wait_for(lambda: provider.json_calls)
