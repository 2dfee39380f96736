# ============================================================================
# FILE: test/api_layer/test_webhook_endpoints.py
# POST /webhooks/payments
# ============================================================================

import json

from conftest import VALID_SIGNATURE, make_event
from payment_resilience.exceptions import ErrorCode, transaction_error

URL = "/webhooks/payments"


def post_event(client, event, signature=VALID_SIGNATURE):
    return client.post(URL, content=json.dumps(event), headers={"Stripe-Signature": signature})


class TestWebhookEndpoint:
    """Test notification acknowledgement semantics"""

    async def test_processed_acknowledged(self, client, services):
        """✓ Valid notification → 200 received, lock completed"""
        key = services.lock_manager.scoped_key("order-1", "venue_1")
        await services.lock_manager.acquire(key, {"venue_id": "venue_1"})

        response = await post_event(client, make_event(reference="pi_1", idempotency_key=key, event_id="evt_1"))

        assert response.status_code == 200
        assert response.json() == {"received": True, "outcome": "processed"}
        assert (await services.lock_manager.get(key)).reference == "pi_1"

    async def test_replay_acknowledged(self, client):
        event = make_event(event_id="evt_1")
        await post_event(client, event)

        response = await post_event(client, event)

        assert response.status_code == 200
        assert response.json()["outcome"] == "replayed"

    async def test_ignored_type_acknowledged(self, client):
        response = await post_event(client, make_event("customer.created", event_id="evt_1"))

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    async def test_bad_signature_400(self, client):
        response = await post_event(client, make_event(), signature="t=1,v1=forged")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == ErrorCode.INVALID_SIGNATURE.value

    async def test_missing_signature_400(self, client):
        response = await client.post(URL, content=json.dumps(make_event()))

        assert response.status_code == 400

    async def test_malformed_body_400(self, client):
        response = await client.post(URL, content=b"not json", headers={"Stripe-Signature": VALID_SIGNATURE})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == ErrorCode.MALFORMED_NOTIFICATION.value

    async def test_processing_failure_500_then_exhausted_200(self, client, services, monkeypatch):
        """✓ Failures → 500 so the gateway retries; after 3 failures → 200 acknowledged"""
        async def failing_apply(event):
            raise transaction_error("db down", correlation_id="tx_1_abc")

        monkeypatch.setattr(services.coordinator, "apply", failing_apply)
        event = make_event(event_id="evt_1")

        for _ in range(3):
            response = await post_event(client, event)
            assert response.status_code == 500
            assert response.json()["error"]["code"] == ErrorCode.TRANSACTION_ERROR.value

        response = await post_event(client, event)
        assert response.status_code == 200
        assert response.json()["outcome"] == "retries_exhausted"
