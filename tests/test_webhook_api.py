"""Tests for the signed webhook endpoint."""
from __future__ import annotations

import json
import time

import pytest

from app.config import get_settings
from app.models import IntentStatus
from app.providers import signing
from app.services import intent_store


@pytest.mark.anyio
async def test_signed_webhook_applies_once(client, db_session, fake_provider, make_intent):
    intent = make_intent()
    body, headers = fake_provider.signed_request(
        fake_provider.build_event(intent.provider_ref, IntentStatus.SUCCEEDED, event_id="evt1")
    )

    first = await client.post("/webhooks/fake", content=body, headers=headers)
    second = await client.post("/webhooks/fake", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json()["status"] == "applied"
    assert first.json()["applied_transition"] == "PENDING->SUCCEEDED"
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"
    assert intent_store.get_intent(db_session, intent.id, fresh=True).status == IntentStatus.SUCCEEDED


@pytest.mark.anyio
async def test_bad_signature_is_401(client, fake_provider, make_intent):
    intent = make_intent()
    body, headers = fake_provider.signed_request(fake_provider.build_event(intent.provider_ref, IntentStatus.SUCCEEDED))
    headers[signing.SIGNATURE_HEADER] = "0" * 64

    resp = await client.post("/webhooks/fake", content=body, headers=headers)

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"


@pytest.mark.anyio
async def test_missing_signature_is_401(client):
    resp = await client.post("/webhooks/fake", content=b"{}")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "WEBHOOK_SIGNATURE_MISSING"


@pytest.mark.anyio
async def test_old_timestamp_is_rejected(client):
    body = json.dumps({"id": "evt_old", "type": "SUCCEEDED", "provider_ref": "x"}).encode()
    old = str(int(time.time()) - 3600)
    headers = signing.sign_payload("test-psp-secret", body, timestamp=old)

    resp = await client.post("/webhooks/fake", content=body, headers=headers)

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "WEBHOOK_TIMESTAMP_OUT_OF_RANGE"


@pytest.mark.anyio
async def test_rotation_secret_is_accepted(client, fake_provider, make_intent, monkeypatch):
    monkeypatch.setattr(get_settings(), "psp_webhook_secret_next", "rotated-secret")
    intent = make_intent()
    body = json.dumps(fake_provider.build_event(intent.provider_ref, IntentStatus.PROCESSING)).encode()
    headers = signing.sign_payload("rotated-secret", body)

    resp = await client.post("/webhooks/fake", content=body, headers=headers)

    assert resp.status_code == 200
    assert resp.json()["status"] == "applied"


@pytest.mark.anyio
async def test_orphan_event_is_accepted_for_retry(client, fake_provider):
    body, headers = fake_provider.signed_request(
        {"id": "evt_orphan", "type": "SUCCEEDED", "provider_ref": "fake_pi_unknown"}
    )

    resp = await client.post("/webhooks/fake", content=body, headers=headers)

    assert resp.status_code == 202
    assert resp.json()["status"] == "orphaned"


@pytest.mark.anyio
async def test_event_without_id_is_400(client, fake_provider):
    body, headers = fake_provider.signed_request({"type": "SUCCEEDED", "provider_ref": "x"})

    resp = await client.post("/webhooks/fake", content=body, headers=headers)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "MISSING_EVENT_ID"


@pytest.mark.anyio
async def test_unknown_provider_path_is_404(client):
    resp = await client.post("/webhooks/paypal", content=b"{}")
    assert resp.status_code == 404
