import uuid

import pytest_asyncio

from src.messaging.domain.value_objects import ChannelType


def _event(channel, message_id="wamid.API1", sender="966500000001", content="Hi, where is my order?"):
    return {
        "channelId": str(channel.id),
        "from": sender,
        "customerName": "Amal",
        "externalMessageId": message_id,
        "content": content,
    }


@pytest_asyncio.fixture
async def whatsapp(make_channel):
    return await make_channel(ChannelType.WHATSAPP_OFFICIAL)


async def _ingest(app_client, channel, **kwargs):
    resp = await app_client.post("/api/channels/events/channel", json=_event(channel, **kwargs))
    assert resp.status_code == 202
    return resp.json()


async def test_root_and_correlation_header(app_client):
    resp = await app_client.get("/", headers={"X-Correlation-ID": "corr-1"})
    assert resp.status_code == 200
    assert resp.json()["docs"] == "/docs"
    assert resp.headers["X-Correlation-ID"] == "corr-1"


async def test_channel_event_ingested_then_duplicate(app_client, whatsapp):
    _, channel = whatsapp
    first = await _ingest(app_client, channel)
    assert first["status"] == "ingested" and first["is_new_conversation"] is True

    again = await _ingest(app_client, channel)
    assert again["status"] == "duplicate"
    assert again["message_id"] == first["message_id"]


async def test_unknown_channel_event_is_dropped(app_client):
    resp = await app_client.post(
        "/api/channels/events/channel",
        json={"channelId": str(uuid.uuid4()), "from": "966500000001", "content": "hi"},
    )
    assert resp.status_code == 202
    assert resp.json() == {
        "status": "dropped",
        "message_id": None,
        "conversation_id": None,
        "is_new_conversation": False,
    }


async def test_conversation_reads_are_tenant_scoped(app_client, whatsapp):
    tenant_id, channel = whatsapp
    accepted = await _ingest(app_client, channel)
    headers = {"X-Tenant-ID": str(tenant_id)}

    listing = await app_client.get("/api/conversations", headers=headers)
    assert listing.status_code == 200
    body = listing.json()
    assert body["meta"] == {"total": 1, "page": 1, "limit": 20, "total_pages": 1}
    assert body["items"][0]["customer_name"] == "Amal"

    conv_id = accepted["conversation_id"]
    detail = await app_client.get(f"/api/conversations/{conv_id}", headers=headers)
    assert detail.json()["message_count"] == 1

    messages = await app_client.get(f"/api/conversations/{conv_id}/messages", headers=headers)
    assert [m["external_id"] for m in messages.json()["items"]] == ["wamid.API1"]

    other = await app_client.get(f"/api/conversations/{conv_id}", headers={"X-Tenant-ID": str(uuid.uuid4())})
    assert other.status_code == 404
    assert other.json()["code"] == "conversation_not_found"

    stats = await app_client.get("/api/conversations/stats", headers=headers)
    assert stats.json()["total"] == 1 and stats.json()["unread"] == 1


async def test_tenant_header_is_required_and_validated(app_client):
    missing = await app_client.get("/api/conversations")
    assert missing.status_code == 422
    assert missing.json()["code"] == "validation_error"

    bad = await app_client.get("/api/conversations", headers={"X-Tenant-ID": "acme"})
    assert bad.status_code == 422
    assert bad.json()["code"] == "invalid_tenant_id"


async def test_reply_workflow_and_attributes(app_client, whatsapp, fake_sender):
    tenant_id, channel = whatsapp
    conv_id = (await _ingest(app_client, channel))["conversation_id"]
    headers = {"X-Tenant-ID": str(tenant_id)}
    fake_sender.outcomes = ["wamid.OUT1"]

    reply = await app_client.post(
        f"/api/conversations/{conv_id}/messages", json={"content": "On its way"}, headers=headers
    )
    assert reply.status_code == 201
    assert reply.json()["status"] == "sent"
    assert reply.json()["external_id"] == "wamid.OUT1"
    assert fake_sender.requests[0].recipient == "966500000001"

    queued = await app_client.post(
        f"/api/conversations/{conv_id}/messages", json={"content": "Later", "queue": True}, headers=headers
    )
    assert queued.status_code == 201 and queued.json()["status"] == "pending"

    agent = str(uuid.uuid4())
    assigned = await app_client.post(f"/api/conversations/{conv_id}/assign", json={"agent_id": agent}, headers=headers)
    assert assigned.json()["status"] == "assigned" and assigned.json()["handler"] == "human"

    resolved = await app_client.post(f"/api/conversations/{conv_id}/status", json={"status": "resolved"}, headers=headers)
    assert resolved.json()["status"] == "resolved"

    refused = await app_client.post(f"/api/conversations/{conv_id}/status", json={"status": "pending"}, headers=headers)
    assert refused.status_code == 409
    assert refused.json()["code"] == "invalid_status_transition"
    assert refused.json()["details"] == {"from": "resolved", "to": "pending"}

    tagged = await app_client.post(f"/api/conversations/{conv_id}/tags", json={"tags": ["vip", "late"]}, headers=headers)
    assert tagged.json()["tags"] == ["vip", "late"]
    untagged = await app_client.delete(f"/api/conversations/{conv_id}/tags", params={"tags": ["late"]}, headers=headers)
    assert untagged.json()["tags"] == ["vip"]

    priority = await app_client.put(f"/api/conversations/{conv_id}/priority", json={"priority": "high"}, headers=headers)
    assert priority.json()["priority"] == "high"

    noted = await app_client.post(f"/api/conversations/{conv_id}/notes", json={"note": "refund issued", "user": "sam"}, headers=headers)
    assert noted.json()["notes"].endswith("- sam] refund issued")

    read = await app_client.post(f"/api/conversations/{conv_id}/read", headers=headers)
    assert read.json()["message_count"] == 0


async def test_adapter_callbacks(app_client, make_channel, fake_sender):
    tenant_id, channel = await make_channel(ChannelType.WHATSAPP_OFFICIAL)
    conv_id = (await _ingest(app_client, channel))["conversation_id"]
    headers = {"X-Tenant-ID": str(tenant_id)}
    fake_sender.outcomes = ["wamid.OUT2"]
    sent = (
        await app_client.post(f"/api/conversations/{conv_id}/messages", json={"content": "Done"}, headers=headers)
    ).json()

    delivered = await app_client.post(
        "/api/messages/status", json={"external_id": "wamid.OUT2", "status": "delivered"}, headers=headers
    )
    assert delivered.json()["applied"] is True
    assert delivered.json()["message"]["status"] == "delivered"

    unknown = await app_client.post(
        "/api/messages/status", json={"external_id": "wamid.NOPE", "status": "read"}, headers=headers
    )
    assert unknown.json() == {"applied": False, "message": None}

    confirmed = await app_client.post(
        f"/api/messages/{sent['id']}/confirm", json={"external_id": "wamid.OUT2"}, headers=headers
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["status"] == "delivered"

    missing = await app_client.post(
        f"/api/messages/{uuid.uuid4()}/confirm", json={"external_id": "x"}, headers=headers
    )
    assert missing.status_code == 404
    assert missing.json()["code"] == "message_not_found"


async def test_webhook_events_are_idempotent(app_client):
    body = {"event_type": "order.created", "payload": {"id": 42}, "idempotency_key": "salla-42"}
    first = await app_client.post("/api/webhooks/salla/events", json=body)
    assert first.status_code == 201
    assert first.json()["created"] is True and first.json()["status"] == "pending"

    again = await app_client.post("/api/webhooks/salla/events", json=body)
    assert again.status_code == 200
    assert again.json()["created"] is False
    assert again.json()["id"] == first.json()["id"]


async def test_failed_jobs_endpoints(app_client, session_factory):
    from src.messaging.infrastructure.job_queue import JobQueue

    async with session_factory() as s:
        async with s.begin():
            job = await JobQueue(s).enqueue("send-message", {"messageId": str(uuid.uuid4())}, max_attempts=1)
            job_id = job.id
    async with session_factory() as s:
        async with s.begin():
            queue = JobQueue(s)
            (claimed,) = await queue.claim(limit=1, visibility_timeout=30)
            await queue.fail(claimed, "provider down", cap_seconds=60)

    failed = await app_client.get("/api/jobs/failed")
    assert [j["id"] for j in failed.json()["items"]] == [str(job_id)]
    assert failed.json()["items"][0]["last_error"] == "provider down"

    retried = await app_client.post(f"/api/jobs/{job_id}/retry")
    assert retried.status_code == 200
    assert retried.json()["status"] == "pending" and retried.json()["attempts"] == 0

    conflict = await app_client.post(f"/api/jobs/{job_id}/retry")
    assert conflict.status_code == 409

    unknown = await app_client.post(f"/api/jobs/{uuid.uuid4()}/retry")
    assert unknown.status_code == 404
    assert unknown.json()["code"] == "job_not_found"


async def test_health_endpoints(app_client, session_factory):
    assert (await app_client.get("/_health/live")).json() == {"ok": True}

    db = await app_client.get("/_health/db")
    assert db.status_code == 200 and db.json()["ok"] is True

    redis = await app_client.get("/_health/redis")
    assert redis.json()["status"] == "disabled"

    from src.messaging.infrastructure.job_queue import JobQueue

    async with session_factory() as s:
        async with s.begin():
            await JobQueue(s).enqueue("process-incoming", {"messageId": str(uuid.uuid4())})
    queue = await app_client.get("/_health/queue")
    assert queue.json()["status"] == "ok"
    assert queue.json()["jobs"]["pending"] == 1 and queue.json()["jobs"]["failed"] == 0
