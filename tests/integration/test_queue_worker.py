import json
from datetime import timedelta

import pytest
import sqlalchemy as sa

from src.shared.config import Settings, get_settings
from src.shared.database import utcnow
from src.shared.exceptions import ConflictError
from src.messaging.application.ingestion_service import MessageIngestionService
from src.messaging.application.job_handlers import build_handlers
from src.messaging.application.normalizer import normalize_channel_event
from src.messaging.application.outbound_dispatcher import OutboundDispatcher
from src.messaging.domain.events import CONVERSATION_CREATED, MESSAGE_PROCESSED, channel_send_event
from src.messaging.domain.value_objects import ChannelType, JobStatus, MessageStatus
from src.messaging.infrastructure.channel_senders import default_sender_registry
from src.messaging.infrastructure.job_queue import JobQueue
from src.messaging.infrastructure.models import MessageORM, QueueJobORM
from src.worker.queue_worker import QueueWorker, dlq_key


class FakeRedis:
    def __init__(self):
        self.lists = {}

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])


class AlwaysFails:
    def __init__(self):
        self.exhausted = []

    async def __call__(self, payload):
        raise RuntimeError("provider down")

    async def on_exhausted(self, payload, error):
        self.exhausted.append((payload, error))


def _settings(**overrides):
    values = dict(environment="test", queue_batch_size=10, queue_backoff_max_seconds=60.0)
    values.update(overrides)
    return Settings(**values)


async def _enqueue(session_factory, name="flaky", payload=None, max_attempts=3):
    async with session_factory() as s:
        async with s.begin():
            job = await JobQueue(s).enqueue(name, payload or {"k": "v"}, max_attempts=max_attempts, backoff_base_seconds=1.0)
    return job.id


async def _job(session_factory, job_id):
    async with session_factory() as s:
        return await s.get(QueueJobORM, job_id)


async def test_failed_job_backs_off_then_dead_letters(session_factory):
    job_id = await _enqueue(session_factory)
    handler = AlwaysFails()
    redis = FakeRedis()
    worker = QueueWorker(session_factory, {"flaky": handler}, redis=redis, settings=_settings())
    t0 = utcnow() + timedelta(seconds=1)

    first = await worker.run_once(now=t0)
    assert [o.status for o in first] == ["retrying"]
    job = await _job(session_factory, job_id)
    assert job.status == JobStatus.PENDING and job.attempts == 1
    assert job.available_at == t0 + timedelta(seconds=1)
    assert job.last_error == "provider down"

    assert await worker.run_once(now=t0) == []

    second = await worker.run_once(now=t0 + timedelta(seconds=1))
    assert [o.status for o in second] == ["retrying"]
    assert (await _job(session_factory, job_id)).available_at == t0 + timedelta(seconds=3)

    third = await worker.run_once(now=t0 + timedelta(seconds=10))
    assert [o.status for o in third] == ["failed"]
    job = await _job(session_factory, job_id)
    assert job.status == JobStatus.FAILED and job.attempts == 3 and job.failed_at is not None

    assert handler.exhausted == [({"k": "v"}, "provider down")]
    record = json.loads(redis.lists[dlq_key("messaging")][0])
    assert record["job_id"] == str(job_id)
    assert record["attempts"] == 3
    assert await worker.run_once(now=t0 + timedelta(hours=1)) == []


async def test_unknown_job_name_fails_permanently(session_factory):
    job_id = await _enqueue(session_factory, name="mystery")
    worker = QueueWorker(session_factory, {}, settings=_settings())

    outcomes = await worker.run_once(now=utcnow() + timedelta(seconds=1))

    assert [o.status for o in outcomes] == ["failed"]
    assert (await _job(session_factory, job_id)).status == JobStatus.FAILED


async def test_expired_lease_is_reclaimed(session_factory):
    job_id = await _enqueue(session_factory, name="ok")
    t0 = utcnow() + timedelta(seconds=1)
    async with session_factory() as s:
        async with s.begin():
            claimed = await JobQueue(s).claim(limit=5, visibility_timeout=30, now=t0)
    assert [j.id for j in claimed] == [job_id]

    async def ok(payload):
        return {"done": True}

    worker = QueueWorker(session_factory, {"ok": ok}, settings=_settings())
    assert await worker.run_once(now=t0 + timedelta(seconds=10)) == []

    outcomes = await worker.run_once(now=t0 + timedelta(seconds=31))
    assert [o.status for o in outcomes] == ["completed"]
    job = await _job(session_factory, job_id)
    assert job.status == JobStatus.COMPLETED and job.attempts == 2 and job.result == {"done": True}

    # A lease that runs out on the final attempt fails the job instead of leasing it again.
    last_id = await _enqueue(session_factory, name="flaky", payload={"n": 1}, max_attempts=2)
    t1 = t0 + timedelta(seconds=100)
    async with session_factory() as s:
        async with s.begin():
            assert [j.id for j in await JobQueue(s).claim(limit=5, visibility_timeout=30, now=t1)] == [last_id]
        async with s.begin():
            again = await JobQueue(s).claim(limit=5, visibility_timeout=30, now=t1 + timedelta(seconds=31))
            assert [(j.id, j.attempts) for j in again] == [(last_id, 2)]

    handler = AlwaysFails()
    redis = FakeRedis()
    worker = QueueWorker(session_factory, {"flaky": handler}, redis=redis, settings=_settings())
    assert await worker.run_once(now=t1 + timedelta(seconds=40)) == []

    expired = await worker.run_once(now=t1 + timedelta(seconds=62))
    assert [(o.job_id, o.status, o.error) for o in expired] == [
        (str(last_id), "failed", "lease expired after final attempt")
    ]
    job = await _job(session_factory, last_id)
    assert job.status == JobStatus.FAILED and job.attempts == 2
    assert job.last_error == "lease expired after final attempt"
    assert job.locked_until is None and job.failed_at is not None
    assert handler.exhausted == [({"n": 1}, "lease expired after final attempt")]
    [record] = [json.loads(r) for r in redis.lists[dlq_key("messaging")]]
    assert record["job_id"] == str(last_id) and record["attempts"] == 2

    assert await worker.run_once(now=t1 + timedelta(hours=1)) == []
    assert (await _job(session_factory, last_id)).attempts == 2


async def test_failed_job_can_be_retried_by_operator(session_factory):
    job_id = await _enqueue(session_factory, max_attempts=1)
    worker = QueueWorker(session_factory, {"flaky": AlwaysFails()}, settings=_settings())
    await worker.run_once(now=utcnow() + timedelta(seconds=1))

    async with session_factory() as s:
        async with s.begin():
            failed = await JobQueue(s).list_failed()
            assert [j.id for j in failed] == [job_id]
            job = await JobQueue(s).retry_failed(job_id)
    assert job.status == JobStatus.PENDING and job.attempts == 0

    with pytest.raises(ConflictError):
        async with session_factory() as s:
            async with s.begin():
                await JobQueue(s).retry_failed(job_id)


async def test_process_incoming_emits_follow_up_events(session_factory, bus, make_channel, senders):
    tenant_id, channel = await make_channel(ChannelType.WHATSAPP_OFFICIAL)
    ingest = await MessageIngestionService(session_factory, bus).ingest(
        tenant_id,
        normalize_channel_event({
            "channelId": str(channel.id), "from": "966500000001", "externalMessageId": "m-1", "content": "Hi",
        }),
    )
    created, processed = [], []
    bus.subscribe(CONVERSATION_CREATED, lambda e: created.append(e.payload))
    bus.subscribe(MESSAGE_PROCESSED, lambda e: processed.append(e.payload))

    worker = QueueWorker(session_factory, build_handlers(session_factory, bus, senders), settings=_settings())
    outcomes = await worker.run_once(now=utcnow() + timedelta(seconds=1))

    assert [o.status for o in outcomes] == ["completed"]
    assert processed[0]["message"].id == ingest.message.id
    assert created[0]["conversation"].id == ingest.conversation.id
    assert created[0]["first_message"].id == ingest.message.id
    assert created[0]["tenant_id"] == str(tenant_id)


async def test_send_message_job_marks_sent_with_provider_id(session_factory, bus, make_channel, fake_sender, senders):
    tenant_id, channel = await make_channel(ChannelType.WHATSAPP_OFFICIAL)
    ingest = await MessageIngestionService(session_factory, bus).ingest(
        tenant_id,
        normalize_channel_event({"channelId": str(channel.id), "from": "966500000001", "externalMessageId": "m-1"}),
    )
    message = await OutboundDispatcher(session_factory, senders, retry_delay_seconds=0).enqueue(
        tenant_id, ingest.conversation.id, "queued hello"
    )
    fake_sender.outcomes = ["wamid.Q"]

    worker = QueueWorker(session_factory, build_handlers(session_factory, bus, senders), settings=_settings())
    await worker.run_once(now=utcnow() + timedelta(seconds=1))

    async with session_factory() as s:
        stored = await s.get(MessageORM, message.id)
    assert stored.status == MessageStatus.SENT
    assert stored.external_id == "wamid.Q"
    assert fake_sender.requests[0].recipient == "966500000001"


async def test_send_message_job_exhaustion_marks_message_failed(
    session_factory, bus, make_channel, fake_sender, senders, monkeypatch
):
    monkeypatch.setenv("QUEUE_MAX_ATTEMPTS", "1")
    get_settings.cache_clear()
    tenant_id, channel = await make_channel(ChannelType.WHATSAPP_OFFICIAL)
    ingest = await MessageIngestionService(session_factory, bus).ingest(
        tenant_id,
        normalize_channel_event({"channelId": str(channel.id), "from": "966500000001", "externalMessageId": "m-1"}),
    )
    message = await OutboundDispatcher(session_factory, senders, retry_delay_seconds=0).enqueue(
        tenant_id, ingest.conversation.id, "queued hello"
    )
    fake_sender.outcomes = [RuntimeError("boom")]

    worker = QueueWorker(session_factory, build_handlers(session_factory, bus, senders), settings=_settings())
    await worker.run_once(now=utcnow() + timedelta(seconds=1))

    async with session_factory() as s:
        stored = await s.get(MessageORM, message.id)
    assert stored.status == MessageStatus.FAILED
    assert stored.external_id is None
    assert "boom" in stored.error_message


async def test_send_message_job_for_event_channel_dispatches_once(session_factory, bus, make_channel):
    tenant_id, channel = await make_channel(ChannelType.DISCORD)
    ingest = await MessageIngestionService(session_factory, bus).ingest(
        tenant_id,
        normalize_channel_event({
            "channelId": str(channel.id), "channel": "discord", "from": "8123", "externalMessageId": "d-1",
        }),
    )
    senders = default_sender_registry(bus)
    dispatched = []
    bus.subscribe(channel_send_event(ChannelType.DISCORD), lambda e: dispatched.append(e.payload))
    message = await OutboundDispatcher(session_factory, senders).enqueue(tenant_id, ingest.conversation.id, "hey")

    handlers = build_handlers(session_factory, bus, senders)
    worker = QueueWorker(session_factory, handlers, settings=_settings())
    await worker.run_once(now=utcnow() + timedelta(seconds=1))

    async with session_factory() as s:
        stored = await s.get(MessageORM, message.id)
    assert stored.status == MessageStatus.PENDING
    assert stored.metadata_["dispatched_at"]
    assert len(dispatched) == 1

    again = await handlers["send-message"]({"messageId": str(message.id), "channelId": str(channel.id)})
    assert again["status"] == "skipped"
    assert len(dispatched) == 1
