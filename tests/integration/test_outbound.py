import uuid

import httpx
import pytest
import sqlalchemy as sa

from src.messaging.application.ingestion_service import MessageIngestionService
from src.messaging.application.normalizer import normalize_channel_event
from src.messaging.application.outbound_dispatcher import NO_TEXT_CONTENT_ERROR, OutboundDispatcher
from src.messaging.domain.events import channel_send_event
from src.messaging.domain.exceptions import ConversationNotFoundError, NoRecipientError
from src.messaging.domain.value_objects import ChannelType, MessageDirection, MessageStatus
from src.messaging.infrastructure.channel_senders import WhatsAppCloudSender, default_sender_registry
from src.messaging.infrastructure.models import ChannelORM, ConversationORM, MessageORM


async def _conversation(session_factory, bus, make_channel, channel_type=ChannelType.WHATSAPP_OFFICIAL, sender="966500000001"):
    tenant_id, channel = await make_channel(channel_type)
    result = await MessageIngestionService(session_factory, bus).ingest(
        tenant_id,
        normalize_channel_event({
            "channelId": str(channel.id),
            "channel": "whatsapp" if channel_type.is_whatsapp else channel_type.value,
            "from": sender,
            "externalMessageId": f"in-{channel.id}",
            "content": "Hi",
        }),
    )
    return tenant_id, channel, result.conversation


async def _outbound(session_factory):
    async with session_factory() as s:
        return (
            await s.execute(sa.select(MessageORM).where(MessageORM.direction == MessageDirection.OUTBOUND))
        ).scalars().all()


def _dispatcher(session_factory, senders, sleeps=None):
    async def fake_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return OutboundDispatcher(session_factory, senders, retry_delay_seconds=2.0, sleep=fake_sleep)


async def test_provider_500_twice_yields_one_failed_message(session_factory, bus, make_channel):
    tenant_id, _, conv = await _conversation(session_factory, bus, make_channel)
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, json={"error": {"message": "internal"}})

    senders = default_sender_registry(bus, whatsapp=WhatsAppCloudSender(transport=httpx.MockTransport(handler)))
    sleeps = []
    message = await _dispatcher(session_factory, senders, sleeps).send(tenant_id, conv.id, "Thanks!")

    assert len(calls) == 2
    assert sleeps == [2.0]
    assert message.status == MessageStatus.FAILED
    assert message.external_id is None
    assert "after 2 attempts" in message.error_message
    rows = await _outbound(session_factory)
    assert [r.id for r in rows] == [message.id]


async def test_successful_send_is_persisted_as_sent(session_factory, bus, make_channel):
    tenant_id, channel, conv = await _conversation(session_factory, bus, make_channel)
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"messages": [{"id": "wamid.OUT"}]}))
    senders = default_sender_registry(bus, whatsapp=WhatsAppCloudSender(transport=transport))

    message = await _dispatcher(session_factory, senders).send(tenant_id, conv.id, "Thanks!")

    assert message.status == MessageStatus.SENT
    assert message.external_id == "wamid.OUT"
    assert message.sent_at is not None
    async with session_factory() as s:
        stored_conv = await s.get(ConversationORM, conv.id)
        stored_channel = await s.get(ChannelORM, channel.id)
    assert stored_conv.first_response_at is not None
    assert stored_conv.last_message_at == message.sent_at
    assert stored_channel.messages_sent == 1


async def test_retry_recovers_after_one_failure(session_factory, bus, make_channel, fake_sender, senders):
    tenant_id, _, conv = await _conversation(session_factory, bus, make_channel)
    fake_sender.outcomes = [RuntimeError("timeout"), "wamid.2"]

    message = await _dispatcher(session_factory, senders).send(tenant_id, conv.id, "Thanks!")

    assert message.status == MessageStatus.SENT
    assert message.external_id == "wamid.2"
    assert len(fake_sender.requests) == 2


async def test_missing_provider_id_twice_fails(session_factory, bus, make_channel, fake_sender, senders):
    tenant_id, _, conv = await _conversation(session_factory, bus, make_channel)
    fake_sender.outcomes = [None, None]

    message = await _dispatcher(session_factory, senders).send(tenant_id, conv.id, "Thanks!")

    assert message.status == MessageStatus.FAILED
    assert message.error_message == "WhatsApp returned no messageId after 2 attempts"


async def test_no_text_content_is_never_sent(session_factory, bus, make_channel, fake_sender, senders):
    tenant_id, _, conv = await _conversation(session_factory, bus, make_channel)

    message = await _dispatcher(session_factory, senders).send(tenant_id, conv.id, "   ")

    assert fake_sender.requests == []
    assert message.status == MessageStatus.FAILED
    assert message.error_message == NO_TEXT_CONTENT_ERROR


async def test_unknown_conversation_and_missing_recipient(session_factory, bus, make_channel, senders):
    tenant_id, _, conv = await _conversation(session_factory, bus, make_channel)
    dispatcher = _dispatcher(session_factory, senders)

    with pytest.raises(ConversationNotFoundError):
        await dispatcher.send(tenant_id, uuid.uuid4(), "hello")

    async with session_factory() as s:
        async with s.begin():
            stored = await s.get(ConversationORM, conv.id)
            stored.customer_external_id = ""
            stored.customer_phone = None
    with pytest.raises(NoRecipientError):
        await dispatcher.send(tenant_id, conv.id, "hello")
    assert await _outbound(session_factory) == []


async def test_event_channel_is_dispatched_and_confirmed(session_factory, bus, make_channel):
    tenant_id, channel, conv = await _conversation(
        session_factory, bus, make_channel, ChannelType.DISCORD, sender="81234567890"
    )
    dispatched = []
    bus.subscribe(channel_send_event(ChannelType.DISCORD), lambda event: dispatched.append(event.payload))
    dispatcher = _dispatcher(session_factory, default_sender_registry(bus))

    message = await dispatcher.send(tenant_id, conv.id, "pong")

    assert message.status == MessageStatus.PENDING
    assert message.metadata_.get("dispatched_at")
    assert dispatched[0]["recipient"] == "81234567890"
    assert dispatched[0]["message_id"] == str(message.id)
    assert dispatched[0]["type"] == "text"

    confirmed = await dispatcher.confirm_sent(tenant_id, message.id, "discord-msg-1")
    assert confirmed.status == MessageStatus.SENT
    assert confirmed.external_id == "discord-msg-1"
    async with session_factory() as s:
        assert (await s.get(ChannelORM, channel.id)).messages_sent == 1


async def test_event_channel_without_adapter_fails(session_factory, bus, make_channel):
    tenant_id, _, conv = await _conversation(
        session_factory, bus, make_channel, ChannelType.INSTAGRAM, sender="ig-user-1"
    )
    message = await _dispatcher(session_factory, default_sender_registry(bus)).send(tenant_id, conv.id, "hi")

    assert message.status == MessageStatus.FAILED
    assert "No adapter subscribed" in message.error_message


async def test_status_updates_only_move_forward(session_factory, bus, make_channel, fake_sender, senders):
    tenant_id, _, conv = await _conversation(session_factory, bus, make_channel)
    fake_sender.outcomes = ["wamid.S"]
    dispatcher = _dispatcher(session_factory, senders)
    await dispatcher.send(tenant_id, conv.id, "hello")

    read = await dispatcher.apply_status_update(tenant_id, "wamid.S", MessageStatus.READ)
    assert read.status == MessageStatus.READ
    assert read.read_at is not None and read.delivered_at is not None

    stale = await dispatcher.apply_status_update(tenant_id, "wamid.S", MessageStatus.DELIVERED)
    assert stale.status == MessageStatus.READ

    not_failed = await dispatcher.apply_status_update(tenant_id, "wamid.S", MessageStatus.FAILED, error="x")
    assert not_failed.status == MessageStatus.READ

    assert await dispatcher.apply_status_update(tenant_id, "wamid.unknown", MessageStatus.READ) is None


async def test_enqueue_writes_pending_message_and_job(session_factory, bus, make_channel, senders):
    from src.messaging.infrastructure.models import QueueJobORM
    from src.messaging.infrastructure.job_queue import SEND_MESSAGE

    tenant_id, channel, conv = await _conversation(session_factory, bus, make_channel)
    message = await _dispatcher(session_factory, senders).enqueue(tenant_id, conv.id, "later")

    assert message.status == MessageStatus.PENDING
    async with session_factory() as s:
        job = (await s.execute(sa.select(QueueJobORM).where(QueueJobORM.name == SEND_MESSAGE))).scalars().one()
    assert job.payload == {
        "messageId": str(message.id),
        "conversationId": str(conv.id),
        "channelId": str(channel.id),
    }
