import uuid
from datetime import datetime, timezone

import pytest

from src.messaging.application.normalizer import (
    map_message_type,
    normalize_channel_event,
    normalize_whatsapp_qr_event,
    parse_timestamp,
)
from src.messaging.domain.exceptions import UnsupportedPayloadError
from src.messaging.domain.identity import JidIdentity, LinkedIdentity, PhoneIdentity, PlatformIdentity
from src.messaging.domain.value_objects import MessageType

CHANNEL_ID = str(uuid.uuid4())


def test_cloud_api_event_uses_bare_msisdn():
    inbound = normalize_channel_event({
        "channelId": CHANNEL_ID,
        "channel": "whatsapp",
        "from": "+966500000001",
        "customerName": "Sara",
        "externalMessageId": "wamid.1",
        "content": "Hi",
        "type": "text",
        "timestamp": "1700000000",
    })
    assert inbound.sender == PhoneIdentity("966500000001")
    assert inbound.sender_external_id == "966500000001"
    assert inbound.sender_phone == "966500000001"
    assert inbound.sender_name == "Sara"
    assert inbound.type is MessageType.TEXT
    assert inbound.timestamp == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    assert inbound.metadata == {"channel": "whatsapp"}


def test_platform_channels_keep_user_id_without_phone():
    inbound = normalize_channel_event({
        "channelId": CHANNEL_ID,
        "channel": "discord",
        "from": "81234567890",
        "externalMessageId": "d-1",
        "content": "hello",
    })
    assert inbound.sender == PlatformIdentity(platform="discord", user_id="81234567890")
    assert inbound.sender_phone is None


def test_media_reply_and_interactive_fields_are_carried():
    inbound = normalize_channel_event({
        "channelId": CHANNEL_ID,
        "from": "966500000001",
        "type": "button",
        "mediaId": "m-1",
        "mediaType": "image/jpeg",
        "replyTo": "wamid.0",
        "interactiveReply": {"type": "button_reply", "id": "yes", "title": "Yes"},
    })
    assert inbound.type is MessageType.INTERACTIVE
    assert inbound.media == {"id": "m-1", "type": "image/jpeg"}
    assert inbound.interactive == {"type": "button_reply", "id": "yes", "title": "Yes"}
    assert inbound.metadata["reply_to"] == "wamid.0"


def test_qr_event_with_linked_id_ignores_phone_hint():
    inbound = normalize_whatsapp_qr_event({
        "channelId": CHANNEL_ID,
        "from": "671700000000@lid",
        "fromPhone": "671700000000",
        "pushName": "Omar",
        "messageId": "3EB0AA",
        "text": "salam",
    })
    assert isinstance(inbound.sender, LinkedIdentity)
    assert inbound.sender_phone is None
    assert inbound.type is MessageType.TEXT
    assert inbound.metadata == {"channel": "whatsapp_unofficial", "jid": "671700000000@lid"}


def test_qr_event_with_phone_jid():
    inbound = normalize_whatsapp_qr_event({
        "channelId": CHANNEL_ID,
        "from": "966500000001@s.whatsapp.net",
        "messageId": "abc123",
        "text": "Hi",
    })
    assert inbound.sender == JidIdentity(jid="966500000001@s.whatsapp.net", number="966500000001")


@pytest.mark.parametrize("payload", [
    {"from": "966500000001"},
    {"channelId": CHANNEL_ID},
    {"channelId": "not-a-uuid", "from": "966500000001"},
])
def test_invalid_payloads_are_rejected(payload):
    with pytest.raises(UnsupportedPayloadError):
        normalize_channel_event(payload)


def test_timestamps_and_types():
    assert parse_timestamp(1700000000000) == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    assert parse_timestamp("2024-01-01T10:00:00Z") == datetime(2024, 1, 1, 10, tzinfo=timezone.utc)
    with pytest.raises(UnsupportedPayloadError):
        parse_timestamp("yesterday")
    assert map_message_type("VIDEO") is MessageType.VIDEO
    assert map_message_type("reaction") is MessageType.TEXT
    assert map_message_type(None) is MessageType.TEXT


def test_fractional_and_out_of_range_epochs():
    assert parse_timestamp("1700000000.5") == datetime.fromtimestamp(1700000000.5, tz=timezone.utc)
    assert parse_timestamp(" 1700000000 ") == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    assert parse_timestamp("1700000000000.0") == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    for bad in ("1e400", "99999999999999999999", 1e300, "nan"):
        with pytest.raises(UnsupportedPayloadError):
            parse_timestamp(bad)
