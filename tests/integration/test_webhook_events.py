import uuid

import pytest

from src.messaging.application.webhook_events import WebhookEventService
from src.messaging.domain.exceptions import InvalidWebhookEventStateError, WebhookEventNotFoundError
from src.messaging.domain.value_objects import WebhookEventStatus


@pytest.fixture
def service(session_factory):
    return WebhookEventService(session_factory)


async def test_idempotency_key_records_once(service):
    first, created = await service.record("shopify", "orders/create", {"id": 1}, idempotency_key="order-1")
    again, created_again = await service.record("shopify", "orders/create", {"id": 1}, idempotency_key="order-1")
    assert created is True and created_again is False
    assert again.id == first.id

    other, created_other = await service.record("shopify", "orders/create", {"id": 2})
    assert created_other is True and other.id != first.id


async def test_lifecycle_to_processed(service):
    event, _ = await service.record("salla", "customer.created", {"id": 9}, tenant_id=uuid.uuid4())
    assert event.status == WebhookEventStatus.PENDING

    processing = await service.mark_processing(event.id)
    assert processing.status == WebhookEventStatus.PROCESSING and processing.attempts == 1

    done = await service.mark_processed(event.id, {"customer": "linked"})
    assert done.status == WebhookEventStatus.PROCESSED
    assert done.result == {"customer": "linked"}
    assert done.processed_at is not None

    with pytest.raises(InvalidWebhookEventStateError):
        await service.mark_processing(event.id)


async def test_retry_pending_can_restart(service):
    event, _ = await service.record("salla", "order.updated", {})
    await service.mark_processing(event.id)
    retrying = await service.mark_failed(event.id, "upstream timeout", retry=True)
    assert retrying.status == WebhookEventStatus.RETRY_PENDING
    assert retrying.processed_at is None

    again = await service.mark_processing(event.id)
    assert again.attempts == 2
    failed = await service.mark_failed(event.id, "still down")
    assert failed.status == WebhookEventStatus.FAILED
    assert failed.error_message == "still down"


async def test_skip_and_invalid_transitions(service):
    event, _ = await service.record("salla", "app.installed", {})
    with pytest.raises(InvalidWebhookEventStateError):
        await service.mark_processed(event.id)

    skipped = await service.mark_skipped(event.id, "not relevant")
    assert skipped.status == WebhookEventStatus.SKIPPED
    assert skipped.error_message == "not relevant"

    with pytest.raises(WebhookEventNotFoundError):
        await service.get(uuid.uuid4())
