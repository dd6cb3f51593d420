from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from src.shared.config import get_settings
from src.shared.database import create_engine, dispose_engine, init_models, make_session_factory
from src.shared.events import EventBus
from src.messaging.domain.value_objects import ChannelStatus, ChannelType
from src.messaging.infrastructure.channel_senders import SendReceipt, SendRequest, SenderRegistry
from src.messaging.infrastructure.models import ChannelORM, StoreORM


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    monkeypatch.setenv("OUTBOUND_RETRY_DELAY_SECONDS", "0")
    monkeypatch.delenv("REDIS_URL", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def engine():
    eng = create_engine()
    await init_models(eng)
    yield eng
    await eng.dispose()
    await dispose_engine()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def make_channel(session_factory):
    async def _make(
        channel_type: ChannelType = ChannelType.WHATSAPP_OFFICIAL,
        *,
        tenant_id: Optional[uuid.UUID] = None,
        credentials: Optional[Dict[str, Any]] = None,
    ):
        tenant_id = tenant_id or uuid.uuid4()
        async with session_factory() as s:
            async with s.begin():
                store = StoreORM(tenant_id=tenant_id, name="Main store")
                s.add(store)
                await s.flush()
                channel = ChannelORM(
                    store_id=store.id,
                    type=channel_type,
                    status=ChannelStatus.CONNECTED,
                    name=channel_type.value,
                    credentials=credentials if credentials is not None else {
                        "phone_number_id": "PNID1",
                        "access_token": "tkn",
                    },
                    settings={},
                )
                s.add(channel)
        return tenant_id, channel

    return _make


class FakeSender:
    """Scripted sender: each call pops the next outcome (an id, None, or an exception)."""

    def __init__(self, outcomes: Optional[List[Any]] = None) -> None:
        self.outcomes = list(outcomes or [])
        self.requests: List[SendRequest] = []

    async def send(self, request: SendRequest) -> SendReceipt:
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if self.outcomes else "wamid.DEFAULT"
        if isinstance(outcome, Exception):
            raise outcome
        return SendReceipt(provider_message_id=outcome)


@pytest.fixture
def fake_sender():
    return FakeSender()


@pytest.fixture
def senders(fake_sender):
    return SenderRegistry({
        ChannelType.WHATSAPP_OFFICIAL: fake_sender,
        ChannelType.WHATSAPP_UNOFFICIAL: fake_sender,
    })


@pytest_asyncio.fixture
async def app_client(session_factory, bus, senders):
    from src.main import create_app
    from src.messaging.api.dependencies import build_services
    from src.messaging.application.outbound_dispatcher import OutboundDispatcher

    services = build_services(
        session_factory,
        bus,
        senders=senders,
        dispatcher=OutboundDispatcher(session_factory, senders, retry_delay_seconds=0),
    )
    app = create_app(services=services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
