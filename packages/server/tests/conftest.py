"""
Shared fixtures: two in-memory SQLite shards, a recording dispatcher, an
in-process debounce cache and a controllable clock.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.core.errors import UpstreamDeliveryFailure
from app.core.sharding import Shard, ShardRegistry
from app.models import Account, Login, User, UserAccount
from app.services.channel_store import SqlChannelStore
from app.services.lifecycle import ChannelLifecycleManager
from app.services.trust import RedirectTrustRegistry, same_host_policy
from commchannels_shared.schemas.communication_channels import NotificationKind


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass
class SentNotification:
    kind: NotificationKind
    channel_id: uuid.UUID
    payload: dict[str, Any]
    dedupe_key: Optional[str]


class RecordingDispatcher:
    def __init__(self) -> None:
        self.sent: list[SentNotification] = []
        self.gateway: list[tuple[str, str]] = []
        self.fail = False

    async def send(self, kind, channel, payload, *, dedupe_key=None) -> None:
        if self.fail:
            raise UpstreamDeliveryFailure("notification queue unavailable", kind=kind.value)
        self.sent.append(SentNotification(kind, channel.id, dict(payload), dedupe_key))

    async def send_via_sms_gateway(self, channel, message) -> None:
        self.gateway.append((channel.path, message))

    def kinds(self) -> list[NotificationKind]:
        return [n.kind for n in self.sent]


class MemoryCache:
    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self.flags: dict[str, datetime] = {}
        self.cleared: list[str] = []

    async def read_flag(self, key: str) -> bool:
        expires = self.flags.get(key)
        return expires is not None and expires > self._clock()

    async def write_flag(self, key: str, ttl: timedelta) -> None:
        self.flags[key] = self._clock() + ttl

    async def clear(self, key: str) -> None:
        self.flags.pop(key, None)
        self.cleared.append(key)


def _sqlite_shard(shard_id: str) -> Shard:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    return Shard(shard_id, engine)


@pytest.fixture
async def registry():
    registry = ShardRegistry([_sqlite_shard("1"), _sqlite_shard("2")])
    await registry.create_all()
    yield registry
    await registry.dispose()


@pytest.fixture
def store(registry) -> SqlChannelStore:
    return SqlChannelStore(registry)


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def cache(clock) -> MemoryCache:
    return MemoryCache(clock)


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def manager(store, dispatcher, cache, settings, clock) -> ChannelLifecycleManager:
    return ChannelLifecycleManager(
        store,
        dispatcher,
        cache,
        settings=settings,
        trust=RedirectTrustRegistry([same_host_policy]),
        clock=clock,
    )


@pytest.fixture
def make_user(registry, store):
    """Create a user (with an account link and optionally an active login) on a chosen shard."""

    async def _make(
        shard_index: int = 0,
        *,
        name: str = "Test User",
        workflow_state: str = "registered",
        login: bool = True,
        account: Optional[Account] = None,
    ) -> User:
        shard = registry.shards[shard_index]
        user_id = uuid.uuid4()
        while registry.shard_for_user(user_id) is not shard:
            user_id = uuid.uuid4()

        user = User(id=user_id, name=name, workflow_state=workflow_state)
        account = account or Account(name=f"{name} account")
        records = [account, UserAccount(user_id=user_id, account_id=account.id)]
        if login:
            records.append(Login(user_id=user_id, account_id=account.id, unique_id=name.lower()))
        await store.add_user(user, *records)
        return user

    return _make
