"""
Request-scoped wiring: the record store and the lifecycle manager.

Tests replace ``get_lifecycle_manager`` through ``app.dependency_overrides``.
"""

from __future__ import annotations

from functools import lru_cache

from app.core.config import get_settings
from app.core.database import get_shard_registry
from app.core.redis import get_arq_pool, get_redis
from app.services.channel_store import SqlChannelStore
from app.services.debounce import RedisDebounceCache
from app.services.lifecycle import ChannelLifecycleManager
from app.services.notifications import ArqNotificationDispatcher
from app.services.trust import RedirectTrustRegistry, same_host_policy

settings = get_settings()


@lru_cache
def get_trust_registry() -> RedirectTrustRegistry:
    """Redirect trust policies, built once per process."""
    return RedirectTrustRegistry([same_host_policy])


async def get_lifecycle_manager() -> ChannelLifecycleManager:
    store = SqlChannelStore(get_shard_registry())
    dispatcher = ArqNotificationDispatcher(
        await get_arq_pool(),
        high_priority_queue=settings.high_priority_queue,
    )
    cache = RedisDebounceCache(await get_redis())
    return ChannelLifecycleManager(
        store,
        dispatcher,
        cache,
        settings=settings,
        trust=get_trust_registry(),
    )
