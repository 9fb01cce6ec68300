"""
Database connection and shard registry management.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import create_async_engine

from app.core.config import get_settings
from app.core.sharding import Shard, ShardRegistry

settings = get_settings()

_registry: Optional[ShardRegistry] = None


def build_shard_registry() -> ShardRegistry:
    """Create one async engine per configured shard."""
    urls = {settings.default_shard_id: settings.database_url, **settings.shard_urls}
    shards = [
        Shard(
            shard_id,
            create_async_engine(url, echo=settings.debug, future=True),
        )
        for shard_id, url in urls.items()
    ]
    return ShardRegistry(shards, default_shard_id=settings.default_shard_id)


def get_shard_registry() -> ShardRegistry:
    """Get or create the process-wide shard registry."""
    global _registry
    if _registry is None:
        _registry = build_shard_registry()
    return _registry


async def init_db() -> None:
    """Create all tables on every shard (development only; production uses migrations)."""
    await get_shard_registry().create_all()


async def close_db() -> None:
    global _registry
    if _registry is not None:
        await _registry.dispose()
        _registry = None
