"""
Shard handles and cross-shard fan-out.

Every user lives on exactly one shard, chosen by ``user_id.int % len(shards)``,
and the user's channels, logins and account links live beside them. Records
are addressed from outside by a global id, ``"<shard_id>~<local uuid>"``.

Callers that need more than one shard ask the registry which shards a path may
appear on (``associated_shards``) and loop over them explicitly.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

GLOBAL_ID_SEPARATOR = "~"


class Shard:
    """One database partition: an engine plus its session factory."""

    def __init__(self, shard_id: str, engine: AsyncEngine):
        if GLOBAL_ID_SEPARATOR in shard_id:
            raise ValueError(f"shard id may not contain {GLOBAL_ID_SEPARATOR!r}: {shard_id}")
        self.id = shard_id
        self.engine = engine
        self.session_factory = sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """A session on this shard that commits on success and rolls back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def __repr__(self) -> str:
        return f"<Shard {self.id}>"


PathResolver = Callable[[str], Sequence[Shard]]


class ShardRegistry:
    """The set of shards known to this process."""

    def __init__(
        self,
        shards: Sequence[Shard],
        *,
        default_shard_id: Optional[str] = None,
        path_resolver: Optional[PathResolver] = None,
    ):
        if not shards:
            raise ValueError("at least one shard is required")
        self._shards = list(shards)
        self._by_id = {s.id: s for s in self._shards}
        if len(self._by_id) != len(self._shards):
            raise ValueError("duplicate shard ids")
        self._default = self._by_id[default_shard_id] if default_shard_id else self._shards[0]
        self._path_resolver = path_resolver

    @property
    def shards(self) -> list[Shard]:
        return list(self._shards)

    @property
    def default(self) -> Shard:
        return self._default

    def get(self, shard_id: str) -> Shard:
        try:
            return self._by_id[shard_id]
        except KeyError:
            raise KeyError(f"unknown shard: {shard_id}") from None

    def shard_for_user(self, user_id: uuid.UUID) -> Shard:
        return self._shards[user_id.int % len(self._shards)]

    def associated_shards(self, path: str) -> list[Shard]:
        """Shards that may hold channels for ``path``."""
        if self._path_resolver is not None:
            return list(self._path_resolver(path))
        return self.shards

    # --- Global ids ---

    def global_id(self, shard: Shard, local_id: uuid.UUID) -> str:
        return f"{shard.id}{GLOBAL_ID_SEPARATOR}{local_id}"

    def user_global_id(self, user_id: uuid.UUID) -> str:
        return self.global_id(self.shard_for_user(user_id), user_id)

    def parse_global_id(self, global_id: str) -> tuple[Shard, uuid.UUID]:
        """Split a global id into (shard, local id). Raises ValueError if malformed."""
        shard_id, sep, local = global_id.partition(GLOBAL_ID_SEPARATOR)
        if not sep:
            raise ValueError(f"not a global id: {global_id!r}")
        try:
            return self.get(shard_id), uuid.UUID(local)
        except KeyError as exc:
            raise ValueError(str(exc)) from None

    # --- Schema / lifecycle ---

    async def create_all(self) -> None:
        """Create all tables on every shard (development and tests only)."""
        for shard in self._shards:
            async with shard.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

    async def dispose(self) -> None:
        for shard in self._shards:
            await shard.engine.dispose()
