"""
Sharded record store for communication channels and their owners.

Every method takes or derives the shard it works on; nothing here reaches for a
global database handle. Channel lookups by path are case-insensitive and treat
``email`` and ``personal_email`` as the same path type.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator, Sequence
from datetime import datetime
from typing import Any, Optional, Protocol

import structlog
from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import SQLModel, select

from app.core.errors import ValidationError
from app.core.sharding import Shard, ShardRegistry
from app.models.account import Account
from app.models.communication_channel import (
    BOUNCE_FIELDS,
    BOUNCE_RECORDED_FIELDS,
    RETIRE_THRESHOLD,
    CommunicationChannel,
)
from app.models.login import Login
from app.models.notification_policy import DEFAULT_POLICIES, NotificationPolicy
from app.models.user import User
from app.models.user_account import UserAccount
from commchannels_shared.schemas.communication_channels import (
    BounceKind,
    WorkflowState,
    path_type_group,
)

log = structlog.get_logger()

Channel = CommunicationChannel


class ChannelStore(Protocol):
    """What the lifecycle manager needs from persistence."""

    def shard_of(self, channel: Channel) -> Shard: ...
    def global_id(self, channel: Channel) -> str: ...
    def user_global_id(self, user_id: uuid.UUID) -> str: ...
    def associated_shards(self, path: str) -> list[Shard]: ...

    async def get(self, global_id: str) -> Optional[Channel]: ...
    async def get_user(self, user_id: uuid.UUID) -> Optional[User]: ...
    async def get_user_by_global_id(self, global_id: str) -> Optional[User]: ...
    async def get_account(self, user_id: uuid.UUID, account_id: uuid.UUID) -> Optional[Account]: ...
    async def save(self, channel: Channel) -> Channel: ...
    async def count_unretired(self, user_id: uuid.UUID) -> int: ...
    async def count_recent(self, user_id: uuid.UUID, retired_since: datetime) -> int: ...
    async def path_taken(self, channel: Channel) -> bool: ...
    async def next_position(self, user_id: uuid.UUID) -> int: ...
    async def find_by_path(
        self,
        shard: Shard,
        path: str,
        path_type: str,
        states: Sequence[str],
        *,
        exclude_user_id: Optional[uuid.UUID] = None,
        limit: Optional[int] = None,
    ) -> list[Channel]: ...
    def bouncable_id_batches(
        self,
        shard: Shard,
        path: str,
        path_type: str,
        kind: BounceKind,
        cutoff: datetime,
        batch_size: int,
    ) -> AsyncIterator[list[uuid.UUID]]: ...
    async def apply_bounce(
        self,
        shard: Shard,
        ids: Sequence[uuid.UUID],
        kind: BounceKind,
        timestamp: datetime,
        details: Optional[dict[str, Any]],
        *,
        cutoff: datetime,
        now: datetime,
    ) -> int: ...
    async def get_many(self, shard: Shard, ids: Sequence[uuid.UUID]) -> list[Channel]: ...
    async def user_has_active_login(self, user_id: uuid.UUID) -> bool: ...
    async def refresh_bouncing_notice(self, user_id: uuid.UUID) -> bool: ...
    async def banned_email_domains(self, user_id: uuid.UUID) -> set[str]: ...
    async def ensure_notification_policies(self, channel: Channel) -> int: ...
    async def find_by_confirmation_code(self, code: str) -> Optional[Channel]: ...
    async def list_for_display(self, user_id: uuid.UUID, path_types: Sequence[str]) -> list[Channel]: ...


def _path_matches(path: str, path_type: str):
    return (
        func.lower(Channel.path) == path.lower(),
        Channel.path_type.in_(path_type_group(path_type)),
    )


def _bouncable(kind: BounceKind, cutoff: datetime):
    """Not yet bouncing, and no bounce of this kind recorded inside the debounce window."""
    field = getattr(Channel, BOUNCE_RECORDED_FIELDS[kind])
    return (
        Channel.bounce_count < RETIRE_THRESHOLD,
        or_(field.is_(None), field < cutoff),
    )


class SqlChannelStore:
    """ChannelStore backed by SQLModel tables on a ShardRegistry."""

    def __init__(self, registry: ShardRegistry):
        self.registry = registry

    # --- Placement ---

    def shard_of(self, channel: Channel) -> Shard:
        return self.registry.shard_for_user(channel.user_id)

    def global_id(self, channel: Channel) -> str:
        return self.registry.global_id(self.shard_of(channel), channel.id)

    def user_global_id(self, user_id: uuid.UUID) -> str:
        return self.registry.user_global_id(user_id)

    def associated_shards(self, path: str) -> list[Shard]:
        return self.registry.associated_shards(path)

    # --- Generic writes ---

    async def add(self, shard: Shard, *records: SQLModel) -> None:
        """Insert or update arbitrary records on one shard."""
        async with shard.session() as session:
            session.add_all(records)

    async def add_user(self, user: User, *records: SQLModel) -> User:
        """Persist a user, plus any records that belong beside it, on the user's shard."""
        await self.add(self.registry.shard_for_user(user.id), user, *records)
        return user

    # --- Single-record access ---

    async def get(self, global_id: str) -> Optional[Channel]:
        try:
            shard, local_id = self.registry.parse_global_id(global_id)
        except ValueError:
            return None
        async with shard.session() as session:
            return await session.get(Channel, local_id)

    async def get_user(self, user_id: uuid.UUID) -> Optional[User]:
        async with self.registry.shard_for_user(user_id).session() as session:
            return await session.get(User, user_id)

    async def get_user_by_global_id(self, global_id: str) -> Optional[User]:
        try:
            shard, user_id = self.registry.parse_global_id(global_id)
        except ValueError:
            return None
        if shard is not self.registry.shard_for_user(user_id):
            return None
        return await self.get_user(user_id)

    async def get_account(self, user_id: uuid.UUID, account_id: uuid.UUID) -> Optional[Account]:
        """A root account the user belongs to, read from the user's shard."""
        async with self.registry.shard_for_user(user_id).session() as session:
            result = await session.execute(
                select(Account)
                .join(UserAccount, UserAccount.account_id == Account.id)
                .where(UserAccount.user_id == user_id, Account.id == account_id)
            )
            return result.scalars().first()

    async def save(self, channel: Channel) -> Channel:
        # A failed commit expires and detaches the instance; read what the log needs first.
        user_id = channel.user_id
        try:
            async with self.shard_of(channel).session() as session:
                session.add(channel)
        except IntegrityError as exc:
            log.info("channel.save_conflict", user_id=str(user_id), error=str(exc.orig))
            raise ValidationError({"path": ["has already been taken"]}) from exc
        return channel

    # --- Per-user queries ---

    async def count_unretired(self, user_id: uuid.UUID) -> int:
        async with self.registry.shard_for_user(user_id).session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(Channel)
                .where(
                    Channel.user_id == user_id,
                    Channel.workflow_state != WorkflowState.RETIRED.value,
                )
            )
            return result.scalar_one()

    async def count_recent(self, user_id: uuid.UUID, retired_since: datetime) -> int:
        """Unretired channels plus channels retired but created after ``retired_since``."""
        async with self.registry.shard_for_user(user_id).session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(Channel)
                .where(
                    Channel.user_id == user_id,
                    or_(
                        Channel.workflow_state != WorkflowState.RETIRED.value,
                        Channel.created_at > retired_since,
                    ),
                )
            )
            return result.scalar_one()

    async def path_taken(self, channel: Channel) -> bool:
        async with self.shard_of(channel).session() as session:
            result = await session.execute(
                select(Channel.id)
                .where(
                    *_path_matches(channel.path, channel.path_type),
                    Channel.user_id == channel.user_id,
                    Channel.workflow_state.in_(
                        [WorkflowState.UNCONFIRMED.value, WorkflowState.ACTIVE.value]
                    ),
                    Channel.id != channel.id,
                )
                .limit(1)
            )
            return result.first() is not None

    async def next_position(self, user_id: uuid.UUID) -> int:
        async with self.registry.shard_for_user(user_id).session() as session:
            result = await session.execute(
                select(func.max(Channel.position)).where(Channel.user_id == user_id)
            )
            return (result.scalar_one() or 0) + 1

    async def list_for_display(self, user_id: uuid.UUID, path_types: Sequence[str]) -> list[Channel]:
        rank = {t: i for i, t in enumerate(path_types)}
        async with self.registry.shard_for_user(user_id).session() as session:
            result = await session.execute(
                select(Channel).where(
                    Channel.user_id == user_id,
                    Channel.workflow_state != WorkflowState.RETIRED.value,
                )
            )
            channels = [c for c in result.scalars().all() if c.kind in rank]
        return sorted(channels, key=lambda c: (rank[c.kind], c.position))

    async def user_has_active_login(self, user_id: uuid.UUID) -> bool:
        async with self.registry.shard_for_user(user_id).session() as session:
            result = await session.execute(
                select(Login.id)
                .where(Login.user_id == user_id, Login.workflow_state == "active")
                .limit(1)
            )
            return result.first() is not None

    async def banned_email_domains(self, user_id: uuid.UUID) -> set[str]:
        async with self.registry.shard_for_user(user_id).session() as session:
            result = await session.execute(
                select(Account)
                .join(UserAccount, UserAccount.account_id == Account.id)
                .where(UserAccount.user_id == user_id)
            )
            return {d for account in result.scalars().all() for d in account.banned_email_domains}

    async def refresh_bouncing_notice(self, user_id: uuid.UUID) -> bool:
        """Recompute the user's bouncing-channel flag. Returns the new value."""
        async with self.registry.shard_for_user(user_id).session() as session:
            result = await session.execute(
                select(Channel.id)
                .where(
                    Channel.user_id == user_id,
                    Channel.workflow_state != WorkflowState.RETIRED.value,
                    Channel.bounce_count >= RETIRE_THRESHOLD,
                )
                .limit(1)
            )
            bouncing = result.first() is not None
            user = await session.get(User, user_id)
            if user is not None and user.has_bouncing_channel != bouncing:
                user.has_bouncing_channel = bouncing
                session.add(user)
        return bouncing

    async def ensure_notification_policies(self, channel: Channel) -> int:
        """Build the default policies for a channel that has none. Returns how many were built."""
        async with self.shard_of(channel).session() as session:
            result = await session.execute(
                select(NotificationPolicy.id)
                .where(NotificationPolicy.communication_channel_id == channel.id)
                .limit(1)
            )
            if result.first() is not None:
                return 0
            session.add_all(
                NotificationPolicy(
                    communication_channel_id=channel.id,
                    category=category,
                    frequency=frequency,
                )
                for category, frequency in DEFAULT_POLICIES.items()
            )
        return len(DEFAULT_POLICIES)

    # --- Path queries (explicit shard) ---

    async def find_by_path(
        self,
        shard: Shard,
        path: str,
        path_type: str,
        states: Sequence[str],
        *,
        exclude_user_id: Optional[uuid.UUID] = None,
        limit: Optional[int] = None,
    ) -> list[Channel]:
        stmt = select(Channel).where(
            *_path_matches(path, path_type),
            Channel.workflow_state.in_(list(states)),
        )
        if exclude_user_id is not None:
            stmt = stmt.where(Channel.user_id != exclude_user_id)
        stmt = stmt.order_by(Channel.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with shard.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def bouncable_id_batches(
        self,
        shard: Shard,
        path: str,
        path_type: str,
        kind: BounceKind,
        cutoff: datetime,
        batch_size: int,
    ) -> AsyncIterator[list[uuid.UUID]]:
        """Yield ids of channels eligible for this bounce, keyset-paginated by id."""
        last_id: Optional[uuid.UUID] = None
        while True:
            stmt = select(Channel.id).where(
                *_path_matches(path, path_type),
                Channel.workflow_state != WorkflowState.RETIRED.value,
                *_bouncable(kind, cutoff),
            )
            if last_id is not None:
                stmt = stmt.where(Channel.id > last_id)
            stmt = stmt.order_by(Channel.id).limit(batch_size)
            async with shard.session() as session:
                result = await session.execute(stmt)
                ids = list(result.scalars().all())
            if not ids:
                return
            yield ids
            if len(ids) < batch_size:
                return
            last_id = ids[-1]

    async def apply_bounce(
        self,
        shard: Shard,
        ids: Sequence[uuid.UUID],
        kind: BounceKind,
        timestamp: datetime,
        details: Optional[dict[str, Any]],
        *,
        cutoff: datetime,
        now: datetime,
    ) -> int:
        """Set-based bounce update, re-checking the debounce predicate. Returns rows updated."""
        values: dict[str, Any] = {
            "updated_at": now,
            BOUNCE_FIELDS[kind]: timestamp,
            BOUNCE_RECORDED_FIELDS[kind]: now,
        }
        if kind is BounceKind.PERMANENT:
            values["bounce_count"] = Channel.bounce_count + 1
            values["last_bounce_details"] = details
        elif kind is BounceKind.TRANSIENT:
            values["last_transient_bounce_details"] = details

        stmt = (
            update(Channel)
            .where(Channel.id.in_(list(ids)), *_bouncable(kind, cutoff))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with shard.session() as session:
            result = await session.execute(stmt)
            return result.rowcount

    async def get_many(self, shard: Shard, ids: Sequence[uuid.UUID]) -> list[Channel]:
        async with shard.session() as session:
            result = await session.execute(
                select(Channel).where(Channel.id.in_(list(ids))).order_by(Channel.id)
            )
            return list(result.scalars().all())

    async def find_by_confirmation_code(self, code: str) -> Optional[Channel]:
        for shard in self.registry.shards:
            async with shard.session() as session:
                result = await session.execute(
                    select(Channel).where(Channel.confirmation_code == code).limit(1)
                )
                channel = result.scalars().first()
            if channel is not None:
                return channel
        return None
