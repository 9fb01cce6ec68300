"""
Tests for the sharded record store and shard registry.
"""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from app.core.sharding import Shard, ShardRegistry
from app.models import Account, CommunicationChannel
from commchannels_shared.schemas.communication_channels import BounceKind, WorkflowState


class TestShardRegistry:
    def test_users_are_placed_by_hash(self, registry):
        user_id = uuid.UUID(int=5)
        assert registry.shard_for_user(user_id) is registry.shards[1]
        assert registry.shard_for_user(uuid.UUID(int=4)) is registry.shards[0]

    def test_global_id_round_trip(self, registry):
        local = uuid.uuid4()
        shard = registry.shards[1]
        global_id = registry.global_id(shard, local)

        assert global_id == f"2~{local}"
        assert registry.parse_global_id(global_id) == (shard, local)

    @pytest.mark.parametrize("global_id", ["no-separator", "9~" + str(uuid.UUID(int=1)), "1~not-a-uuid"])
    def test_malformed_global_ids(self, registry, global_id):
        with pytest.raises(ValueError):
            registry.parse_global_id(global_id)

    def test_path_resolver_limits_associated_shards(self, registry):
        only_first = ShardRegistry(registry.shards, path_resolver=lambda path: registry.shards[:1])
        assert only_first.associated_shards("x@example.com") == registry.shards[:1]
        assert registry.associated_shards("x@example.com") == registry.shards

    def test_rejects_bad_configuration(self, registry):
        with pytest.raises(ValueError):
            ShardRegistry([])
        with pytest.raises(ValueError):
            ShardRegistry([registry.shards[0], registry.shards[0]])
        with pytest.raises(ValueError):
            Shard("a~b", registry.shards[0].engine)


class TestSqlChannelStore:
    async def test_get_by_global_id(self, manager, store, make_user):
        user = await make_user(1)
        channel = await manager.register(user, "stored@example.com")

        global_id = store.global_id(channel)
        assert global_id.startswith("2~")
        assert (await store.get(global_id)).id == channel.id
        assert await store.get("garbage") is None
        assert await store.get(f"1~{channel.id}") is None

    async def test_user_by_global_id_checks_placement(self, store, registry, make_user):
        user = await make_user(0)
        assert (await store.get_user_by_global_id(store.user_global_id(user.id))).id == user.id
        assert await store.get_user_by_global_id(registry.global_id(registry.shards[1], user.id)) is None

    async def test_get_account_requires_membership(self, store, make_user):
        account = Account(name="Member")
        user = await make_user(account=account)
        outsider = await make_user()

        assert (await store.get_account(user.id, account.id)).id == account.id
        assert await store.get_account(outsider.id, account.id) is None

    async def test_find_by_confirmation_code_searches_every_shard(self, manager, store, make_user):
        user = await make_user(1)
        channel = await manager.register(user, "code@example.com")

        found = await manager.find_by_confirmation_code(channel.confirmation_code)
        assert found.id == channel.id
        assert await manager.find_by_confirmation_code("missing") is None

    async def test_list_for_display_order(self, manager, make_user):
        user = await make_user()
        sms = await manager.register(user, "5551234567", "sms")
        push = await manager.register(user, "token", "push")
        second_email = await manager.register(user, "b@example.com")
        slack = await manager.register(user, "U123", "slack")
        first_email = await manager.register(user, "a@example.com")
        retired = await manager.register(user, "old@example.com")
        await manager.retire(retired)

        ordered = await manager.list_for_display(user)
        assert [c.id for c in ordered] == [second_email.id, first_email.id, sms.id, push.id]

        with_slack = await manager.list_for_display(user, slack_enabled=True)
        assert [c.id for c in with_slack][-1] == slack.id

    async def test_count_recent_includes_recently_retired(self, manager, store, clock, make_user):
        user = await make_user()
        kept = await manager.register(user, "kept@example.com")
        gone = await manager.register(user, "gone@example.com")
        await manager.retire(gone)

        assert await store.count_recent(user.id, clock.now - timedelta(hours=1)) == 2
        assert await store.count_unretired(user.id) == 1
        assert kept.workflow_state == "unconfirmed"

    async def test_user_can_have_more_channels(self, manager, store, make_user):
        account = Account(name="Capped", settings={"max_communication_channels": 2})
        user = await make_user(account=account)
        uncapped = Account(name="Open")

        await manager.register(user, "one@example.com")
        assert await manager.user_can_have_more_channels(user, account) is True

        await manager.register(user, "two@example.com")
        assert await manager.user_can_have_more_channels(user, account) is False
        assert await manager.user_can_have_more_channels(user, uncapped) is True

    async def test_bulk_apply_bounce_rechecks_debounce(self, store, registry, clock, make_user):
        user = await make_user(0)
        shard = registry.shards[0]
        channel = CommunicationChannel(
            user_id=user.id,
            path="race@example.com",
            workflow_state=WorkflowState.ACTIVE.value,
            transient_bounce_recorded_at=clock.now,
        )
        await store.add(shard, channel)

        updated = await store.apply_bounce(
            shard,
            [channel.id],
            BounceKind.TRANSIENT,
            clock.now,
            None,
            cutoff=clock.now - timedelta(hours=1),
            now=clock.now,
        )
        assert updated == 0
