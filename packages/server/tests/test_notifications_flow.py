"""
Tests for manager-driven notifications: confirmation requests, password resets,
merge notifications and one-time passwords.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from app.core.config import Settings
from app.core.errors import LimitExceeded, Suppressed, UpstreamDeliveryFailure, ValidationError
from app.models import Account
from app.services.lifecycle import ChannelLifecycleManager
from commchannels_shared.schemas.communication_channels import NotificationKind, WorkflowState


async def _reload(store, channel):
    return await store.get(store.global_id(channel))


class TestRequestConfirmation:
    async def test_registered_user_gets_confirm_email(self, manager, dispatcher, store, make_user):
        user = await make_user()
        channel = await manager.register(user, "new@example.com")

        kind = await manager.request_confirmation(channel)

        assert kind is NotificationKind.CONFIRM_EMAIL
        assert dispatcher.kinds() == [NotificationKind.CONFIRM_EMAIL]
        assert (await _reload(store, channel)).confirmation_sent_count == 1
        sent = dispatcher.sent[0]
        assert sent.dedupe_key == f"confirm_email:{store.global_id(channel)}:1"
        assert sent.payload["confirmation_code"] == channel.confirmation_code

    async def test_pre_registered_user_gets_confirm_registration(self, manager, dispatcher, make_user):
        user = await make_user(workflow_state="pre_registered")
        channel = await manager.register(user, "invitee@example.com")

        assert await manager.request_confirmation(channel) is NotificationKind.CONFIRM_REGISTRATION

    async def test_active_email_gets_confirm_registration(self, manager, make_user):
        user = await make_user()
        channel = await manager.register(user, "live@example.com", workflow_state=WorkflowState.ACTIVE)

        assert await manager.request_confirmation(channel) is NotificationKind.CONFIRM_REGISTRATION

    async def test_unconfirmed_sms_gets_confirm_sms(self, manager, make_user):
        user = await make_user()
        channel = await manager.register(user, "5551234567", "sms")

        assert await manager.request_confirmation(channel) is NotificationKind.CONFIRM_SMS

    async def test_push_channel_counts_but_sends_nothing(self, manager, dispatcher, make_user):
        user = await make_user()
        channel = await manager.register(user, "device-token", "push")

        assert await manager.request_confirmation(channel) is None
        assert dispatcher.sent == []
        assert channel.confirmation_sent_count == 1

    async def test_third_request_exceeds_limit(self, manager, dispatcher, store, make_user):
        user = await make_user()
        channel = await manager.register(user, "limit@example.com")

        await manager.request_confirmation(channel)
        await manager.request_confirmation(channel)
        with pytest.raises(LimitExceeded):
            await manager.request_confirmation(channel)

        assert len(dispatcher.sent) == 2
        assert (await _reload(store, channel)).confirmation_sent_count == 2

    async def test_bouncing_channel_is_suppressed(self, manager, dispatcher, store, make_user):
        user = await make_user()
        channel = await manager.register(user, "bouncy@example.com")
        channel.bounce_count = 1
        await store.save(channel)

        with pytest.raises(Suppressed):
            await manager.request_confirmation(channel)

        assert dispatcher.sent == []
        assert (await _reload(store, channel)).confirmation_sent_count == 0

    async def test_dispatch_failure_after_commit(self, manager, dispatcher, store, make_user):
        user = await make_user()
        channel = await manager.register(user, "flaky@example.com")
        dispatcher.fail = True

        with pytest.raises(UpstreamDeliveryFailure):
            await manager.request_confirmation(channel)

        assert (await _reload(store, channel)).confirmation_sent_count == 1

    async def test_redispatch_reuses_dedupe_key(self, manager, dispatcher, store, make_user):
        user = await make_user()
        channel = await manager.register(user, "retry@example.com")

        await manager.request_confirmation(channel)
        await manager.dispatch_confirmation(channel)

        assert dispatcher.sent[0].dedupe_key == dispatcher.sent[1].dedupe_key
        assert (await _reload(store, channel)).confirmation_sent_count == 1

    async def test_root_account_host_in_payload(self, manager, dispatcher, make_user):
        account = Account(name="School", settings={"host": "school.example.com"})
        user = await make_user(account=account)
        channel = await manager.register(user, "pupil@example.com")

        await manager.request_confirmation(channel, account)

        payload = dispatcher.sent[0].payload
        assert payload["from_host"] == "school.example.com"
        assert payload["root_account_id"] == str(account.id)


class TestForgotPassword:
    async def test_issues_code_and_debounces(self, manager, dispatcher, store, clock, make_user):
        user = await make_user()
        channel = await manager.register(user, "forgetful@example.com", workflow_state=WorkflowState.ACTIVE)
        original_code = channel.confirmation_code

        assert await manager.forgot_password(channel) is True

        reloaded = await _reload(store, channel)
        assert reloaded.confirmation_code != original_code
        assert reloaded.confirmation_code_expires_at.replace(tzinfo=None) == (
            clock.now + timedelta(hours=2)
        ).replace(tzinfo=None)
        assert dispatcher.kinds() == [NotificationKind.FORGOT_PASSWORD]

        clock.advance(minutes=29)
        assert await manager.forgot_password(channel) is False
        assert len(dispatcher.sent) == 1

        clock.advance(minutes=2)
        assert await manager.forgot_password(channel) is True
        assert len(dispatcher.sent) == 2


class TestMergeNotification:
    async def test_only_email_channels(self, manager, dispatcher, make_user):
        user = await make_user()
        email = await manager.register(user, "merge@example.com")
        sms = await manager.register(user, "5551234567", "sms")

        assert await manager.send_merge_notification(email) is True
        assert await manager.send_merge_notification(sms) is False
        assert dispatcher.kinds() == [NotificationKind.MERGE_NOTIFICATION]


class TestSendOtp:
    async def test_sms_through_notification_service(self, manager, dispatcher, make_user):
        account = Account(name="MFA", settings={"features": {"notification_service": True}})
        user = await make_user(account=account)
        channel = await manager.register(user, "5551234567", "sms")

        await manager.send_otp(channel, "123456", account)

        assert dispatcher.kinds() == [NotificationKind.OTP]
        payload = dispatcher.sent[0].payload
        assert payload["target"] == "+15551234567"
        assert payload["message"] == "Your verification code is 123456"
        assert dispatcher.gateway == []

    async def test_sms_falls_back_to_gateway(self, manager, dispatcher, make_user):
        user = await make_user()
        channel = await manager.register(user, "5551234567", "sms")

        await manager.send_otp(channel, "123456", None)

        assert dispatcher.sent == []
        assert dispatcher.gateway == [("5551234567", "Your verification code is 123456")]

    async def test_sms_without_mfa_via_sms_uses_gateway(self, store, dispatcher, cache, clock, make_user):
        manager = ChannelLifecycleManager(
            store, dispatcher, cache, settings=Settings(mfa_via_sms=False), clock=clock
        )
        account = Account(name="MFA", settings={"features": {"notification_service": True}})
        user = await make_user(account=account)
        channel = await manager.register(user, "5551234567", "sms")

        await manager.send_otp(channel, "654321", account)
        assert len(dispatcher.gateway) == 1

    async def test_email_through_dispatcher(self, manager, dispatcher, make_user):
        user = await make_user()
        channel = await manager.register(user, "otp@example.com")

        await manager.send_otp(channel, "123456")

        assert dispatcher.kinds() == [NotificationKind.OTP]
        assert dispatcher.sent[0].payload["verification_code"] == "123456"

    async def test_other_path_types_rejected(self, manager, make_user):
        user = await make_user()
        channel = await manager.register(user, "device-token", "push")

        with pytest.raises(ValidationError) as exc_info:
            await manager.send_otp(channel, "123456")
        assert "path_type" in exc_info.value
