"""
HTTP tests for the communication channel and bounce endpoints.

The lifecycle manager is swapped for one backed by the SQLite shards through
``app.dependency_overrides``.
"""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from app.api.deps import get_lifecycle_manager
from app.core.auth import FORCE_CONFIRM, MANAGE_CHANNELS, READ_BOUNCE_DETAILS, RESET_BOUNCE_COUNT, create_jwt
from app.core.config import get_settings
from app.main import app
from app.models import Account
from commchannels_shared.schemas.communication_channels import NotificationKind, WorkflowState

settings = get_settings()


@pytest.fixture
async def client(manager):
    async def _manager():
        return manager

    app.dependency_overrides[get_lifecycle_manager] = _manager
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
async def user(make_user):
    return await make_user(name="Owner")


@pytest.fixture
def user_gid(store, user) -> str:
    return store.user_global_id(user.id)


def _headers(user_gid: str, *permissions: str) -> dict[str, str]:
    token, _ = create_jwt(user_gid, permissions)
    return {"Authorization": f"Bearer {token}"}


class TestAuthentication:
    async def test_token_required(self, client, user_gid):
        response = await client.get(f"/api/v1/users/{user_gid}/communication_channels")
        assert response.status_code == 401

    async def test_invalid_token(self, client, user_gid):
        response = await client.get(
            f"/api/v1/users/{user_gid}/communication_channels",
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert response.status_code == 401

    async def test_other_users_channels_are_hidden(self, client, make_user, store, user_gid):
        stranger = await make_user(name="Stranger")
        headers = _headers(store.user_global_id(stranger.id))

        response = await client.get(f"/api/v1/users/{user_gid}/communication_channels", headers=headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    async def test_manage_channels_grants_access(self, client, make_user, store, user_gid):
        admin = await make_user(name="Admin")
        headers = _headers(store.user_global_id(admin.id), MANAGE_CHANNELS)

        response = await client.get(f"/api/v1/users/{user_gid}/communication_channels", headers=headers)
        assert response.status_code == 200


class TestChannelEndpoints:
    async def test_create_and_list(self, client, user_gid, dispatcher):
        headers = _headers(user_gid)
        response = await client.post(
            f"/api/v1/users/{user_gid}/communication_channels",
            json={"path": "new@example.com", "send_confirmation": True},
            headers=headers,
        )
        assert response.status_code == 201
        created = response.json()
        assert created["workflow_state"] == "unconfirmed"
        assert created["confirmation_sent_count"] == 1
        assert "confirmation_code" not in created
        assert created["bounces"] is None
        assert dispatcher.kinds() == [NotificationKind.CONFIRM_EMAIL]

        listing = await client.get(f"/api/v1/users/{user_gid}/communication_channels", headers=headers)
        assert [c["id"] for c in listing.json()["data"]] == [created["id"]]

    async def test_create_invalid_email(self, client, user_gid):
        response = await client.post(
            f"/api/v1/users/{user_gid}/communication_channels",
            json={"path": "nope"},
            headers=_headers(user_gid),
        )
        assert response.status_code == 422
        body = response.json()
        assert body["error"]["code"] == "VALIDATION_FAILED"
        assert body["errors"] == {"email": ["is invalid"]}

    async def test_create_respects_account_channel_cap(self, client, make_user, store):
        account = Account(name="Capped", settings={"max_communication_channels": 1})
        capped = await make_user(name="Capped", account=account)
        gid = store.user_global_id(capped.id)
        url = f"/api/v1/users/{gid}/communication_channels?account_id={account.id}"

        first = await client.post(url, json={"path": "one@example.com"}, headers=_headers(gid))
        second = await client.post(url, json={"path": "two@example.com"}, headers=_headers(gid))

        assert first.status_code == 201
        assert second.status_code == 422
        assert "communication_channel" in second.json()["errors"]

    async def test_confirm_with_code(self, client, manager, user, user_gid):
        channel = await manager.register(user, "confirm@example.com")
        channel_id = manager.store.global_id(channel)

        wrong = await client.post(
            f"/api/v1/communication_channels/{channel_id}/confirm",
            json={"code": "wrong"},
            headers=_headers(user_gid),
        )
        assert wrong.status_code == 422

        right = await client.post(
            f"/api/v1/communication_channels/{channel_id}/confirm",
            json={"code": channel.confirmation_code, "redirect_url": "https://evil.example.com/"},
            headers=_headers(user_gid),
        )
        assert right.status_code == 200
        assert right.json()["channel"]["workflow_state"] == "active"
        assert right.json()["redirect_url"] is None

    async def test_confirm_twice_is_a_conflict(self, client, manager, user, user_gid):
        channel = await manager.register(user, "twice@example.com", workflow_state=WorkflowState.ACTIVE)

        response = await client.post(
            f"/api/v1/communication_channels/{manager.store.global_id(channel)}/confirm",
            json={"code": channel.confirmation_code},
            headers=_headers(user_gid),
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_TRANSITION"

    async def test_force_confirm_requires_permission(self, client, manager, user, user_gid):
        channel = await manager.register(user, "force@example.com")
        url = f"/api/v1/communication_channels/{manager.store.global_id(channel)}/confirm"

        denied = await client.post(url, json={"force": True}, headers=_headers(user_gid))
        assert denied.status_code == 403

        allowed = await client.post(url, json={"force": True}, headers=_headers(user_gid, FORCE_CONFIRM))
        assert allowed.status_code == 200

    async def test_send_confirmation_limit(self, client, manager, user, user_gid):
        channel = await manager.register(user, "resend@example.com")
        url = f"/api/v1/communication_channels/{manager.store.global_id(channel)}/send-confirmation"

        first = await client.post(url, headers=_headers(user_gid))
        assert first.json() == {"kind": "confirm_email", "confirmation_sent_count": 1}
        await client.post(url, headers=_headers(user_gid))
        third = await client.post(url, headers=_headers(user_gid))

        assert third.status_code == 429
        assert third.json()["error"]["code"] == "CONFIRMATION_LIMIT_EXCEEDED"

    async def test_forgot_password(self, client, manager, user, user_gid):
        channel = await manager.register(user, "reset@example.com", workflow_state=WorkflowState.ACTIVE)
        url = f"/api/v1/communication_channels/{manager.store.global_id(channel)}/forgot-password"

        assert (await client.post(url, headers=_headers(user_gid))).json() == {"requested": True}
        assert (await client.post(url, headers=_headers(user_gid))).json() == {"requested": False}

    async def test_retire_reactivate_and_delete(self, client, manager, user, user_gid):
        channel = await manager.register(user, "cycle@example.com", workflow_state=WorkflowState.ACTIVE)
        base = f"/api/v1/communication_channels/{manager.store.global_id(channel)}"

        assert (await client.post(f"{base}/retire", headers=_headers(user_gid))).json()["workflow_state"] == "retired"
        assert (await client.post(f"{base}/reactivate", headers=_headers(user_gid))).json()["workflow_state"] == "active"
        deleted = await client.delete(base, headers=_headers(user_gid))
        assert deleted.status_code == 200
        assert deleted.json()["workflow_state"] == "retired"

        fetched = await client.get(base, headers=_headers(user_gid))
        assert fetched.json()["workflow_state"] == "retired"

    async def test_reset_bounce_count_requires_permission(self, client, manager, store, user, user_gid):
        channel = await manager.register(user, "bouncy@example.com")
        channel.bounce_count = 1
        await store.save(channel)
        url = f"/api/v1/communication_channels/{store.global_id(channel)}/reset-bounce-count"

        assert (await client.post(url, headers=_headers(user_gid))).status_code == 403
        response = await client.post(url, headers=_headers(user_gid, RESET_BOUNCE_COUNT))
        assert response.status_code == 200
        assert response.json()["bounce_count"] == 0

    async def test_bounce_details_need_permission(self, client, manager, clock, user, user_gid):
        channel = await manager.register(user, "details@example.com")
        await manager.apply_bounce(
            channel,
            clock.now,
            {"bouncedRecipients": [{"diagnosticCode": "550 mailbox full"}]},
            permanent=True,
        )
        url = f"/api/v1/communication_channels/{manager.store.global_id(channel)}"

        plain = await client.get(url, headers=_headers(user_gid))
        assert plain.json()["bounces"] is None
        assert plain.json()["bouncing"] is True

        detailed = await client.get(url, headers=_headers(user_gid, READ_BOUNCE_DETAILS))
        assert detailed.json()["bounces"]["last_bounce_summary"] == "550 mailbox full"

    async def test_merge_candidates(self, client, manager, make_user, user, user_gid):
        other = await make_user(0, name="Twin")
        await manager.register(other, "twin@example.com", workflow_state=WorkflowState.ACTIVE)
        channel = await manager.register(user, "twin@example.com")

        response = await client.get(
            f"/api/v1/communication_channels/{manager.store.global_id(channel)}/merge-candidates",
            headers=_headers(user_gid),
        )
        assert response.json() == {
            "data": [{"user_id": manager.store.user_global_id(other.id), "name": "Twin"}]
        }

    async def test_send_otp(self, client, manager, dispatcher, user, user_gid):
        channel = await manager.register(user, "5551234567", "sms")

        response = await client.post(
            f"/api/v1/communication_channels/{manager.store.global_id(channel)}/otp",
            json={"code": "123456"},
            headers=_headers(user_gid),
        )
        assert response.status_code == 202
        assert dispatcher.gateway == [("5551234567", "Your verification code is 123456")]

    async def test_unknown_channel(self, client, user_gid):
        response = await client.get("/api/v1/communication_channels/1~nope", headers=_headers(user_gid))
        assert response.status_code == 404


class TestBounceWebhook:
    def _headers(self):
        return {"X-Bounce-Webhook-Secret": settings.bounce_webhook_secret}

    async def test_secret_required(self, client):
        response = await client.post("/api/v1/bounces", json={"path": "x@example.com"})
        assert response.status_code == 401

        response = await client.post(
            "/api/v1/bounces",
            json={"path": "x@example.com"},
            headers={"X-Bounce-Webhook-Secret": "wrong"},
        )
        assert response.status_code == 401

    async def test_path_bounce(self, client, manager, user):
        await manager.register(user, "hook@example.com")

        response = await client.post(
            "/api/v1/bounces",
            json={"path": "HOOK@example.com", "permanent": True},
            headers=self._headers(),
        )
        assert response.status_code == 200
        assert response.json() == {"kind": "permanent", "updated": 1}

    async def test_channel_bounce(self, client, manager, user):
        channel = await manager.register(user, "named@example.com")
        body = {
            "path": "named@example.com",
            "suppression": True,
            "channel_id": manager.store.global_id(channel),
        }

        first = await client.post("/api/v1/bounces", json=body, headers=self._headers())
        second = await client.post("/api/v1/bounces", json=body, headers=self._headers())

        assert first.json() == {"kind": "suppression", "updated": 1}
        assert second.json() == {"kind": "suppression", "updated": 0}

    async def test_permanent_and_suppression_rejected(self, client):
        response = await client.post(
            "/api/v1/bounces",
            json={"path": "x@example.com", "permanent": True, "suppression": True},
            headers=self._headers(),
        )
        assert response.status_code == 422
