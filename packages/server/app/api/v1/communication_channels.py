"""
Communication channel endpoints: registration, confirmation, lifecycle transitions,
password resets, OTP delivery and merge candidates.

Channels and users are addressed by global id (``<shard>~<uuid>``). Callers act on
their own channels; ``manage_channels`` grants access to anyone's.
"""

from __future__ import annotations

import secrets
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_lifecycle_manager
from app.core.auth import (
    RESET_BOUNCE_COUNT,
    AuthenticatedUser,
    get_authenticated_user,
    require_permission,
)
from app.core.errors import NotFound, ValidationError
from app.models.account import Account
from app.models.base import as_utc, utcnow
from app.models.communication_channel import CommunicationChannel
from app.models.user import User
from app.services.lifecycle import ChannelLifecycleManager
from commchannels_shared.schemas.communication_channels import (
    BounceDetailsRead,
    ChannelConfirmRequest,
    ChannelConfirmResponse,
    ChannelCreateRequest,
    ChannelListResponse,
    ChannelRead,
    ConfirmationSentResponse,
    ForgotPasswordResponse,
    MergeCandidateListResponse,
    MergeCandidateRead,
    OtpSendRequest,
)

user_router = APIRouter()
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def serialize_channel(
    manager: ChannelLifecycleManager,
    channel: CommunicationChannel,
    auth: AuthenticatedUser,
) -> ChannelRead:
    bounces = None
    if auth.can_read_bounce_details:
        bounces = BounceDetailsRead(
            last_bounce_at=channel.last_bounce_at,
            last_bounce_summary=channel.last_bounce_summary,
            last_bounce_details=channel.last_bounce_details,
            last_transient_bounce_at=channel.last_transient_bounce_at,
            last_transient_bounce_summary=channel.last_transient_bounce_summary,
            last_transient_bounce_details=channel.last_transient_bounce_details,
            last_suppression_bounce_at=channel.last_suppression_bounce_at,
        )
    return ChannelRead(
        id=manager.store.global_id(channel),
        user_id=manager.store.user_global_id(channel.user_id),
        path=channel.path,
        path_type=channel.kind,
        path_description=channel.path_description,
        workflow_state=channel.workflow_state,
        position=channel.position,
        confirmation_sent_count=channel.confirmation_sent_count,
        bounce_count=channel.bounce_count,
        bouncing=channel.bouncing,
        otp_impaired=manager.otp_impaired(channel),
        bounces=bounces,
        created_at=channel.created_at,
        updated_at=channel.updated_at,
    )


async def _get_user_or_404(
    manager: ChannelLifecycleManager, user_id: str, auth: AuthenticatedUser
) -> User:
    user = await manager.store.get_user_by_global_id(user_id)
    if user is None or not auth.can_manage(user_id):
        raise NotFound("User not found")
    return user


async def _get_channel_or_404(
    manager: ChannelLifecycleManager, channel_id: str, auth: AuthenticatedUser
) -> CommunicationChannel:
    channel = await manager.store.get(channel_id)
    if channel is None or not auth.can_manage(manager.store.user_global_id(channel.user_id)):
        raise NotFound("Communication channel not found")
    return channel


async def _get_account(
    manager: ChannelLifecycleManager, user_id: uuid.UUID, account_id: Optional[uuid.UUID]
) -> Optional[Account]:
    if account_id is None:
        return None
    account = await manager.store.get_account(user_id, account_id)
    if account is None:
        raise NotFound("Account not found")
    return account


# ---------------------------------------------------------------------------
# User-scoped endpoints
# ---------------------------------------------------------------------------


@user_router.get("", response_model=ChannelListResponse)
async def list_channels(
    userId: str,
    slack_enabled: bool = Query(False),
    auth: AuthenticatedUser = Depends(get_authenticated_user),
    manager: ChannelLifecycleManager = Depends(get_lifecycle_manager),
):
    """Unretired channels in display order."""
    user = await _get_user_or_404(manager, userId, auth)
    channels = await manager.list_for_display(user, slack_enabled=slack_enabled)
    return ChannelListResponse(data=[serialize_channel(manager, c, auth) for c in channels])


@user_router.post("", response_model=ChannelRead, status_code=status.HTTP_201_CREATED)
async def create_channel(
    userId: str,
    body: ChannelCreateRequest,
    account_id: Optional[uuid.UUID] = Query(None),
    auth: AuthenticatedUser = Depends(get_authenticated_user),
    manager: ChannelLifecycleManager = Depends(get_lifecycle_manager),
):
    user = await _get_user_or_404(manager, userId, auth)
    account = await _get_account(manager, user.id, account_id)
    if account is not None and not await manager.user_can_have_more_channels(user, account):
        raise ValidationError({"communication_channel": ["Maximum number of communication channels reached"]})

    channel = await manager.register(user, body.path, body.path_type)
    if body.send_confirmation:
        await manager.request_confirmation(channel, account)
    return serialize_channel(manager, channel, auth)


# ---------------------------------------------------------------------------
# Channel endpoints
# ---------------------------------------------------------------------------


@router.get("/{channelId}", response_model=ChannelRead)
async def get_channel(
    channelId: str,
    auth: AuthenticatedUser = Depends(get_authenticated_user),
    manager: ChannelLifecycleManager = Depends(get_lifecycle_manager),
):
    channel = await _get_channel_or_404(manager, channelId, auth)
    return serialize_channel(manager, channel, auth)


@router.post("/{channelId}/confirm", response_model=ChannelConfirmResponse)
async def confirm_channel(
    channelId: str,
    body: ChannelConfirmRequest,
    account_id: Optional[uuid.UUID] = Query(None),
    auth: AuthenticatedUser = Depends(get_authenticated_user),
    manager: ChannelLifecycleManager = Depends(get_lifecycle_manager),
):
    """Confirm with the code that was sent, or force it with ``force_confirm``."""
    channel = await _get_channel_or_404(manager, channelId, auth)
    if body.force:
        if not auth.can_force_confirm:
            raise HTTPException(status_code=403, detail="Permission 'force_confirm' required")
    else:
        expires_at = as_utc(channel.confirmation_code_expires_at)
        if (
            not body.code
            or not channel.confirmation_code
            or not secrets.compare_digest(body.code, channel.confirmation_code)
            or (expires_at is not None and expires_at < utcnow())
        ):
            raise ValidationError({"code": ["is invalid"]})

    account = await _get_account(manager, channel.user_id, account_id)
    await manager.confirm(channel)

    redirect_url = None
    if body.redirect_url and manager.trusted_confirmation_redirect(account, body.redirect_url):
        redirect_url = body.redirect_url
    return ChannelConfirmResponse(channel=serialize_channel(manager, channel, auth), redirect_url=redirect_url)


@router.post("/{channelId}/send-confirmation", response_model=ConfirmationSentResponse)
async def send_confirmation(
    channelId: str,
    account_id: Optional[uuid.UUID] = Query(None),
    auth: AuthenticatedUser = Depends(get_authenticated_user),
    manager: ChannelLifecycleManager = Depends(get_lifecycle_manager),
):
    channel = await _get_channel_or_404(manager, channelId, auth)
    account = await _get_account(manager, channel.user_id, account_id)
    kind = await manager.request_confirmation(channel, account)
    return ConfirmationSentResponse(kind=kind, confirmation_sent_count=channel.confirmation_sent_count)


@router.post("/{channelId}/forgot-password", response_model=ForgotPasswordResponse)
async def forgot_password(
    channelId: str,
    account_id: Optional[uuid.UUID] = Query(None),
    auth: AuthenticatedUser = Depends(get_authenticated_user),
    manager: ChannelLifecycleManager = Depends(get_lifecycle_manager),
):
    channel = await _get_channel_or_404(manager, channelId, auth)
    account = await _get_account(manager, channel.user_id, account_id)
    return ForgotPasswordResponse(requested=await manager.forgot_password(channel, account))


@router.post("/{channelId}/retire", response_model=ChannelRead)
async def retire_channel(
    channelId: str,
    auth: AuthenticatedUser = Depends(get_authenticated_user),
    manager: ChannelLifecycleManager = Depends(get_lifecycle_manager),
):
    channel = await _get_channel_or_404(manager, channelId, auth)
    await manager.retire(channel)
    return serialize_channel(manager, channel, auth)


@router.post("/{channelId}/reactivate", response_model=ChannelRead)
async def reactivate_channel(
    channelId: str,
    auth: AuthenticatedUser = Depends(get_authenticated_user),
    manager: ChannelLifecycleManager = Depends(get_lifecycle_manager),
):
    channel = await _get_channel_or_404(manager, channelId, auth)
    await manager.reactivate(channel)
    return serialize_channel(manager, channel, auth)


@router.post("/{channelId}/reset-bounce-count", response_model=ChannelRead)
async def reset_bounce_count(
    channelId: str,
    auth: AuthenticatedUser = Depends(require_permission(RESET_BOUNCE_COUNT)),
    manager: ChannelLifecycleManager = Depends(get_lifecycle_manager),
):
    channel = await _get_channel_or_404(manager, channelId, auth)
    await manager.reset_bounce_count(channel)
    return serialize_channel(manager, channel, auth)


@router.get("/{channelId}/merge-candidates", response_model=MergeCandidateListResponse)
async def merge_candidates(
    channelId: str,
    auth: AuthenticatedUser = Depends(get_authenticated_user),
    manager: ChannelLifecycleManager = Depends(get_lifecycle_manager),
):
    channel = await _get_channel_or_404(manager, channelId, auth)
    users = await manager.find_merge_candidates(channel)
    return MergeCandidateListResponse(
        data=[
            MergeCandidateRead(user_id=manager.store.user_global_id(u.id), name=u.name)
            for u in users
        ]
    )


@router.post("/{channelId}/otp", status_code=status.HTTP_202_ACCEPTED)
async def send_otp(
    channelId: str,
    body: OtpSendRequest,
    account_id: Optional[uuid.UUID] = Query(None),
    auth: AuthenticatedUser = Depends(get_authenticated_user),
    manager: ChannelLifecycleManager = Depends(get_lifecycle_manager),
):
    channel = await _get_channel_or_404(manager, channelId, auth)
    account = await _get_account(manager, channel.user_id, account_id)
    await manager.send_otp(channel, body.code, account)
    return {"status": "accepted"}


@router.delete("/{channelId}", response_model=ChannelRead)
async def delete_channel(
    channelId: str,
    auth: AuthenticatedUser = Depends(get_authenticated_user),
    manager: ChannelLifecycleManager = Depends(get_lifecycle_manager),
):
    """Soft delete: the channel is retired and kept."""
    channel = await _get_channel_or_404(manager, channelId, auth)
    await manager.destroy(channel)
    return serialize_channel(manager, channel, auth)
