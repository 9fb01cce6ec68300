"""
Bounce webhook: mail and SMS providers report delivery failures here.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api.deps import get_lifecycle_manager
from app.core.auth import verify_webhook_secret
from app.core.errors import NotFound
from app.services.lifecycle import ChannelLifecycleManager
from commchannels_shared.schemas.bounces import BounceRecordedResponse, BounceReport

router = APIRouter()


@router.post(
    "",
    response_model=BounceRecordedResponse,
    dependencies=[Depends(verify_webhook_secret)],
)
async def record_bounce(
    body: BounceReport,
    manager: ChannelLifecycleManager = Depends(get_lifecycle_manager),
):
    """Record a bounce against one named channel, or every channel on the path."""
    if body.channel_id:
        channel = await manager.store.get(body.channel_id)
        if channel is None:
            raise NotFound("Communication channel not found")
        applied = await manager.apply_bounce(
            channel,
            body.timestamp,
            body.details,
            permanent=body.permanent,
            suppression=body.suppression,
        )
        return BounceRecordedResponse(kind=body.kind, updated=int(applied))

    updated = await manager.record_bounce(
        body.path,
        body.path_type,
        body.timestamp,
        body.details,
        permanent=body.permanent,
        suppression=body.suppression,
    )
    return BounceRecordedResponse(kind=body.kind, updated=updated)
