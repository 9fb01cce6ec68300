"""
Notification dispatch: hands delivery requests to the durable ARQ job queue.

Dispatch is fire-and-forget for callers. A ``dedupe_key`` becomes the ARQ job
id, so re-sending the same request while the job is still known to Redis is a
no-op.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol

import structlog
from arq.connections import ArqRedis
from redis.exceptions import RedisError

from app.core.errors import UpstreamDeliveryFailure
from app.models.communication_channel import CommunicationChannel
from commchannels_shared.schemas.communication_channels import NotificationKind

log = structlog.get_logger()

DELIVER_JOB = "deliver_notification"
SMS_GATEWAY_JOB = "send_otp_via_sms_gateway"


class NotificationDispatcher(Protocol):
    async def send(
        self,
        kind: NotificationKind,
        channel: CommunicationChannel,
        payload: dict[str, Any],
        *,
        dedupe_key: Optional[str] = None,
    ) -> None: ...

    async def send_via_sms_gateway(self, channel: CommunicationChannel, message: str) -> None: ...


class ArqNotificationDispatcher:
    """Enqueues delivery jobs picked up by ``app.tasks.notifications``."""

    def __init__(self, pool: ArqRedis, *, high_priority_queue: str):
        self._pool = pool
        self._high_priority_queue = high_priority_queue

    async def send(
        self,
        kind: NotificationKind,
        channel: CommunicationChannel,
        payload: dict[str, Any],
        *,
        dedupe_key: Optional[str] = None,
    ) -> None:
        try:
            job = await self._pool.enqueue_job(
                DELIVER_JOB,
                kind.value,
                channel.path,
                channel.kind,
                payload,
                _job_id=dedupe_key,
            )
        except (RedisError, OSError) as exc:
            raise UpstreamDeliveryFailure(
                f"Could not enqueue {kind.value} notification: {exc}", kind=kind.value
            ) from exc

        if job is None:
            log.info("notification.duplicate", kind=kind.value, dedupe_key=dedupe_key)
        else:
            log.info("notification.enqueued", kind=kind.value, job_id=job.job_id)

    async def send_via_sms_gateway(self, channel: CommunicationChannel, message: str) -> None:
        try:
            await self._pool.enqueue_job(
                SMS_GATEWAY_JOB,
                channel.path,
                message,
                _queue_name=self._high_priority_queue,
            )
        except (RedisError, OSError) as exc:
            raise UpstreamDeliveryFailure(
                f"Could not enqueue SMS gateway delivery: {exc}", kind=NotificationKind.OTP.value
            ) from exc
        log.info("notification.enqueued", kind=NotificationKind.OTP.value, queue=self._high_priority_queue)
