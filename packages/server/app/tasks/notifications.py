"""
ARQ background tasks: deliver channel notifications through the notification service.

Jobs are enqueued by ``app.services.notifications.ArqNotificationDispatcher``.
Run the default worker with ``arq app.tasks.notifications.WorkerSettings`` and
the OTP fallback worker with ``arq app.tasks.notifications.HighPriorityWorkerSettings``.
"""

from __future__ import annotations

from typing import Any

import structlog

from app.core.config import get_settings
from app.core.logging_config import configure_logging
from app.core.redis import arq_redis_settings
from app.services.notification_service import NotificationServiceClient
from commchannels_shared.schemas.communication_channels import NotificationKind

log = structlog.get_logger()
settings = get_settings()

MESSAGE_TEMPLATES: dict[str, str] = {
    NotificationKind.CONFIRM_REGISTRATION.value: (
        "Finish registering your account: use confirmation code {confirmation_code}."
    ),
    NotificationKind.CONFIRM_EMAIL.value: (
        "Confirm {path} as a contact method with code {confirmation_code}."
    ),
    NotificationKind.CONFIRM_SMS.value: "Your confirmation code is {confirmation_code}",
    NotificationKind.FORGOT_PASSWORD.value: (
        "Someone asked to reset the password for {path}. "
        "Use code {confirmation_code} within two hours to choose a new one."
    ),
    NotificationKind.MERGE_NOTIFICATION.value: (
        "{path} is also used by another account. Sign in to merge the two accounts."
    ),
    NotificationKind.OTP.value: "Your verification code is {verification_code}",
}


def render_message(kind: str, payload: dict[str, Any]) -> str:
    """Fill the template for ``kind`` from the job payload; missing keys render empty."""
    template = MESSAGE_TEMPLATES.get(kind)
    if template is None:
        raise ValueError(f"unknown notification kind: {kind}")
    values = {key: "" for key in ("path", "confirmation_code", "verification_code")}
    values.update({k: v for k, v in payload.items() if v is not None})
    return template.format(**values)


async def startup(ctx: dict) -> None:
    configure_logging(settings.log_level, settings.log_format)
    ctx["notification_service"] = NotificationServiceClient(
        settings.notification_service_url,
        timeout_seconds=settings.notification_service_timeout_seconds,
    )


async def shutdown(ctx: dict) -> None:
    client = ctx.get("notification_service")
    if client is not None:
        await client.aclose()


async def deliver_notification(
    ctx: dict,
    kind: str,
    path: str,
    path_type: str,
    payload: dict[str, Any],
) -> str:
    """Render and hand one notification to the notification service.

    Returns the channel global id the message was sent for.
    """
    client: NotificationServiceClient = ctx["notification_service"]
    global_id = payload.get("channel_id", "")
    body = render_message(kind, payload)
    target = payload.get("target") or path

    await client.process(
        global_id,
        body,
        path_type,
        target,
        priority=kind == NotificationKind.OTP.value,
        data={"kind": kind, "from_host": payload.get("from_host")},
    )
    log.info("notification.delivered", kind=kind, channel_id=global_id, job_try=ctx.get("job_try"))
    return global_id


async def send_otp_via_sms_gateway(ctx: dict, path: str, message: str) -> None:
    """Send an OTP straight to the SMS gateway when the notification service cannot."""
    client: NotificationServiceClient = ctx["notification_service"]
    await client.process("", message, "sms", path, priority=True)
    log.info("otp.gateway_delivered", job_try=ctx.get("job_try"))


# ARQ worker settings
class WorkerSettings:
    """ARQ worker configuration."""

    functions = [deliver_notification, send_otp_via_sms_gateway]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = arq_redis_settings()
    queue_name = settings.default_queue
    max_tries = 5


class HighPriorityWorkerSettings(WorkerSettings):
    """Worker for the high-priority queue (SMS gateway OTP fallback)."""

    queue_name = settings.high_priority_queue
