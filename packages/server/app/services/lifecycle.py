"""
Channel lifecycle manager: workflow transitions, confirmation codes, bounce
accounting and merge-candidate discovery for communication channels.

Every write goes through one explicit pipeline:

    prepare   coerce unknown path types to email, ensure a confirmation code
    validate  collect field errors; on any, restore the channel and raise
    persist   save through the record store
    effects   refresh the user's bouncing notice, build notification policies,
              clear cached email lookups

Notifications are dispatched by the calling operation after the pipeline has
committed, so a dispatcher failure never rolls back a state change.
"""

from __future__ import annotations

import secrets
import string
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.orm.attributes import set_committed_value

from app.core.config import Settings, get_settings
from app.core.errors import (
    FieldErrors,
    InvalidTransition,
    LimitExceeded,
    Suppressed,
    UpstreamDeliveryFailure,
    ValidationError,
)
from app.models.account import Account
from app.models.base import as_utc, utcnow
from app.models.communication_channel import (
    BOUNCE_FIELDS,
    BOUNCE_RECORDED_FIELDS,
    MAX_CCS_PER_USER,
    MAX_CONFIRMATION_SENDS,
    RETIRE_THRESHOLD,
    CommunicationChannel,
)
from app.models.user import User
from app.services import paths
from app.services.channel_store import ChannelStore
from app.services.debounce import DebounceCache
from app.services.notifications import NotificationDispatcher
from app.services.trust import RedirectTrustRegistry
from commchannels_shared.schemas.communication_channels import (
    CHANNEL_TRANSITIONS,
    VALID_PATH_TYPES,
    BounceKind,
    ChannelEvent,
    NotificationKind,
    PathType,
    WorkflowState,
)

log = structlog.get_logger()

CODE_ALPHABET = string.ascii_lowercase + string.digits
EMAIL_CODE_LENGTH = 25
SHORT_CODE_LENGTH = 4

DISPLAY_ORDER = [PathType.EMAIL.value, PathType.SMS.value, PathType.PUSH.value]


def generate_confirmation_code(path_type: Optional[str]) -> str:
    """Long codes for links sent by email, short ones for codes typed by hand."""
    length = EMAIL_CODE_LENGTH if path_type in (None, PathType.EMAIL.value) else SHORT_CODE_LENGTH
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def bounce_kind(permanent: bool, suppression: bool) -> BounceKind:
    if permanent and suppression:
        raise ValidationError({"bounce": ["cannot be both permanent and a suppression"]})
    if suppression:
        return BounceKind.SUPPRESSION
    if permanent:
        return BounceKind.PERMANENT
    return BounceKind.TRANSIENT


class ChannelLifecycleManager:
    def __init__(
        self,
        store: ChannelStore,
        dispatcher: NotificationDispatcher,
        cache: DebounceCache,
        *,
        settings: Optional[Settings] = None,
        trust: Optional[RedirectTrustRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.cache = cache
        self.settings = settings or get_settings()
        self.trust = trust or RedirectTrustRegistry()
        self.clock = clock

    # ------------------------------------------------------------------
    # Creation and the save pipeline
    # ------------------------------------------------------------------

    async def register(
        self,
        user: User,
        path: str,
        path_type: str = PathType.EMAIL.value,
        *,
        workflow_state: WorkflowState = WorkflowState.UNCONFIRMED,
    ) -> CommunicationChannel:
        """Create a new channel for ``user``."""
        channel = CommunicationChannel(
            user_id=user.id,
            path=(path or "").strip(),
            path_type=path_type,
            workflow_state=workflow_state.value,
        )
        channel.position = await self.store.next_position(user.id)
        await self._save(channel, user=user)
        log.info(
            "channel.registered",
            channel_id=self.store.global_id(channel),
            path_type=channel.path_type,
            state=channel.workflow_state,
        )
        return channel

    async def _save(
        self,
        channel: CommunicationChannel,
        *,
        before: Optional[dict[str, Any]] = None,
        user: Optional[User] = None,
        reset_code: bool = False,
        code_expires_at: Optional[datetime] = None,
    ) -> CommunicationChannel:
        """Run the prepare → validate → persist → effects pipeline.

        ``before`` is the snapshot taken ahead of any mutation; it is None for
        new channels.
        """
        is_new = before is None

        # prepare
        if channel.path_type not in VALID_PATH_TYPES:
            channel.path_type = PathType.EMAIL.value
        self._set_confirmation_code(channel, reset=reset_code, expires_at=code_expires_at)

        # validate
        if user is None:
            user = await self.store.get_user(channel.user_id)
        errors = await self._validate(channel, user, before)
        if errors:
            self._restore(channel, before)
            errors.raise_if_any()

        # persist
        try:
            await self.store.save(channel)
        except ValidationError:
            self._restore(channel, before)
            raise

        # effects
        await self._after_commit(channel, before, is_new)
        return channel

    async def _validate(
        self,
        channel: CommunicationChannel,
        user: Optional[User],
        before: Optional[dict[str, Any]],
    ) -> FieldErrors:
        errors = FieldErrors()
        is_new = before is None

        if not channel.path:
            errors.add("path", "can't be blank")
        if user is None:
            errors.add("user_id", "can't be blank")
        if errors:
            return errors

        if is_new and await self.store.count_unretired(channel.user_id) >= MAX_CCS_PER_USER:
            errors.add("user_id", "user communication_channels limit exceeded")

        if not channel.retired and await self.store.path_taken(channel):
            errors.add("path", "has already been taken")

        if is_new and channel.kind == PathType.EMAIL.value:
            domain = paths.email_domain(channel.path)
            if domain is None:
                errors.add("email", "is invalid")
            elif domain in await self.store.banned_email_domains(channel.user_id):
                errors.add("email", "is forbidden")

        being_retired = (
            not is_new
            and channel.retired
            and before["workflow_state"] != WorkflowState.RETIRED.value
        )
        if (
            being_retired
            and channel.kind == PathType.SMS.value
            and user.otp_communication_channel_id == channel.id
        ):
            errors.add("workflow_state", "Can't remove a user's SMS that is used for one time passwords")

        return errors

    async def _after_commit(
        self,
        channel: CommunicationChannel,
        before: Optional[dict[str, Any]],
        is_new: bool,
    ) -> None:
        previous_state = None if is_new else before["workflow_state"]
        was_retired = (previous_state or channel.workflow_state) == WorkflowState.RETIRED.value
        previous_bounces = channel.bounce_count if is_new else before["bounce_count"]
        was_bouncing = previous_bounces >= RETIRE_THRESHOLD

        if channel.retired:
            bouncing_changed = not was_retired and was_bouncing
        else:
            bouncing_changed = (was_retired and channel.bouncing) or was_bouncing != channel.bouncing
        if bouncing_changed:
            await self._bouncing_changed(channel)

        if previous_state != WorkflowState.ACTIVE.value and channel.active:
            await self.store.ensure_notification_policies(channel)

        if previous_state != channel.workflow_state and channel.kind == PathType.EMAIL.value:
            await self.cache.clear(f"user_email:{self.store.user_global_id(channel.user_id)}")

    async def _bouncing_changed(self, channel: CommunicationChannel) -> None:
        bouncing = await self.store.refresh_bouncing_notice(channel.user_id)
        log.info(
            "channel.bouncing_changed",
            channel_id=self.store.global_id(channel),
            user_has_bouncing_channel=bouncing,
        )

    @staticmethod
    def _snapshot(channel: CommunicationChannel) -> dict[str, Any]:
        return channel.model_dump()

    @staticmethod
    def _restore(channel: CommunicationChannel, before: Optional[dict[str, Any]]) -> None:
        """Put the snapshot back without touching the database.

        A failed commit leaves the instance expired and detached, so plain
        attribute access would try to refresh it.
        """
        if before is None:
            return
        for field, value in before.items():
            set_committed_value(channel, field, value)

    @staticmethod
    def _set_confirmation_code(
        channel: CommunicationChannel,
        *,
        reset: bool = False,
        expires_at: Optional[datetime] = None,
    ) -> None:
        """Keep the current code unless ``reset``; a reset always yields a different code."""
        previous = channel.confirmation_code
        if reset or not channel.confirmation_code:
            code = generate_confirmation_code(channel.kind)
            while code == previous:
                code = generate_confirmation_code(channel.kind)
            channel.confirmation_code = code
        if reset:
            channel.confirmation_code_expires_at = expires_at

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    async def fire(self, channel: CommunicationChannel, event: ChannelEvent) -> CommunicationChannel:
        """Apply a workflow event, or raise InvalidTransition leaving the channel untouched."""
        current = WorkflowState(channel.workflow_state)
        target = CHANNEL_TRANSITIONS.get((current, event))
        if target is None:
            raise InvalidTransition(current.value, event.value)

        before = self._snapshot(channel)
        channel.workflow_state = target.value
        if event is ChannelEvent.REACTIVATE:
            channel.bounce_count = 0
        await self._save(channel, before=before, reset_code=event is ChannelEvent.CONFIRM)

        log.info(
            "channel.transitioned",
            channel_id=self.store.global_id(channel),
            transition=event.value,
            from_state=current.value,
            to_state=target.value,
        )
        return channel

    async def confirm(self, channel: CommunicationChannel) -> CommunicationChannel:
        return await self.fire(channel, ChannelEvent.CONFIRM)

    async def retire(self, channel: CommunicationChannel) -> CommunicationChannel:
        return await self.fire(channel, ChannelEvent.RETIRE)

    async def reactivate(self, channel: CommunicationChannel) -> CommunicationChannel:
        return await self.fire(channel, ChannelEvent.REACTIVATE)

    async def destroy(self, channel: CommunicationChannel) -> CommunicationChannel:
        """Soft delete: channels are retired, never removed."""
        if channel.retired:
            return channel
        return await self.retire(channel)

    async def reset_bounce_count(self, channel: CommunicationChannel) -> CommunicationChannel:
        before = self._snapshot(channel)
        channel.bounce_count = 0
        await self._save(channel, before=before)
        log.info("channel.bounce_count_reset", channel_id=self.store.global_id(channel))
        return channel

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    async def request_confirmation(
        self,
        channel: CommunicationChannel,
        root_account: Optional[Account] = None,
    ) -> Optional[NotificationKind]:
        """Count one more confirmation send, persist it, then dispatch the message.

        Returns the notification kind dispatched, or None when the channel's
        type and state call for no message.
        """
        channel_id = self.store.global_id(channel)
        if channel.confirmation_limit_reached:
            log.info("confirmation.limit_reached", channel_id=channel_id)
            raise LimitExceeded(
                f"Confirmation already sent {channel.confirmation_sent_count} times "
                f"(limit {MAX_CONFIRMATION_SENDS})"
            )
        if channel.bouncing:
            log.info("confirmation.suppressed", channel_id=channel_id)
            raise Suppressed("Channel is bouncing; confirmation not sent")

        before = self._snapshot(channel)
        channel.confirmation_sent_count += 1
        await self._save(channel, before=before)
        log.info("confirmation.requested", channel_id=channel_id, sent_count=channel.confirmation_sent_count)

        return await self.dispatch_confirmation(channel, root_account)

    async def dispatch_confirmation(
        self,
        channel: CommunicationChannel,
        root_account: Optional[Account] = None,
    ) -> Optional[NotificationKind]:
        """(Re)dispatch the confirmation for the current sent count without counting again."""
        user = await self.store.get_user(channel.user_id)
        kind = self._confirmation_kind(channel, user)
        if kind is None:
            log.info("confirmation.nothing_to_send", channel_id=self.store.global_id(channel))
            return None
        dedupe_key = f"{kind.value}:{self.store.global_id(channel)}:{channel.confirmation_sent_count}"
        await self._dispatch(kind, channel, self._payload(channel, root_account), dedupe_key=dedupe_key)
        return kind

    @staticmethod
    def _confirmation_kind(
        channel: CommunicationChannel, user: Optional[User]
    ) -> Optional[NotificationKind]:
        if user is None:
            return None
        if channel.kind == PathType.EMAIL.value:
            if channel.active or (channel.unconfirmed and (user.pre_registered or user.creation_pending)):
                return NotificationKind.CONFIRM_REGISTRATION
            if channel.unconfirmed and user.registered:
                return NotificationKind.CONFIRM_EMAIL
        elif channel.kind in (PathType.SMS.value, PathType.SLACK.value):
            if channel.unconfirmed and not user.creation_pending:
                return NotificationKind.CONFIRM_SMS
        return None

    async def forgot_password(
        self,
        channel: CommunicationChannel,
        root_account: Optional[Account] = None,
    ) -> bool:
        """Issue a short-lived code and send a password reset, at most once per window."""
        channel_id = self.store.global_id(channel)
        key = f"recent_password_reset:{channel_id}"
        if await self.cache.read_flag(key):
            log.info("password_reset.debounced", channel_id=channel_id)
            return False

        await self.cache.write_flag(key, timedelta(minutes=self.settings.password_reset_resend_minutes))
        before = self._snapshot(channel)
        await self._save(
            channel,
            before=before,
            reset_code=True,
            code_expires_at=self.clock() + timedelta(hours=self.settings.password_reset_code_ttl_hours),
        )
        log.info("password_reset.requested", channel_id=channel_id)
        await self._dispatch(
            NotificationKind.FORGOT_PASSWORD,
            channel,
            self._payload(channel, root_account),
            dedupe_key=f"{NotificationKind.FORGOT_PASSWORD.value}:{channel_id}:{channel.confirmation_code}",
        )
        return True

    async def send_merge_notification(
        self,
        channel: CommunicationChannel,
        root_account: Optional[Account] = None,
    ) -> bool:
        if channel.kind != PathType.EMAIL.value:
            return False
        await self._dispatch(NotificationKind.MERGE_NOTIFICATION, channel, self._payload(channel, root_account))
        return True

    async def send_otp(
        self,
        channel: CommunicationChannel,
        code: str,
        account: Optional[Account] = None,
    ) -> None:
        """Deliver a one-time password over SMS or email."""
        message = f"Your verification code is {code}"
        payload = self._payload(channel, account)
        payload["verification_code"] = code

        if channel.kind == PathType.SMS.value:
            e164 = self.e164_representation(channel.path)
            if (
                self.settings.mfa_via_sms
                and e164
                and account is not None
                and account.feature_enabled("notification_service")
            ):
                payload.update(target=e164, message=message)
                await self._dispatch(NotificationKind.OTP, channel, payload)
            else:
                await self.dispatcher.send_via_sms_gateway(channel, message)
        elif channel.kind == PathType.EMAIL.value:
            await self._dispatch(NotificationKind.OTP, channel, payload)
        else:
            raise ValidationError({"path_type": [f"OTP not supported for {channel.kind}"]})

        log.info("otp.sent", channel_id=self.store.global_id(channel), path_type=channel.kind)

    def _payload(self, channel: CommunicationChannel, root_account: Optional[Account]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "channel_id": self.store.global_id(channel),
            "user_id": self.store.user_global_id(channel.user_id),
            "path": channel.path,
            "path_type": channel.kind,
            "confirmation_code": channel.confirmation_code,
        }
        if root_account is not None:
            payload["root_account_id"] = str(root_account.id)
            payload["from_host"] = root_account.host
        return payload

    async def _dispatch(
        self,
        kind: NotificationKind,
        channel: CommunicationChannel,
        payload: dict[str, Any],
        *,
        dedupe_key: Optional[str] = None,
    ) -> None:
        try:
            await self.dispatcher.send(kind, channel, payload, dedupe_key=dedupe_key)
        except UpstreamDeliveryFailure:
            log.warning(
                "notification.dispatch_failed",
                kind=kind.value,
                channel_id=self.store.global_id(channel),
            )
            raise

    # ------------------------------------------------------------------
    # Bounces
    # ------------------------------------------------------------------

    async def record_bounce(
        self,
        path: str,
        path_type: str,
        timestamp: datetime,
        details: Optional[dict[str, Any]] = None,
        *,
        permanent: bool = False,
        suppression: bool = False,
    ) -> int:
        """Apply a bounce to every eligible channel on ``path`` across its shards.

        Returns the number of channels updated.
        """
        kind = bounce_kind(permanent, suppression)
        shards = self.store.associated_shards(path)
        if kind is BounceKind.PERMANENT and len(shards) > self.settings.max_shards_for_bounces:
            log.info("bounce.fanout_skipped", kind=kind.value, shards=len(shards))
            return 0

        now = self.clock()
        cutoff = now - timedelta(minutes=self.settings.bounce_debounce_minutes)
        updated = 0
        for shard in shards:
            async for batch in self.store.bouncable_id_batches(
                shard, path, path_type, kind, cutoff, self.settings.bounce_batch_size
            ):
                updated += await self.store.apply_bounce(
                    shard, batch, kind, timestamp, details, cutoff=cutoff, now=now
                )
                if kind is BounceKind.PERMANENT:
                    for channel in await self.store.get_many(shard, batch):
                        await self._bouncing_changed(channel)

        log.info("bounce.recorded", kind=kind.value, path_type=path_type, shards=len(shards), updated=updated)
        return updated

    async def apply_bounce(
        self,
        channel: CommunicationChannel,
        timestamp: datetime,
        details: Optional[dict[str, Any]] = None,
        *,
        permanent: bool = False,
        suppression: bool = False,
    ) -> bool:
        """Apply a bounce to one known channel. Returns False when debounced."""
        kind = bounce_kind(permanent, suppression)
        now = self.clock()
        cutoff = now - timedelta(minutes=self.settings.bounce_debounce_minutes)
        last = as_utc(getattr(channel, BOUNCE_RECORDED_FIELDS[kind]))
        if last is not None and last >= cutoff:
            log.info("bounce.debounced", kind=kind.value, channel_id=self.store.global_id(channel))
            return False

        before = self._snapshot(channel)
        setattr(channel, BOUNCE_FIELDS[kind], timestamp)
        setattr(channel, BOUNCE_RECORDED_FIELDS[kind], now)
        if kind is BounceKind.PERMANENT:
            channel.bounce_count += 1
            channel.last_bounce_details = details
        elif kind is BounceKind.TRANSIENT:
            channel.last_transient_bounce_details = details
        await self._save(channel, before=before)
        log.info(
            "bounce.applied",
            kind=kind.value,
            channel_id=self.store.global_id(channel),
            bounce_count=channel.bounce_count,
        )
        return True

    # ------------------------------------------------------------------
    # Merge candidates
    # ------------------------------------------------------------------

    async def find_merge_candidates(
        self,
        channel: CommunicationChannel,
        stop_at_first: bool = False,
    ) -> list[User]:
        """Other users with an active channel on the same path who can log in."""
        if channel.kind == PathType.PUSH.value:
            return []

        if self.settings.cross_shard_invitations:
            shards = self.store.associated_shards(channel.path)
        else:
            shards = [self.store.shard_of(channel)]
        limit = self.settings.merge_candidate_search_limit

        qualified: dict[uuid.UUID, bool] = {}
        candidates: list[User] = []
        for shard in shards:
            matches = await self.store.find_by_path(
                shard,
                channel.path,
                channel.kind,
                [WorkflowState.ACTIVE.value],
                exclude_user_id=channel.user_id,
                limit=limit + 1,
            )
            if len(matches) > limit:
                log.info("merge_candidates.too_many", channel_id=self.store.global_id(channel), shard=shard.id)
                return []

            for match in matches:
                if match.user_id in qualified:
                    continue
                user = await self.store.get_user(match.user_id)
                ok = user is not None and await self.store.user_has_active_login(match.user_id)
                qualified[match.user_id] = ok
                if not ok:
                    continue
                if stop_at_first:
                    return [user]
                candidates.append(user)
        return candidates

    async def has_merge_candidates(self, channel: CommunicationChannel) -> bool:
        return bool(await self.find_merge_candidates(channel, stop_at_first=True))

    # ------------------------------------------------------------------
    # Queries and helpers
    # ------------------------------------------------------------------

    async def find_by_confirmation_code(self, code: str) -> Optional[CommunicationChannel]:
        return await self.store.find_by_confirmation_code(code)

    async def list_for_display(self, user: User, *, slack_enabled: bool = False) -> list[CommunicationChannel]:
        """Unretired channels ordered by type (email, sms, push[, slack]) then position."""
        order = DISPLAY_ORDER + ([PathType.SLACK.value] if slack_enabled else [])
        return await self.store.list_for_display(user.id, order)

    async def user_can_have_more_channels(self, user: User, account: Account) -> bool:
        limit = account.max_communication_channels
        if not limit:
            return True
        recent = await self.store.count_recent(user.id, self.clock() - timedelta(hours=1))
        return recent < limit

    def trusted_confirmation_redirect(self, account: Optional[Account], redirect_url: str) -> bool:
        return self.trust.is_trusted(account, redirect_url)

    def e164_representation(self, path: str) -> Optional[str]:
        return paths.e164_representation(path, self.settings.default_country_code)

    def otp_impaired(self, channel: CommunicationChannel) -> bool:
        return paths.otp_impaired(channel.kind, channel.path, self.settings.default_country_code)
