"""
Communication-channel schemas shared between the server and its clients.

Covers: path types, workflow states and the lifecycle transition table,
notification kinds, bounce kinds, and channel request/response models.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PathType(str, Enum):
    EMAIL = "email"
    PERSONAL_EMAIL = "personal_email"  # stored distinctly, read as EMAIL
    SMS = "sms"
    SLACK = "slack"
    PUSH = "push"
    TWITTER = "twitter"  # deprecated


VALID_PATH_TYPES: frozenset[str] = frozenset(t.value for t in PathType)

# Path types that share one identity for lookups and uniqueness checks.
EMAIL_PATH_TYPES: tuple[str, ...] = (PathType.EMAIL.value, PathType.PERSONAL_EMAIL.value)


class WorkflowState(str, Enum):
    UNCONFIRMED = "unconfirmed"
    ACTIVE = "active"
    RETIRED = "retired"


class ChannelEvent(str, Enum):
    CONFIRM = "confirm"
    RETIRE = "retire"
    REACTIVATE = "reactivate"


class NotificationKind(str, Enum):
    FORGOT_PASSWORD = "forgot_password"
    CONFIRM_REGISTRATION = "confirm_registration"
    CONFIRM_EMAIL = "confirm_email"
    CONFIRM_SMS = "confirm_sms"
    MERGE_NOTIFICATION = "merge_notification"
    OTP = "otp"


class BounceKind(str, Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    SUPPRESSION = "suppression"


class UserState(str, Enum):
    PRE_REGISTERED = "pre_registered"
    CREATION_PENDING = "creation_pending"
    REGISTERED = "registered"
    DELETED = "deleted"


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------

# (current state, event) -> next state. Anything absent is illegal.
CHANNEL_TRANSITIONS: dict[tuple[WorkflowState, ChannelEvent], WorkflowState] = {
    (WorkflowState.UNCONFIRMED, ChannelEvent.CONFIRM): WorkflowState.ACTIVE,
    (WorkflowState.UNCONFIRMED, ChannelEvent.RETIRE): WorkflowState.RETIRED,
    (WorkflowState.ACTIVE, ChannelEvent.RETIRE): WorkflowState.RETIRED,
    (WorkflowState.RETIRED, ChannelEvent.REACTIVATE): WorkflowState.ACTIVE,
}


def normalize_path_type(path_type: Optional[str]) -> Optional[str]:
    """Read-side view of a stored path type: personal_email reads as email."""
    if path_type == PathType.PERSONAL_EMAIL.value:
        return PathType.EMAIL.value
    return path_type


def path_type_group(path_type: str) -> tuple[str, ...]:
    """Stored path types that are equivalent to ``path_type`` for lookups."""
    if normalize_path_type(path_type) == PathType.EMAIL.value:
        return EMAIL_PATH_TYPES
    return (path_type,)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class ChannelCreateRequest(BaseModel):
    """Register a new communication channel for a user."""
    path: str = Field(min_length=1, max_length=255)
    path_type: str = PathType.EMAIL.value
    send_confirmation: bool = False


class ChannelConfirmRequest(BaseModel):
    code: Optional[str] = None
    force: bool = False
    redirect_url: Optional[str] = None


class OtpSendRequest(BaseModel):
    code: str = Field(min_length=4, max_length=16)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class BounceDetailsRead(BaseModel):
    last_bounce_at: Optional[datetime] = None
    last_bounce_summary: Optional[str] = None
    last_bounce_details: Optional[dict[str, Any]] = None
    last_transient_bounce_at: Optional[datetime] = None
    last_transient_bounce_summary: Optional[str] = None
    last_transient_bounce_details: Optional[dict[str, Any]] = None
    last_suppression_bounce_at: Optional[datetime] = None


class ChannelRead(BaseModel):
    """A channel as exposed to callers. The confirmation code is never included."""
    id: str
    user_id: str
    path: str
    path_type: PathType
    path_description: str
    workflow_state: WorkflowState
    position: int
    confirmation_sent_count: int
    bounce_count: int
    bouncing: bool
    otp_impaired: bool = False
    bounces: Optional[BounceDetailsRead] = None  # only for callers allowed to read them
    created_at: datetime
    updated_at: datetime


class ChannelListResponse(BaseModel):
    data: list[ChannelRead]


class MergeCandidateRead(BaseModel):
    user_id: str
    name: str


class MergeCandidateListResponse(BaseModel):
    data: list[MergeCandidateRead]


class ForgotPasswordResponse(BaseModel):
    requested: bool


class ConfirmationSentResponse(BaseModel):
    kind: Optional[NotificationKind] = None  # None when nothing needed sending
    confirmation_sent_count: int


class ChannelConfirmResponse(BaseModel):
    channel: ChannelRead
    redirect_url: Optional[str] = None  # echoed back only when trusted
