"""Communication channel model: a user's registered contact endpoint."""

from datetime import datetime
from typing import Any, Optional
import uuid

import sqlalchemy as sa
from sqlmodel import Field, SQLModel

from commchannels_shared.schemas.communication_channels import (
    BounceKind,
    PathType,
    WorkflowState,
    normalize_path_type,
)

from .base import JSONType, TimestampMixin, UUIDMixin

RETIRE_THRESHOLD = 1
MAX_CCS_PER_USER = 100
MAX_CONFIRMATION_SENDS = 2

# Column holding the provider-reported time of each kind of bounce.
BOUNCE_FIELDS: dict[BounceKind, str] = {
    BounceKind.PERMANENT: "last_bounce_at",
    BounceKind.TRANSIENT: "last_transient_bounce_at",
    BounceKind.SUPPRESSION: "last_suppression_bounce_at",
}

# Column stamped with processing time for each kind; the debounce window is measured on it.
BOUNCE_RECORDED_FIELDS: dict[BounceKind, str] = {
    BounceKind.PERMANENT: "bounce_recorded_at",
    BounceKind.TRANSIENT: "transient_bounce_recorded_at",
    BounceKind.SUPPRESSION: "suppression_bounce_recorded_at",
}


def _diagnostic_code(details: Optional[dict[str, Any]]) -> Optional[str]:
    recipients = (details or {}).get("bouncedRecipients") or []
    if not recipients or not isinstance(recipients[0], dict):
        return None
    return recipients[0].get("diagnosticCode")


class CommunicationChannel(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "communication_channels"
    user_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)
    path: str = Field(nullable=False)
    path_type: str = Field(default=PathType.EMAIL.value, nullable=False)  # raw; see `kind`
    workflow_state: str = Field(default=WorkflowState.UNCONFIRMED.value, nullable=False)
    position: int = Field(default=1, nullable=False)

    confirmation_code: Optional[str] = Field(default=None, index=True)
    confirmation_code_expires_at: Optional[datetime] = Field(
        default=None, sa_type=sa.DateTime(timezone=True)
    )
    confirmation_sent_count: int = Field(default=0, nullable=False)

    bounce_count: int = Field(default=0, nullable=False)
    last_bounce_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    last_bounce_details: Optional[dict] = Field(default=None, sa_type=JSONType)
    last_transient_bounce_at: Optional[datetime] = Field(
        default=None, sa_type=sa.DateTime(timezone=True)
    )
    last_transient_bounce_details: Optional[dict] = Field(default=None, sa_type=JSONType)
    last_suppression_bounce_at: Optional[datetime] = Field(
        default=None, sa_type=sa.DateTime(timezone=True)
    )
    bounce_recorded_at: Optional[datetime] = Field(default=None, sa_type=sa.DateTime(timezone=True))
    transient_bounce_recorded_at: Optional[datetime] = Field(
        default=None, sa_type=sa.DateTime(timezone=True)
    )
    suppression_bounce_recorded_at: Optional[datetime] = Field(
        default=None, sa_type=sa.DateTime(timezone=True)
    )

    @property
    def kind(self) -> str:
        """The path type as read by the application (personal_email reads as email)."""
        return normalize_path_type(self.path_type)

    @property
    def unconfirmed(self) -> bool:
        return self.workflow_state == WorkflowState.UNCONFIRMED.value

    @property
    def active(self) -> bool:
        return self.workflow_state == WorkflowState.ACTIVE.value

    @property
    def retired(self) -> bool:
        return self.workflow_state == WorkflowState.RETIRED.value

    @property
    def bouncing(self) -> bool:
        return self.bounce_count >= RETIRE_THRESHOLD

    @property
    def confirmation_limit_reached(self) -> bool:
        """True when one more confirmation send would exceed the limit."""
        return self.confirmation_sent_count + 1 > MAX_CONFIRMATION_SENDS

    @property
    def path_description(self) -> str:
        if self.kind == PathType.PUSH.value:
            return "For All Devices"
        return self.path

    @property
    def last_bounce_summary(self) -> Optional[str]:
        return _diagnostic_code(self.last_bounce_details)

    @property
    def last_transient_bounce_summary(self) -> Optional[str]:
        return _diagnostic_code(self.last_transient_bounce_details)
