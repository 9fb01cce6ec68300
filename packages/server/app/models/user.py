"""User model."""

from typing import Optional
import uuid

from sqlmodel import Field, SQLModel

from commchannels_shared.schemas.communication_channels import UserState

from .base import TimestampMixin, UUIDMixin


class User(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "users"

    name: str = Field(nullable=False)
    workflow_state: str = Field(default=UserState.REGISTERED.value, nullable=False)
    otp_communication_channel_id: Optional[uuid.UUID] = Field(default=None)
    # Set while any unretired channel of this user is bouncing.
    has_bouncing_channel: bool = Field(default=False, nullable=False)

    @property
    def pre_registered(self) -> bool:
        return self.workflow_state == UserState.PRE_REGISTERED.value

    @property
    def creation_pending(self) -> bool:
        return self.workflow_state == UserState.CREATION_PENDING.value

    @property
    def registered(self) -> bool:
        return self.workflow_state == UserState.REGISTERED.value
