"""Notification policy model: how often a channel receives a category of notification."""

import uuid

from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin

# Built for a channel the first time it becomes active.
DEFAULT_POLICIES: dict[str, str] = {
    "registration": "immediately",
    "account_notification": "immediately",
    "announcement": "immediately",
    "due_date": "weekly",
    "grading": "daily",
    "conversation_message": "immediately",
}


class NotificationPolicy(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "notification_policies"

    communication_channel_id: uuid.UUID = Field(
        foreign_key="communication_channels.id", nullable=False, index=True
    )
    category: str = Field(nullable=False)
    frequency: str = Field(nullable=False)  # immediately | daily | weekly | never
