"""Login credential model (a user's way of signing in to a root account)."""

import uuid

from sqlmodel import Field, SQLModel

from .base import TimestampMixin, UUIDMixin


class Login(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "logins"

    user_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)
    account_id: uuid.UUID = Field(foreign_key="accounts.id", nullable=False, index=True)
    unique_id: str = Field(nullable=False)
    workflow_state: str = Field(default="active", nullable=False)  # active | deleted
