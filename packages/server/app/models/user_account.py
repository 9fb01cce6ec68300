"""User ↔ root account association (join table)."""

import uuid

from sqlmodel import Field, SQLModel


class UserAccount(SQLModel, table=True):
    __tablename__ = "user_accounts"

    user_id: uuid.UUID = Field(foreign_key="users.id", primary_key=True)
    account_id: uuid.UUID = Field(foreign_key="accounts.id", primary_key=True)
