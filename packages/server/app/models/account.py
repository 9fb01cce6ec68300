"""Root account model."""

from typing import Any, Optional

from sqlmodel import Field, SQLModel

from .base import JSONType, TimestampMixin, UUIDMixin


class Account(UUIDMixin, TimestampMixin, SQLModel, table=True):
    __tablename__ = "accounts"

    name: str = Field(nullable=False, index=True)
    # banned_email_domains: list[str], max_communication_channels: int,
    # features: {"notification_service": bool}, host: str
    settings: dict = Field(default_factory=dict, sa_type=JSONType, nullable=False)

    @property
    def banned_email_domains(self) -> list[str]:
        return [d.lower() for d in self.settings.get("banned_email_domains") or []]

    @property
    def max_communication_channels(self) -> Optional[int]:
        return self.settings.get("max_communication_channels")

    @property
    def host(self) -> Optional[str]:
        return self.settings.get("host")

    def feature_enabled(self, feature: str) -> bool:
        features: dict[str, Any] = self.settings.get("features") or {}
        return bool(features.get(feature))
