"""Bounce webhook schemas."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from .communication_channels import BounceKind, PathType


class BounceReport(BaseModel):
    """A delivery-failure report from a mail/SMS provider."""
    path: str = Field(min_length=1, max_length=255)
    path_type: str = PathType.EMAIL.value
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    details: Optional[dict[str, Any]] = None
    permanent: bool = False
    suppression: bool = False
    # Set when the provider identifies the exact channel; otherwise every channel on the path
    channel_id: Optional[str] = None

    @model_validator(mode="after")
    def _single_kind(self) -> "BounceReport":
        if self.permanent and self.suppression:
            raise ValueError("a bounce is either permanent or suppression, not both")
        return self

    @property
    def kind(self) -> BounceKind:
        if self.suppression:
            return BounceKind.SUPPRESSION
        if self.permanent:
            return BounceKind.PERMANENT
        return BounceKind.TRANSIENT


class BounceRecordedResponse(BaseModel):
    kind: BounceKind
    updated: int
