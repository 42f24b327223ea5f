from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .util.dates import parse_timestamp, utcnow


class CandidateReferral(BaseModel):
    """
    One referral as returned by the portal's referral API (or scraped from the referral list).

    Field names follow the API's camelCase via aliases; Python code uses snake_case.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    member_name: str = Field(default="", alias="memberName")
    member_id: str = Field(alias="memberID")
    service_name: str = Field(default="", alias="serviceName")
    region_name: str = Field(default="", alias="regionName")
    county: str = ""
    plan: str = ""
    preferred_start_date: str = Field(default="", alias="preferredStartDate")
    status: str = ""
    request_on: str = Field(alias="requestOn")

    def natural_key(self) -> tuple[str, str]:
        # Identity across fetches. `request_on` is kept verbatim (opaque token).
        return (self.member_id, self.request_on)

    def creation_token(self) -> "CreationToken":
        return CreationToken(self.request_on)


class ReferralRecord(BaseModel):
    id: int
    member_name: str = ""
    member_id: str
    service_name: str = ""
    region_name: str = ""
    county: str = ""
    plan: str = ""
    preferred_start_date: str = ""
    status: str = ""
    request_on: str
    source: Literal["api", "ui"] = "api"
    notified: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class NotificationRecord(BaseModel):
    id: int
    referral_id: int
    member_name: str
    member_id: str
    message: str
    created_at: datetime = Field(default_factory=utcnow)


class CreationToken:
    """
    Ordering view over a referral's `requestOn`.

    Total order: tokens that parse as timestamps compare by instant; an unparseable token sorts
    after every timestamp, so it is never considered "already seen" by the watermark.
    Identity never uses this type; natural keys keep the raw string.
    """

    __slots__ = ("raw", "instant")

    def __init__(self, raw: str) -> None:
        self.raw = raw
        self.instant: Optional[datetime] = parse_timestamp(raw)

    def _key(self) -> tuple[int, datetime, str]:
        if self.instant is None:
            return (1, datetime.min, self.raw)
        return (0, self.instant.replace(tzinfo=None), self.raw)

    def __lt__(self, other: "CreationToken") -> bool:
        return self._key() < other._key()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, CreationToken) and self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def is_after(self, watermark: datetime) -> bool:
        if self.instant is None:
            return True
        return self.instant > watermark

    def __repr__(self) -> str:
        return f"CreationToken({self.raw!r})"
