from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

from ..config import AppConfig
from ..logging_config import log_event
from ..models import CandidateReferral, ReferralRecord
from .base import Channel, Message
from .email import EmailChannel
from .sms import SmsChannel


logger = logging.getLogger(__name__)


@dataclass
class DispatchReport:
    sent: dict[str, int] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


def notification_text(referral: ReferralRecord) -> str:
    """The line stored in the notification ledger for one new referral."""
    return f"New referral for {referral.member_name} ({referral.service_name}) received on {referral.request_on}"


def referral_message(referral: ReferralRecord) -> Message:
    text = (
        f"New referral received for {referral.member_name} (ID: {referral.member_id}).\n\n"
        f"Service: {referral.service_name}\n"
        f"Region: {referral.region_name}\n"
        f"County: {referral.county}\n"
        f"Plan: {referral.plan}\n"
        f"Preferred Start Date: {referral.preferred_start_date}\n"
        f"Status: {referral.status}"
    )
    short = (
        f"New referral: {referral.member_name} ({referral.member_id}) for {referral.service_name}. "
        "Check dashboard for details."
    )
    return Message(subject="New Referral Notification", text=text, short_text=short)


def digest_message(members: Sequence[CandidateReferral]) -> Message:
    lines = ["Current Members in Referrals:", ""]
    for i, m in enumerate(members, start=1):
        lines.append(f"Member {i}:")
        lines.append(f"Name: {m.member_name}")
        lines.append(f"ID: {m.member_id}")
        if m.service_name:
            lines.append(f"Service: {m.service_name}")
        if m.status:
            lines.append(f"Status: {m.status}")
        if m.request_on:
            lines.append(f"Request Date: {m.request_on}")
        lines.append("")
    return Message(subject="Referrals - Current Members", text="\n".join(lines))


class NotificationDispatcher:
    """
    Fan a message out to every channel, best-effort.

    A failing channel is logged and recorded in the report; it never stops the other channels and
    `dispatch` never raises.
    """

    def __init__(self, channels: Sequence[Channel]) -> None:
        self.channels = list(channels)

    @classmethod
    def from_config(cls, config: AppConfig) -> "NotificationDispatcher":
        return cls([EmailChannel(config.email), SmsChannel(config.sms)])

    def dispatch(self, referral: ReferralRecord, *, only: Sequence[str] = ()) -> DispatchReport:
        """Notify about one new referral. `only` limits delivery to the named channels."""
        channels = [c for c in self.channels if not only or c.name in only]
        return self.send(referral_message(referral), channels=channels, referral_id=referral.id)

    def dispatch_digest(self, members: Sequence[CandidateReferral]) -> DispatchReport:
        """Summary email for referrals found in the portal's list view (email only)."""
        if not members:
            return DispatchReport()
        message = digest_message(members)
        return self.send(message, channels=[c for c in self.channels if c.name == "email"])

    def send(self, message: Message, *, channels: Optional[Sequence[Channel]] = None, **context) -> DispatchReport:
        report = DispatchReport()
        for channel in self.channels if channels is None else channels:
            try:
                report.sent[channel.name] = channel.send(message)
            except Exception as e:
                report.failed[channel.name] = str(e)
                log_event(
                    logger,
                    "notification.failed",
                    level=logging.ERROR,
                    channel=channel.name,
                    error=str(e),
                    **context,
                )
        return report
