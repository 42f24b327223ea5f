from __future__ import annotations

import logging
from typing import Optional

import requests

from ..config import SmsConfig
from ..errors import DeliveryError
from .base import Message


logger = logging.getLogger(__name__)


class SmsChannel:
    """
    Twilio Messages REST API, one message per recipient.

    Every recipient is attempted; failures are collected and raised together afterwards.
    """

    name = "sms"

    def __init__(self, config: SmsConfig, *, http: Optional[requests.Session] = None) -> None:
        self.config = config
        self.http = http or requests.Session()

    @property
    def has_credentials(self) -> bool:
        cfg = self.config
        return bool(cfg.account_sid and cfg.auth_token and cfg.from_number)

    @property
    def enabled(self) -> bool:
        return self.has_credentials and bool(self.config.recipients)

    @property
    def messages_url(self) -> str:
        return f"{self.config.api_base.rstrip('/')}/Accounts/{self.config.account_sid}/Messages.json"

    def send(self, message: Message) -> int:
        if not self.has_credentials:
            logger.info("SMS channel not configured (missing Twilio credentials); skipping.")
            return 0
        if not self.config.recipients:
            logger.info("No SMS recipients configured; skipping.")
            return 0

        body = message.short_text or message.text
        sent = 0
        failures: list[str] = []
        for to_number in self.config.recipients:
            try:
                resp = self.http.post(
                    self.messages_url,
                    data={"To": to_number, "From": self.config.from_number, "Body": body},
                    auth=(self.config.account_sid, self.config.auth_token),
                    timeout=self.config.timeout_seconds,
                )
            except requests.RequestException as e:
                failures.append(f"{to_number}: {e}")
                continue
            if resp.status_code >= 400:
                failures.append(f"{to_number}: HTTP {resp.status_code} {(resp.text or '')[:200]}")
                continue
            sent += 1
            try:
                payload = resp.json()
            except ValueError:
                payload = None
            sid = payload.get("sid", "") if isinstance(payload, dict) else ""
            logger.info("SMS sent (sid=%s)", sid or "-")

        if failures:
            raise DeliveryError(self.name, f"{len(failures)} of {len(self.config.recipients)} failed: " + "; ".join(failures))
        return sent
