from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from typing import Callable, Optional

from ..config import EmailConfig
from ..errors import DeliveryError
from .base import Message


logger = logging.getLogger(__name__)


class EmailChannel:
    """
    SMTP delivery to a static recipient list.

    Without recipients or a host the channel is disabled and `send` is a no-op.
    """

    name = "email"

    def __init__(self, config: EmailConfig, *, smtp_factory: Optional[Callable[[], smtplib.SMTP]] = None) -> None:
        self.config = config
        self._smtp_factory = smtp_factory or self._connect

    @property
    def enabled(self) -> bool:
        return bool(self.config.recipients and self.config.host)

    def _connect(self) -> smtplib.SMTP:
        cfg = self.config
        if cfg.secure:
            return smtplib.SMTP_SSL(cfg.host, cfg.port, timeout=cfg.timeout_seconds)
        server = smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout_seconds)
        server.starttls()
        return server

    def build(self, message: Message) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = message.subject
        msg["From"] = self.config.from_address or self.config.user
        msg["To"] = ", ".join(self.config.recipients)
        msg.set_content(message.text)
        return msg

    def send(self, message: Message) -> int:
        if not self.enabled:
            logger.info("Email channel not configured (no host or recipients); skipping.")
            return 0

        msg = self.build(message)
        try:
            with self._smtp_factory() as server:
                if self.config.user:
                    server.login(self.config.user, self.config.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(self.name, str(e), cause=e) from e

        logger.info("Email sent to %d recipient(s): %s", len(self.config.recipients), message.subject)
        return len(self.config.recipients)

    def verify(self) -> None:
        """Open and close a connection (with login when configured). Used by `preflight`."""
        try:
            with self._smtp_factory() as server:
                if self.config.user:
                    server.login(self.config.user, self.config.password)
                server.noop()
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(self.name, f"SMTP check failed: {e}", cause=e) from e
