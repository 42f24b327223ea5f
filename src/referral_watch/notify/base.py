from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class Message:
    """One notification. Email uses `subject` + `text`; SMS sends `short_text` (falls back to `text`)."""

    subject: str
    text: str
    short_text: str = ""


class Channel(Protocol):
    name: str

    @property
    def enabled(self) -> bool: ...

    def send(self, message: Message) -> int:
        """Deliver to every configured recipient; return how many were sent. Raises `DeliveryError`."""
        ...
