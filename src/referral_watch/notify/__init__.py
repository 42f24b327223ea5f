from .base import Channel, Message
from .dispatcher import DispatchReport, NotificationDispatcher, notification_text
from .email import EmailChannel
from .sms import SmsChannel

__all__ = [
    "Channel",
    "DispatchReport",
    "EmailChannel",
    "Message",
    "NotificationDispatcher",
    "SmsChannel",
    "notification_text",
]
