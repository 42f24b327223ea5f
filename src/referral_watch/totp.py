from __future__ import annotations

import base64
import binascii
import re
from datetime import datetime, timezone
from typing import Optional, Union

import pyotp

from .errors import InvalidSecret


STEP_SECONDS = 30
DIGITS = 6

_WHITESPACE_RE = re.compile(r"[\s-]+")


def normalize_secret(secret: str) -> str:
    """
    Authenticator apps display secrets in groups ("ru4s zcaw ...") and sometimes lowercase.
    Strip separators and uppercase; padding is checked here and re-added by pyotp.
    """
    s = _WHITESPACE_RE.sub("", secret or "").upper().rstrip("=")
    if not s:
        raise InvalidSecret("TOTP secret is empty")
    padded = s + "=" * (-len(s) % 8)
    try:
        base64.b32decode(padded, casefold=False)
    except (binascii.Error, ValueError) as e:
        raise InvalidSecret(f"TOTP secret is not valid base32 ({e})") from e
    return s


def generate(secret: str, for_time: Optional[Union[datetime, float, int]] = None) -> str:
    """
    Return the RFC 6238 code (30s step, 6 digits, SHA-1) for the window containing `for_time`.

    `for_time` defaults to now. Two calls inside the same 30-second window return the same code.
    """
    totp = pyotp.TOTP(normalize_secret(secret), digits=DIGITS, interval=STEP_SECONDS)
    if for_time is None:
        for_time = datetime.now(timezone.utc)
    return totp.at(for_time)


def seconds_remaining(for_time: Optional[datetime] = None) -> int:
    now = for_time or datetime.now(timezone.utc)
    return STEP_SECONDS - int(now.timestamp()) % STEP_SECONDS


def mask(code: str) -> str:
    return f"{code[:2]}****{code[-2:]}" if len(code) >= 4 else "***"
