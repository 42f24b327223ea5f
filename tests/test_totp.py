from __future__ import annotations

from datetime import datetime, timezone

import pytest

from referral_watch import totp
from referral_watch.errors import InvalidSecret


# RFC 6238 test key "12345678901234567890" (SHA-1), base32 encoded.
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.mark.parametrize(
    "ts,expected",
    [
        (59, "287082"),
        (1111111109, "081804"),
        (1111111111, "050471"),
    ],
)
def test_generate_matches_rfc6238_vectors(ts: int, expected: str) -> None:
    assert totp.generate(RFC_SECRET, ts) == expected


def test_generate_is_stable_within_one_window() -> None:
    start = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
    end = datetime(2024, 1, 1, 0, 0, 29, tzinfo=timezone.utc)
    nxt = datetime(2024, 1, 1, 0, 0, 30, tzinfo=timezone.utc)

    assert totp.generate(RFC_SECRET, start) == totp.generate(RFC_SECRET, end)
    assert totp.generate(RFC_SECRET, start) != totp.generate(RFC_SECRET, nxt)


def test_secret_formatting_is_tolerated() -> None:
    grouped = "gezd gnbv gy3t qojq gezd gnbv gy3t qojq"
    assert totp.normalize_secret(grouped) == RFC_SECRET
    assert totp.generate(grouped, 59) == "287082"


@pytest.mark.parametrize("bad", ["", "   ", "not-base32!!", "18901890"])
def test_invalid_secret_raises(bad: str) -> None:
    with pytest.raises(InvalidSecret):
        totp.generate(bad, 59)


def test_seconds_remaining_and_mask() -> None:
    t = datetime(2024, 1, 1, 0, 0, 10, tzinfo=timezone.utc)
    assert totp.seconds_remaining(t) == 20
    assert totp.mask("123456") == "12****56"
    assert "3" not in totp.mask("123456")
