from __future__ import annotations

from datetime import datetime, timezone

from referral_watch.models import CandidateReferral, CreationToken


WATERMARK = datetime(2023, 12, 31, 0, 0, 0, tzinfo=timezone.utc)


def test_candidate_accepts_api_field_names() -> None:
    c = CandidateReferral.model_validate(
        {
            "memberName": "Jane Doe",
            "memberID": "A1",
            "serviceName": "Personal Care",
            "requestOn": "2024-01-01T00:00:00Z",
            "unexpected": "ignored",
        }
    )
    assert c.member_name == "Jane Doe"
    assert c.natural_key() == ("A1", "2024-01-01T00:00:00Z")
    assert c.county == ""


def test_creation_token_orders_by_instant_across_formats() -> None:
    iso = CreationToken("2024-01-01T08:30:00.000+0000")
    us = CreationToken("01/01/2024 09:00 AM")
    offset = CreationToken("2024-01-01T04:00:00-05:00")  # 09:00Z

    assert iso < us
    assert us.instant == offset.instant
    assert sorted([us, iso]) == [iso, us]


def test_creation_token_against_watermark() -> None:
    assert CreationToken("2024-01-01T00:00:00Z").is_after(WATERMARK)
    assert not CreationToken("2023-12-30T23:59:59Z").is_after(WATERMARK)
    # Equal to the watermark is not newer.
    assert not CreationToken("2023-12-31T00:00:00Z").is_after(WATERMARK)


def test_unparseable_token_is_never_before_the_watermark() -> None:
    odd = CreationToken("REQ-42")
    assert odd.instant is None
    assert odd.is_after(WATERMARK)
    assert CreationToken("2099-01-01T00:00:00Z") < odd
