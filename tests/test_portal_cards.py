from __future__ import annotations

from referral_watch.portal.client import cards_to_candidates


def test_cards_map_to_candidates_keyed_by_referral_number() -> None:
    cards = [
        {
            "memberName": "Jane Doe",
            "serviceName": "Personal Care",
            "regionName": "East",
            "county": "Knox",
            "plan": "CHOICES",
            "status": "New",
            "details": {"Referral #": "R-100", "Requested On": "01/02/2024 09:15 AM", "Phone": "555"},
        },
        {"memberName": "No Number", "details": {"Requested On": "01/02/2024"}},
        {"memberName": "", "details": {"Referral #:": "R-101"}},
    ]

    out = cards_to_candidates(cards)

    assert [c.member_id for c in out] == ["R-100", "R-101"]
    first = out[0]
    assert first.request_on == "01/02/2024 09:15 AM"
    assert first.county == "Knox"
    assert first.status == "New"
    assert out[1].member_name == "Unknown"
    assert out[1].request_on == ""
