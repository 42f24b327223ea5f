from __future__ import annotations

import pytest

from referral_watch.errors import ChallengeSelectionFailed, StrategiesExhausted
from referral_watch.strategies import Strategy, match_preferred, run_strategies


def test_first_success_short_circuits() -> None:
    calls: list[str] = []

    def _ok(name: str, value):
        def fn():
            calls.append(name)
            return value

        return fn

    out = run_strategies(
        [Strategy("a", _ok("a", None)), Strategy("b", _ok("b", "picked")), Strategy("c", _ok("c", "late"))],
        what="pick",
    )
    assert out == "picked"
    assert calls == ["a", "b"]


def test_exception_does_not_abort_sequence() -> None:
    def boom():
        raise RuntimeError("locator detached")

    assert run_strategies([Strategy("boom", boom), Strategy("ok", lambda: True)], what="click") is True


def test_exhaustion_collects_every_failure() -> None:
    def boom():
        raise ValueError("nope")

    with pytest.raises(ChallengeSelectionFailed) as ei:
        run_strategies(
            [Strategy("attribute", boom), Strategy("label", lambda: False)],
            what="select the challenge",
            error_cls=ChallengeSelectionFailed,
        )
    err = ei.value
    assert isinstance(err, StrategiesExhausted)
    assert [name for name, _ in err.failures] == ["attribute", "label"]
    assert "ValueError: nope" in str(err)
    assert "label: no match" in str(err)


def test_match_preferred_uses_needle_priority() -> None:
    options = ["Other Org", "Acme Holdings", "Acme Home Care LLC"]
    assert match_preferred(options, ["Acme Home Care", "Acme"]) == 2
    assert match_preferred(options, ["acme"]) == 1
    assert match_preferred(options, ["Missing"]) is None
    assert match_preferred(options, []) is None
