from __future__ import annotations

import logging

import pytest

from referral_watch import totp
from referral_watch.errors import (
    ChallengeRejected,
    ChallengeSelectionFailed,
    LoginFailed,
    NavigationFailed,
    ProvisioningError,
)
from referral_watch.portal.client import ChallengeOutcome, LoginOutcome
from referral_watch.session import SessionState


def _transitions(caplog: pytest.LogCaptureFixture) -> list[str]:
    out = []
    for r in caplog.records:
        if getattr(r, "event", None) == "session.transition":
            out.append(r.fields["to"])
    return out


def test_dashboard_login_authenticates_and_navigates(portal, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    mgr = portal.manager()

    session = mgr.ensure()

    assert mgr.state is SessionState.AUTHENTICATED
    assert session.cookie_header == "JSESSIONID=s1; XSRF-TOKEN=tok"
    assert mgr.session_cookies() == "JSESSIONID=s1; XSRF-TOKEN=tok"
    assert mgr.navigation_complete
    client = portal.clients[0]
    assert client.calls[:2] == ["submit_credentials", "detect_login_outcome"]
    assert "navigate" in client.calls
    assert _transitions(caplog) == ["opening", "awaiting_credentials", "authenticated"]

    # Already authenticated: no second login.
    mgr.ensure()
    assert len(portal.agents) == 1


def test_challenge_selection_falls_back_in_order(portal) -> None:
    portal.next_client.login_outcome = LoginOutcome.CHALLENGE
    portal.next_client.attribute_ok = None  # raises
    portal.next_client.label_ok = False
    portal.next_client.fillable = {'input[type="text"]'}
    mgr = portal.manager()

    mgr.ensure()

    client = portal.clients[0]
    picks = [c for c in client.calls if c.startswith(("attribute:", "label:", "first"))]
    assert picks == ["attribute:authenticator_app", "label:authenticator_app", "first"]
    expected = totp.generate(portal.config.totp_secret, mgr._clock())
    assert client.codes == [expected]
    assert client.calls.index("continue") > client.calls.index("first")
    assert mgr.state is SessionState.AUTHENTICATED


def test_challenge_selection_exhausted_closes_session(portal) -> None:
    portal.next_client.login_outcome = LoginOutcome.CHALLENGE
    portal.next_client.attribute_ok = False
    portal.next_client.label_ok = False
    portal.next_client.first_ok = False
    mgr = portal.manager()

    with pytest.raises(ChallengeSelectionFailed) as ei:
        mgr.ensure()

    assert [name for name, _ in ei.value.failures] == ["attribute locator", "label text", "first option"]
    assert mgr.state is SessionState.CLOSED
    assert portal.agents[0].closed
    assert "save_debug:login_failed" in portal.clients[0].calls


def test_rejected_code_is_retried_once_in_the_next_window(portal) -> None:
    client = portal.next_client
    client.login_outcome = LoginOutcome.CHALLENGE
    client.challenge_results = [ChallengeOutcome(False, "Invalid code"), ChallengeOutcome(True)]
    mgr = portal.manager()

    mgr.ensure()

    assert len(client.codes) == 2
    # Clock is 10s into a window: wait out the remaining 20s plus one.
    assert portal.sleeps == [21]
    assert mgr.state is SessionState.AUTHENTICATED


def test_rejected_twice_raises_challenge_rejected(portal) -> None:
    client = portal.next_client
    client.login_outcome = LoginOutcome.CHALLENGE
    client.challenge_results = [ChallengeOutcome(False, "Invalid code"), ChallengeOutcome(False, "Invalid code")]
    mgr = portal.manager()

    with pytest.raises(ChallengeRejected) as ei:
        mgr.ensure()

    assert ei.value.message == "Invalid code"
    assert mgr.state is SessionState.CLOSED
    assert portal.agents[0].closed


def test_backup_code_is_spent_even_when_rejected(portal) -> None:
    portal.store.add_backup_codes(["11111111", "22222222"])
    client = portal.next_client
    client.login_outcome = LoginOutcome.CHALLENGE
    client.challenge_results = [ChallengeOutcome(False, "Code already used")]
    mgr = portal.manager(mfa_method="backup_code")

    with pytest.raises(ChallengeRejected):
        mgr.ensure()

    assert client.codes == ["11111111"]
    assert "attribute:backup_code" in client.calls
    assert portal.store.next_backup_code() == "22222222"

    portal.next_client.login_outcome = LoginOutcome.CHALLENGE
    mgr.ensure()
    assert portal.clients[1].codes == ["22222222"]
    assert portal.store.next_backup_code() is None


def test_no_backup_codes_left(portal) -> None:
    portal.next_client.login_outcome = LoginOutcome.CHALLENGE
    mgr = portal.manager(mfa_method="backup_code")
    with pytest.raises(ChallengeSelectionFailed, match="backup code"):
        mgr.ensure()
    assert mgr.state is SessionState.CLOSED


def test_unknown_status_falls_back_to_url(portal) -> None:
    portal.next_client.login_outcome = LoginOutcome.UNKNOWN
    portal.next_client.url = "https://portal.example.com/availity/web/public.elegant.login?error=1"
    mgr = portal.manager()
    with pytest.raises(LoginFailed):
        mgr.ensure()
    assert mgr.state is SessionState.CLOSED

    portal.next_client.login_outcome = LoginOutcome.UNKNOWN
    portal.next_client.url = "https://portal.example.com/public/apps/home"
    mgr.ensure()
    assert mgr.state is SessionState.AUTHENTICATED


def test_provisioning_failure_returns_to_closed(portal) -> None:
    portal.fail_open = True
    mgr = portal.manager()
    with pytest.raises(ProvisioningError):
        mgr.ensure()
    assert mgr.state is SessionState.CLOSED


def test_invalidate_then_reopen_from_closed(portal, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    mgr = portal.manager()
    mgr.ensure()

    mgr.invalidate("HTTP 403")
    assert mgr.state is SessionState.INVALIDATED
    assert portal.agents[0].closed
    with pytest.raises(LoginFailed):
        mgr.session_cookies()

    caplog.clear()
    mgr.ensure()
    assert len(portal.agents) == 2
    assert _transitions(caplog) == ["closed", "opening", "awaiting_credentials", "authenticated"]


def test_navigation_failure_keeps_login_and_resumes(portal) -> None:
    portal.next_client.navigation_failures = 1
    mgr = portal.manager()

    with pytest.raises(NavigationFailed):
        mgr.ensure()
    assert mgr.state is SessionState.AUTHENTICATED
    assert not mgr.navigation_complete

    mgr.ensure()
    assert len(portal.agents) == 1
    assert mgr.navigation_complete


def test_repeated_navigation_failure_invalidates(portal) -> None:
    portal.next_client.navigation_failures = 5
    mgr = portal.manager()

    with pytest.raises(NavigationFailed):
        mgr.ensure()
    with pytest.raises(NavigationFailed):
        mgr.ensure()

    assert mgr.state is SessionState.INVALIDATED
    assert portal.agents[0].closed


def test_close_is_idempotent(portal) -> None:
    mgr = portal.manager()
    mgr.ensure()
    mgr.close()
    mgr.close()
    assert mgr.state is SessionState.CLOSED
    assert mgr.session is None


def test_missing_navigation_plan_raises_login_failed(portal) -> None:
    mgr = portal.manager()
    mgr.ensure()
    mgr._plan = None

    with pytest.raises(LoginFailed, match="navigation plan"):
        mgr.ensure()


def test_browser_context_uses_configured_user_agent(portal) -> None:
    mgr = portal.manager(user_agent="referral-watch-test/1.0")

    agent = mgr.build_agent()

    assert not agent.is_open
    opts = agent.context_options()
    assert opts["user_agent"] == "referral-watch-test/1.0"
    assert opts["viewport"] == {"width": 1280, "height": 800}
