from __future__ import annotations

import sys
from typing import Any
from pathlib import Path
from datetime import datetime, timezone


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def pytest_configure(config: Any) -> None:
    config.addinivalue_line(
        "markers",
        "portal: integration smoke tests that require real portal credentials",
    )


import pytest  # noqa: E402

from referral_watch.config import PortalConfig  # noqa: E402
from referral_watch.portal.client import ChallengeOutcome, LoginOutcome  # noqa: E402
from referral_watch.portal.navigation import NavigationPlan, NavigationStep  # noqa: E402
from referral_watch.portal.selectors import PortalSelectors  # noqa: E402
from referral_watch.session import SessionManager  # noqa: E402
from referral_watch.state import StateStore  # noqa: E402


TEST_TOTP_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class FakeAgent:
    def __init__(self) -> None:
        self.closed = False
        self.cookies = "JSESSIONID=s1; XSRF-TOKEN=tok"

    def cookie_header(self) -> str:
        return self.cookies

    def close(self) -> None:
        self.closed = True


class FakePortalClient:
    """Scripted stand-in for `PortalClient`; records every call in `calls`."""

    def __init__(self) -> None:
        self.selectors = PortalSelectors()
        self.calls: list[str] = []
        self.login_outcome = LoginOutcome.DASHBOARD
        self.url = "https://portal.example.com/public/apps/dashboard"
        self.attribute_ok = True
        self.label_ok = True
        self.first_ok = True
        self.fillable = {'input[name="code"]'}
        self.challenge_results: list[ChallengeOutcome] = []
        self.codes: list[str] = []
        self.navigation_failures = 0
        self.listed: list = []

    def submit_credentials(self, login_url, username, password, *, timeout_s):
        self.calls.append("submit_credentials")

    def detect_login_outcome(self, *, timeout_s):
        self.calls.append("detect_login_outcome")
        return self.login_outcome

    def current_url(self):
        return self.url

    def wait_for_challenge_options(self, *, timeout_s):
        self.calls.append("wait_for_challenge_options")

    def select_challenge_by_attribute(self, kind):
        self.calls.append(f"attribute:{kind}")
        if self.attribute_ok is None:
            raise RuntimeError("locator detached")
        return self.attribute_ok

    def select_challenge_by_label(self, kind):
        self.calls.append(f"label:{kind}")
        return self.label_ok

    def select_first_challenge_option(self):
        self.calls.append("first")
        return self.first_ok

    def continue_to_code_entry(self, *, timeout_s):
        self.calls.append("continue")

    def fill_code(self, selector, code):
        if selector in self.fillable:
            self.codes.append(code)
            return True
        return False

    def click_submit(self, selector):
        self.calls.append(f"submit:{selector}")
        return True

    def await_challenge_result(self, *, timeout_s):
        return self.challenge_results.pop(0) if self.challenge_results else ChallengeOutcome(accepted=True)

    def dismiss_cookie_consent(self, *, timeout_s=5.0):
        self.calls.append("dismiss_cookie_consent")
        return False

    def dismiss_popups(self):
        return 0

    def save_debug(self, name_prefix):
        self.calls.append(f"save_debug:{name_prefix}")
        return []

    def referrals_listed(self):
        return True

    def open_referrals_tab(self, *, timeout_s=15.0):
        self.calls.append("open_referrals_tab")

    def extract_listed_referrals(self):
        return list(self.listed)


class PortalHarness:
    """Builds a real `SessionManager` over fake agents/clients and records what it created."""

    def __init__(self, tmp_path) -> None:
        self.store = StateStore(str(tmp_path / "state.db"))
        self.agents: list[FakeAgent] = []
        self.clients: list[FakePortalClient] = []
        self.sleeps: list[float] = []
        self.next_client = FakePortalClient()
        self.fail_open = False
        self.config = PortalConfig(
            base_url="https://portal.example.com",
            username="user",
            password="pw",
            totp_secret=TEST_TOTP_SECRET,
        )

    def _agent_factory(self) -> FakeAgent:
        if self.fail_open:
            from referral_watch.errors import ProvisioningError

            raise ProvisioningError("no browser")
        agent = FakeAgent()
        self.agents.append(agent)
        return agent

    def _client_factory(self, agent: FakeAgent) -> FakePortalClient:
        client = self.next_client
        self.clients.append(client)
        self.next_client = FakePortalClient()
        return client

    @staticmethod
    def _plan_factory(client: FakePortalClient) -> NavigationPlan:
        def _open() -> None:
            client.calls.append("navigate")
            if client.navigation_failures > 0:
                client.navigation_failures -= 1
                raise RuntimeError("tile not found")

        return NavigationPlan([NavigationStep("open_referrals", perform=_open, retries=0)])

    def manager(self, **overrides) -> SessionManager:
        config = self.config.model_copy(update=overrides) if overrides else self.config
        return SessionManager(
            config,
            store=self.store,
            agent_factory=self._agent_factory,
            client_factory=self._client_factory,
            plan_factory=self._plan_factory,
            clock=lambda: datetime(2024, 1, 1, 0, 0, 10, tzinfo=timezone.utc),
            sleep=self.sleeps.append,
        )


@pytest.fixture
def portal(tmp_path) -> "PortalHarness":
    h = PortalHarness(tmp_path)
    try:
        yield h
    finally:
        h.store.close()
