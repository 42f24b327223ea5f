from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from . import totp
from .config import PortalConfig
from .errors import ChallengeRejected, ChallengeSelectionFailed, LoginFailed, NavigationTimeout, ReferralWatchError
from .logging_config import log_event
from .models import CandidateReferral
from .portal.agent import InteractiveAgent
from .portal.client import LoginOutcome, PortalClient
from .portal.navigation import NavigationPlan, build_navigation_plan
from .state import StateStore
from .strategies import Strategy, run_strategies
from .util.dates import utcnow


logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    CLOSED = "closed"
    OPENING = "opening"
    AWAITING_CREDENTIALS = "awaiting_credentials"
    AWAITING_CHALLENGE = "awaiting_challenge"
    AUTHENTICATED = "authenticated"
    INVALIDATED = "invalidated"


class ChallengeType(str, enum.Enum):
    NONE = "none"
    AUTHENTICATOR_APP = "authenticator_app"
    BACKUP_CODE = "backup_code"


@dataclass
class AuthChallenge:
    challenge_type: ChallengeType
    attempts_remaining: int


@dataclass
class Session:
    agent: Any
    cookie_header: str = ""
    established_at: datetime = field(default_factory=utcnow)


# A rejected TOTP code is retried once, in the next 30-second window.
TOTP_ATTEMPTS = 2
# Consecutive navigation failures on one login before the session is thrown away.
MAX_NAVIGATION_FAILURES = 2


class SessionManager:
    """
    Owns the one portal session and the login state machine.

    Not thread-safe: every call must come from the worker thread (the Playwright page is bound to
    the thread that created it).
    """

    def __init__(
        self,
        config: PortalConfig,
        *,
        store: StateStore,
        agent_factory: Optional[Callable[[], Any]] = None,
        client_factory: Optional[Callable[[Any], Any]] = None,
        plan_factory: Optional[Callable[[Any], NavigationPlan]] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self._agent_factory = agent_factory or self._default_agent
        self._client_factory = client_factory or self._default_client
        self._plan_factory = plan_factory or (lambda client: build_navigation_plan(client, config))
        self._clock = clock
        self._sleep = sleep

        self.state = SessionState.CLOSED
        self.challenge: Optional[AuthChallenge] = None
        self._session: Optional[Session] = None
        self._agent: Any = None
        self._client: Any = None
        self._plan: Optional[NavigationPlan] = None
        self._navigation_failures = 0

    def _default_agent(self) -> InteractiveAgent:
        return self.build_agent().open()

    def build_agent(self) -> InteractiveAgent:
        return InteractiveAgent(
            headless=self.config.headless,
            executable_path=self.config.browser_executable_path,
            default_timeout_ms=int(self.config.navigation_timeout_seconds * 1000),
            user_agent=self.config.user_agent,
        )

    def _default_client(self, agent: InteractiveAgent) -> PortalClient:
        return PortalClient(agent.page, debug_dir=self.config.debug_dir)

    # --- public API ----------------------------------------------------------------------

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def navigation_complete(self) -> bool:
        return self._plan is not None and self._plan.completed

    def ensure(self) -> Session:
        """
        Return an authenticated session that has reached the referrals area, logging in if needed.

        Login failures tear the browser down and leave the manager `CLOSED`. Navigation failures keep
        the login; the next call resumes navigation from the step that failed.
        """
        if self.state is SessionState.INVALIDATED:
            self._transition(SessionState.CLOSED, reason="reopen after invalidation")

        if self.state is not SessionState.AUTHENTICATED:
            try:
                self._login()
            except Exception as e:
                self._capture_diagnostics("login_failed")
                self._teardown()
                self._transition(SessionState.CLOSED, reason=type(e).__name__)
                raise

        self._navigate()
        if self._session is None:
            raise LoginFailed("Portal session was dropped during navigation")
        self._session.cookie_header = self._agent.cookie_header()
        return self._session

    def session_cookies(self) -> str:
        """The cookie jar as a `Cookie:` header (`name=value; ...`) for out-of-band API calls."""
        if self.state is not SessionState.AUTHENTICATED or self._session is None:
            raise LoginFailed(f"No authenticated session (state={self.state.value})")
        try:
            self._session.cookie_header = self._agent.cookie_header()
        except Exception:
            logger.debug("Could not refresh cookies; using the last captured jar.", exc_info=True)
        return self._session.cookie_header

    def list_ui_referrals(self) -> list[CandidateReferral]:
        """Referrals rendered in the portal's referral list (secondary extraction path)."""
        self.ensure()
        if not self._client.referrals_listed():
            self._client.open_referrals_tab(timeout_s=min(self.config.navigation_timeout_seconds, 30.0))
        return self._client.extract_listed_referrals()

    def invalidate(self, reason: str) -> None:
        self._teardown()
        self._transition(SessionState.INVALIDATED, reason=reason)

    def close(self) -> None:
        self._teardown()
        if self.state is not SessionState.CLOSED:
            self._transition(SessionState.CLOSED, reason="shutdown")

    def describe(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "established_at": self._session.established_at.isoformat() if self._session else None,
            "navigation_complete": self.navigation_complete,
        }

    # --- state machine -------------------------------------------------------------------

    def _login(self) -> None:
        cfg = self.config
        self._transition(SessionState.OPENING)
        self._agent = self._agent_factory()
        self._client = self._client_factory(self._agent)

        self._transition(SessionState.AWAITING_CREDENTIALS)
        try:
            self._client.submit_credentials(
                cfg.login_url, cfg.username, cfg.password, timeout_s=cfg.navigation_timeout_seconds
            )
        except NavigationTimeout as e:
            # Inconclusive: the form may still have been submitted. Status detection decides.
            logger.warning("Login navigation timed out (%s); detecting status anyway.", e)

        outcome = self._client.detect_login_outcome(timeout_s=cfg.status_timeout_seconds)
        logger.info("Post-login status: %s", outcome.value)
        if outcome is LoginOutcome.UNKNOWN:
            url = self._client.current_url()
            if any(marker in url.lower() for marker in self._client.selectors.login_url_markers):
                raise LoginFailed(f"Still on a login page after submitting credentials ({url})")
            logger.info("No status marker seen but URL looks post-login; treating as authenticated.")
        elif outcome is LoginOutcome.CHALLENGE:
            self._complete_challenge()

        self.challenge = None
        self._session = Session(agent=self._agent, established_at=self._clock())
        self._plan = self._plan_factory(self._client)
        self._navigation_failures = 0
        self._transition(SessionState.AUTHENTICATED)

        self._client.dismiss_cookie_consent()
        self._client.dismiss_popups()

    def _complete_challenge(self) -> None:
        cfg = self.config
        client = self._client
        ctype = ChallengeType(cfg.mfa_method)
        self.challenge = AuthChallenge(
            challenge_type=ctype,
            attempts_remaining=TOTP_ATTEMPTS if ctype is ChallengeType.AUTHENTICATOR_APP else 1,
        )
        self._transition(SessionState.AWAITING_CHALLENGE, challenge=ctype.value)

        client.wait_for_challenge_options(timeout_s=cfg.challenge_timeout_seconds)
        run_strategies(
            [
                Strategy("attribute locator", lambda: client.select_challenge_by_attribute(ctype.value)),
                Strategy("label text", lambda: client.select_challenge_by_label(ctype.value)),
                Strategy("first option", client.select_first_challenge_option),
            ],
            what=f"select the {ctype.value} challenge",
            error_cls=ChallengeSelectionFailed,
        )
        client.continue_to_code_entry(timeout_s=cfg.challenge_timeout_seconds)

        while True:
            code = self._next_code(ctype)
            self.challenge.attempts_remaining -= 1
            self._enter_code(code)
            if ctype is ChallengeType.BACKUP_CODE:
                # Spent once submitted, whether or not the portal accepts it.
                self.store.mark_backup_code_used(code)

            result = client.await_challenge_result(timeout_s=cfg.challenge_timeout_seconds)
            if result.accepted:
                logger.info("Second factor accepted.")
                return

            logger.warning(
                "Second-factor code %s rejected: %s (attempts left: %d)",
                totp.mask(code),
                result.message,
                self.challenge.attempts_remaining,
            )
            if self.challenge.attempts_remaining <= 0:
                raise ChallengeRejected(result.message)
            if ctype is ChallengeType.AUTHENTICATOR_APP:
                self._sleep(totp.seconds_remaining(self._clock()) + 1)

    def _next_code(self, ctype: ChallengeType) -> str:
        if ctype is ChallengeType.BACKUP_CODE:
            code = self.store.next_backup_code()
            if not code:
                raise ChallengeSelectionFailed(
                    "obtain a backup code", [("backup code store", "no unused codes (see add-backup-codes)")]
                )
            return code
        return totp.generate(self.config.totp_secret, self._clock())

    def _enter_code(self, code: str) -> None:
        client = self._client
        sel = client.selectors
        run_strategies(
            [Strategy(s, (lambda s=s: client.fill_code(s, code))) for s in sel.code_inputs],
            what="enter the second-factor code",
            error_cls=ChallengeSelectionFailed,
        )
        run_strategies(
            [Strategy(s, (lambda s=s: client.click_submit(s))) for s in sel.code_submit_buttons],
            what="submit the second-factor code",
            error_cls=ChallengeSelectionFailed,
        )

    def _navigate(self) -> None:
        if self._plan is None:
            raise LoginFailed("No navigation plan: the portal session is not authenticated")
        if self._plan.completed:
            return
        try:
            self._plan.run()
        except ReferralWatchError:
            self._navigation_failures += 1
            self._capture_diagnostics("navigation_failed")
            if self._navigation_failures >= MAX_NAVIGATION_FAILURES:
                self.invalidate(f"navigation failed {self._navigation_failures} times")
            raise
        self._navigation_failures = 0

    # --- helpers -------------------------------------------------------------------------

    def _transition(self, new_state: SessionState, **fields: Any) -> None:
        old = self.state
        self.state = new_state
        log_event(logger, "session.transition", **{"from": old.value, "to": new_state.value}, **fields)

    def _capture_diagnostics(self, prefix: str) -> None:
        if self._client is None:
            return
        try:
            paths = self._client.save_debug(prefix)
        except Exception:
            logger.debug("Diagnostics capture failed.", exc_info=True)
            return
        if paths:
            log_event(logger, "diagnostic.captured", level=logging.WARNING, reason=prefix, paths=",".join(paths))

    def _teardown(self) -> None:
        agent = self._agent
        self._agent = None
        self._client = None
        self._plan = None
        self._session = None
        self.challenge = None
        if agent is not None:
            try:
                agent.close()
            except Exception:
                logger.debug("Failed to close the interactive agent.", exc_info=True)
