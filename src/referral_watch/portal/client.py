from __future__ import annotations

import enum
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from playwright.sync_api import Frame, Page
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from ..errors import NavigationFailed, NavigationTimeout
from ..models import CandidateReferral
from ..strategies import Strategy, match_preferred, run_strategies
from .selectors import PortalSelectors


logger = logging.getLogger(__name__)


class LoginOutcome(str, enum.Enum):
    DASHBOARD = "dashboard"
    CHALLENGE = "challenge"
    COOKIE_BANNER = "cookie_banner"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ChallengeOutcome:
    accepted: bool
    message: str = ""


# Runs inside the application iframe; mirrors the referral card layout.
_EXTRACT_CARDS_JS = """
(sel) => {
  const text = (root, q) => {
    const el = root.querySelector(q);
    return el && el.textContent ? el.textContent.trim() : "";
  };
  return Array.from(document.querySelectorAll(sel.card)).map((card) => {
    const details = {};
    card.querySelectorAll(sel.detailRow).forEach((row) => {
      const headers = row.querySelectorAll(sel.detailHeader);
      const values = row.querySelectorAll(sel.detailValue);
      headers.forEach((h, i) => {
        const key = (h.textContent || "").trim();
        const val = i < values.length ? (values[i].textContent || "").trim() : "";
        if (key) details[key] = val;
      });
    });
    return {
      memberName: text(card, sel.memberName),
      serviceName: text(card, sel.service),
      regionName: text(card, sel.region),
      county: text(card, sel.county),
      plan: text(card, sel.program),
      status: text(card, sel.status),
      details,
    };
  });
}
"""


def _detail(details: dict, label: str) -> str:
    for key, value in details.items():
        if label.casefold() in str(key).casefold():
            return str(value or "").strip()
    return ""


def cards_to_candidates(cards: Sequence[dict]) -> list[CandidateReferral]:
    """
    Map scraped referral cards to candidates.

    The list view shows a referral number but no member ID; the referral number is the stable
    per-referral identifier there, so it stands in as `member_id`. Cards without one are skipped
    (a synthetic ID would defeat deduplication).
    """
    out: list[CandidateReferral] = []
    for card in cards:
        details = card.get("details") or {}
        referral_number = _detail(details, "Referral #")
        if not referral_number:
            logger.warning("Skipping referral card without a referral number (member=%r)", card.get("memberName"))
            continue
        out.append(
            CandidateReferral(
                member_name=card.get("memberName") or "Unknown",
                member_id=referral_number,
                service_name=card.get("serviceName") or "",
                region_name=card.get("regionName") or "",
                county=card.get("county") or "",
                plan=card.get("plan") or "",
                status=card.get("status") or "",
                request_on=_detail(details, "Requested On"),
            )
        )
    return out


class PortalClient:
    """
    UI operations against the provider portal, one method per observable step.

    Policy (which step comes next, what counts as failure, retries) lives in `SessionManager`;
    this class only drives the page. Every wait is bounded.
    """

    def __init__(
        self,
        page: Page,
        *,
        selectors: Optional[PortalSelectors] = None,
        debug_dir: str = "data/debug",
    ) -> None:
        self.page = page
        self.selectors = selectors or PortalSelectors()
        self.debug_dir = debug_dir

    # --- login ---------------------------------------------------------------------------

    def submit_credentials(self, login_url: str, username: str, password: str, *, timeout_s: float) -> None:
        timeout_ms = int(timeout_s * 1000)
        try:
            self.page.goto(login_url, wait_until="domcontentloaded", timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(f"Login page did not load within {timeout_s:.0f}s") from e

        self.page.locator(self.selectors.username_input).first.fill(username, timeout=timeout_ms)
        self.page.locator(self.selectors.password_input).first.fill(password, timeout=timeout_ms)
        self.page.locator(self.selectors.login_submit).first.click(timeout=timeout_ms)

        # The portal's navigation signal is unreliable; a timeout here is inconclusive.
        try:
            self.page.wait_for_load_state("domcontentloaded", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            logger.info("Post-login navigation did not signal within %.0fs; checking status instead.", timeout_s)

    def detect_login_outcome(self, *, timeout_s: float) -> LoginOutcome:
        """
        Race the three post-login outcomes; the first one observed wins.

        The second-factor form is checked first within each poll because the consent banner can
        render on top of it.
        """
        deadline = time.time() + timeout_s
        while True:
            if self.challenge_visible():
                return LoginOutcome.CHALLENGE
            if self.dashboard_visible():
                return LoginOutcome.DASHBOARD
            if self.cookie_banner_visible():
                return LoginOutcome.COOKIE_BANNER
            if time.time() >= deadline:
                return LoginOutcome.UNKNOWN
            self.page.wait_for_timeout(500)

    def current_url(self) -> str:
        try:
            return self.page.url or ""
        except Exception:
            return ""

    def challenge_visible(self) -> bool:
        return self._count(self.page, self.selectors.challenge_form) > 0

    def dashboard_visible(self) -> bool:
        return self._count(self.page, self.selectors.dashboard_marker) > 0

    def cookie_banner_visible(self) -> bool:
        try:
            heading = self.page.get_by_role(
                "heading", name=re.compile(re.escape(self.selectors.cookie_consent_heading_text), re.I)
            )
            if heading.count() > 0:
                return True
        except Exception:
            pass
        try:
            return self.page.get_by_text(self.selectors.cookie_consent_heading_text, exact=False).count() > 0
        except Exception:
            return False

    # --- second factor -------------------------------------------------------------------

    def wait_for_challenge_options(self, *, timeout_s: float) -> None:
        try:
            self.page.locator(self.selectors.challenge_radio).first.wait_for(
                state="visible", timeout=int(timeout_s * 1000)
            )
        except PlaywrightTimeoutError:
            # Some accounts land directly on the code form (single enrolled factor).
            logger.info("No second-factor options rendered within %.0fs; continuing to code entry.", timeout_s)

    def select_challenge_by_attribute(self, kind: str) -> bool:
        selector = self.selectors.backup_code_radio if kind == "backup_code" else self.selectors.authenticator_radio
        loc = self.page.locator(selector)
        if loc.count() == 0:
            return False
        loc.first.check(timeout=5_000)
        return True

    def select_challenge_by_label(self, kind: str) -> bool:
        needle = (
            self.selectors.backup_code_label_text if kind == "backup_code" else self.selectors.authenticator_label_text
        )
        labels = self.page.locator("label").filter(has_text=re.compile(re.escape(needle), re.I))
        if labels.count() == 0:
            return False
        labels.first.click(timeout=5_000)
        return True

    def select_first_challenge_option(self) -> bool:
        radios = self.page.locator(self.selectors.challenge_radio)
        if radios.count() == 0:
            return False
        radios.first.check(timeout=5_000)
        return True

    def continue_to_code_entry(self, *, timeout_s: float) -> None:
        timeout_ms = int(timeout_s * 1000)
        if self._count(self.page, self.selectors.challenge_radio) > 0:
            self.page.locator(self.selectors.challenge_continue).first.click(timeout=timeout_ms)
        self.page.locator(", ".join(self.selectors.code_inputs)).first.wait_for(state="visible", timeout=timeout_ms)

    def fill_code(self, selector: str, code: str) -> bool:
        loc = self.page.locator(selector)
        if loc.count() == 0:
            return False
        target = loc.first
        if not target.is_visible():
            return False
        target.fill(code, timeout=5_000)
        return True

    def click_submit(self, selector: str) -> bool:
        loc = self.page.locator(selector)
        if loc.count() == 0:
            return False
        loc.first.click(timeout=5_000)
        return True

    def await_challenge_result(self, *, timeout_s: float) -> ChallengeOutcome:
        """
        After submitting a code: dashboard or consent banner means success; an error banner means the
        code was rejected (its text is returned). If nothing resolves in time, success unless the
        second-factor form is still showing.
        """
        deadline = time.time() + timeout_s
        while time.time() < deadline:
            message = self.challenge_error_text()
            if message is not None:
                return ChallengeOutcome(accepted=False, message=message or "error banner shown")
            if self.dashboard_visible() or self.cookie_banner_visible():
                return ChallengeOutcome(accepted=True)
            self.page.wait_for_timeout(500)

        message = self.challenge_error_text()
        if message is not None:
            return ChallengeOutcome(accepted=False, message=message or "error banner shown")
        if self._count(self.page, ", ".join(self.selectors.code_inputs[:3])) > 0:
            return ChallengeOutcome(accepted=False, message="still showing the second-factor prompt")
        return ChallengeOutcome(accepted=True)

    def challenge_error_text(self) -> Optional[str]:
        try:
            banner = self.page.locator(self.selectors.challenge_error_banner)
            if banner.count() == 0 or not banner.first.is_visible():
                return None
            return (banner.first.inner_text(timeout=2_000) or "").strip()
        except Exception:
            return None

    # --- overlays ------------------------------------------------------------------------

    def dismiss_cookie_consent(self, *, timeout_s: float = 5.0) -> bool:
        """Best-effort: accept the consent banner if it is showing. Never raises."""
        deadline = time.time() + timeout_s
        while not self.cookie_banner_visible():
            if time.time() >= deadline:
                return False
            self.page.wait_for_timeout(250)

        def _by_selector() -> bool:
            btn = self.page.locator(self.selectors.cookie_consent_accept)
            if btn.count() == 0:
                return False
            btn.first.click(timeout=2_000)
            return True

        def _by_text() -> bool:
            btn = self.page.get_by_role(
                "button", name=re.compile(re.escape(self.selectors.cookie_consent_accept_text), re.I)
            )
            if btn.count() == 0:
                return False
            btn.first.click(timeout=2_000, force=True)
            return True

        try:
            run_strategies(
                [Strategy("accept button selector", _by_selector), Strategy("accept button text", _by_text)],
                what="accept the cookie consent banner",
            )
        except Exception as e:
            logger.warning("Cookie consent banner could not be dismissed (%s)", e)
            return False
        self.page.wait_for_timeout(1_000)
        return True

    def dismiss_popups(self) -> int:
        """Best-effort: click visible close buttons on modals. Returns how many were clicked."""
        clicked = 0
        for selector in self.selectors.popup_close_buttons:
            try:
                loc = self.page.locator(selector)
                for i in range(min(loc.count(), 10)):
                    btn = loc.nth(i)
                    if btn.is_visible():
                        btn.click(timeout=2_000)
                        clicked += 1
                        self.page.wait_for_timeout(500)
            except Exception:
                logger.debug("Popup close attempt failed (selector=%s).", selector, exc_info=True)
        return clicked

    # --- post-login navigation -------------------------------------------------------------

    def application_open(self) -> bool:
        if self.selectors.application_url_marker in self.current_url().lower():
            return True
        return self.application_frame() is not None

    def open_application(self, *, timeout_s: float = 30.0) -> None:
        before = self.current_url()

        def _left_dashboard() -> bool:
            self.page.wait_for_timeout(3_000)
            url = self.current_url().lower()
            return self.selectors.application_url_marker in url or url != before.lower()

        def _by_tile_text() -> bool:
            tiles = self.page.get_by_text(self.selectors.application_tile_text, exact=False)
            for i in range(min(tiles.count(), 10)):
                tile = tiles.nth(i)
                box = tile.bounding_box()
                # Tiles are large click targets; skip inline mentions in paragraphs.
                if not box or box["width"] <= 50 or box["height"] <= 50:
                    continue
                tile.click(timeout=5_000)
                if _left_dashboard():
                    return True
            return False

        def _by_link_role() -> bool:
            link = self.page.get_by_role(
                "link", name=re.compile(re.escape(self.selectors.application_tile_text), re.I)
            )
            if link.count() == 0:
                return False
            link.first.click(timeout=5_000)
            return _left_dashboard()

        def _by_tile_image() -> bool:
            hint = self.selectors.application_tile_image_hint
            imgs = self.page.locator(f'img[src*="{hint}" i], img[alt*="{hint}" i]')
            if imgs.count() == 0:
                return False
            imgs.first.click(timeout=5_000)
            return _left_dashboard()

        run_strategies(
            [
                Strategy("tile text", _by_tile_text),
                Strategy("link role", _by_link_role),
                Strategy("tile image", _by_tile_image),
            ],
            what="open the care application",
            error_cls=NavigationFailed,
        )
        try:
            self.page.locator(self.selectors.application_frame_selector).wait_for(timeout=int(timeout_s * 1000))
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout("Application frame did not load") from e

    def application_frame(self) -> Optional[Frame]:
        try:
            return self.page.frame(name=self.selectors.application_frame_name)
        except Exception:
            return None

    def _require_frame(self) -> Frame:
        frame = self.application_frame()
        if frame is None:
            raise NavigationFailed("find the application frame", [("frame name", "not present")])
        return frame

    def on_application_home(self) -> bool:
        """The organization/provider form was already submitted (referrals tab is reachable)."""
        frame = self.application_frame()
        if frame is None:
            return False
        return self._count(frame, self.selectors.referrals_tab) > 0 or self.referrals_listed()

    def choose_dropdown(self, dropdown_selector: str, preferred: Sequence[str], *, timeout_s: float = 30.0) -> str:
        """
        Open a dropdown in the application frame and pick the preferred option, else the first one.
        Returns the chosen option's text.
        """
        frame = self._require_frame()
        timeout_ms = int(timeout_s * 1000)
        frame.locator(dropdown_selector).first.click(timeout=timeout_ms)
        options = frame.locator(self.selectors.dropdown_option)
        options.first.wait_for(state="visible", timeout=timeout_ms)
        texts = [t.strip() for t in options.all_inner_texts()]

        def _pick(index: Optional[int]) -> Optional[str]:
            if index is None or index >= len(texts):
                return None
            options.nth(index).click(timeout=5_000)
            return texts[index] or f"option #{index + 1}"

        chosen = run_strategies(
            [
                Strategy("preferred value", lambda: _pick(match_preferred(texts, preferred))),
                Strategy("first available", lambda: _pick(0 if texts else None)),
            ],
            what=f"choose an option in {dropdown_selector}",
            error_cls=NavigationFailed,
        )
        logger.info("Selected %r in %s", chosen, dropdown_selector)
        self.page.wait_for_timeout(1_000)
        return chosen

    def submit_selection(self, *, timeout_s: float = 30.0) -> None:
        frame = self._require_frame()
        frame.locator(self.selectors.selection_submit).first.click(timeout=int(timeout_s * 1000))
        try:
            self.page.wait_for_load_state("domcontentloaded", timeout=int(timeout_s * 1000))
        except PlaywrightTimeoutError:
            logger.debug("No navigation signal after submitting the selection form.")

    def referrals_listed(self) -> bool:
        frame = self.application_frame()
        if frame is None:
            return False
        return self._count(frame, self.selectors.referral_card) > 0

    def open_referrals_tab(self, *, timeout_s: float = 15.0) -> None:
        frame = self._require_frame()

        def _by_data_id() -> bool:
            btn = frame.locator(self.selectors.referrals_tab)
            btn.first.wait_for(state="visible", timeout=10_000)
            btn.first.click(timeout=5_000)
            return True

        def _by_text() -> bool:
            btn = frame.get_by_role("button", name=re.compile(re.escape(self.selectors.referrals_tab_text), re.I))
            if btn.count() == 0:
                return False
            btn.first.click(timeout=5_000)
            return True

        run_strategies(
            [Strategy("data-id button", _by_data_id), Strategy("button text", _by_text)],
            what="open the referrals tab",
            error_cls=NavigationFailed,
        )
        try:
            frame.locator(self.selectors.referral_card).first.wait_for(timeout=int(timeout_s * 1000))
        except PlaywrightTimeoutError:
            # An empty referral list renders no cards; the caller decides whether that matters.
            logger.info("No referral cards rendered within %.0fs after opening the referrals tab.", timeout_s)

    # --- UI extraction -------------------------------------------------------------------

    def extract_listed_referrals(self) -> list[CandidateReferral]:
        frame = self._require_frame()
        s = self.selectors
        cards = frame.evaluate(
            _EXTRACT_CARDS_JS,
            {
                "card": s.referral_card,
                "memberName": s.card_member_name,
                "service": s.card_service,
                "region": s.card_region,
                "county": s.card_county,
                "program": s.card_program,
                "status": s.card_status,
                "detailRow": s.card_detail_row,
                "detailHeader": s.card_detail_header,
                "detailValue": s.card_detail_value,
            },
        )
        return cards_to_candidates(cards or [])

    # --- diagnostics ---------------------------------------------------------------------

    def save_debug(self, name_prefix: str) -> list[str]:
        """Screenshot + HTML + body text under `debug_dir`. Best-effort; returns the paths written."""
        written: list[str] = []
        stamp = time.strftime("%Y%m%d_%H%M%S")
        safe = re.sub(r"[^a-zA-Z0-9_-]+", "_", name_prefix).strip("_")[:60] or "debug"
        try:
            out_dir = Path(self.debug_dir)
            out_dir.mkdir(parents=True, exist_ok=True)
            png = out_dir / f"{safe}_{stamp}.png"
            self.page.screenshot(path=str(png), full_page=True)
            written.append(str(png))
            html = out_dir / f"{safe}_{stamp}.html"
            html.write_text(self.page.content(), encoding="utf-8")
            written.append(str(html))
            try:
                txt = out_dir / f"{safe}_{stamp}.txt"
                txt.write_text(self.page.inner_text("body"), encoding="utf-8")
                written.append(str(txt))
            except Exception:
                pass
        except Exception:
            logger.debug("Failed to save debug artifacts.", exc_info=True)
        return written

    @staticmethod
    def _count(scope, selector: str) -> int:
        try:
            return int(scope.locator(selector).count())
        except Exception:
            return 0
