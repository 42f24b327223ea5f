from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

import requests
from pydantic import ValidationError

from .config import PortalConfig, ReferralQueryConfig
from .errors import AuthExpired, SourceUnavailable
from .logging_config import log_event
from .models import CandidateReferral


logger = logging.getLogger(__name__)


@dataclass
class ReferralResponse:
    effective_date: str = ""
    referrals: list[CandidateReferral] = field(default_factory=list)


def extract_xsrf_token(cookie_header: str, cookie_name: str = "XSRF-TOKEN") -> str:
    """Value of `cookie_name` inside a `Cookie:` header, or "" when the cookie is absent."""
    m = re.search(rf"(?:^|;\s*){re.escape(cookie_name)}=([^;]+)", cookie_header or "")
    return m.group(1).strip() if m else ""


def parse_referrals(items: Any) -> list[CandidateReferral]:
    """Validate API items; entries without `memberID` or `requestOn` cannot be deduplicated and are dropped."""
    out: list[CandidateReferral] = []
    for i, item in enumerate(items or []):
        if not isinstance(item, dict):
            logger.warning("Dropping referral item #%d: not an object", i)
            continue
        if not str(item.get("memberID") or "").strip() or not str(item.get("requestOn") or "").strip():
            logger.warning("Dropping referral item #%d: missing memberID or requestOn", i)
            continue
        cleaned = {k: ("" if v is None else str(v)) for k, v in item.items()}
        try:
            out.append(CandidateReferral.model_validate(cleaned))
        except ValidationError as e:
            logger.warning("Dropping referral item #%d: %s", i, e)
    return out


class ReferralSource:
    """
    Calls the portal's referral API directly with the browser session's cookies.

    One POST per fetch, no retries: an expired session surfaces as `AuthExpired` so the caller can
    invalidate and re-login on the next cycle.
    """

    def __init__(
        self,
        portal: PortalConfig,
        query: ReferralQueryConfig,
        *,
        http: Optional[requests.Session] = None,
    ) -> None:
        self.portal = portal
        self.query = query
        self.http = http or requests.Session()

    def headers(self, cookie_header: str) -> dict[str, str]:
        return {
            "Cookie": cookie_header,
            "Content-Type": "application/json",
            "X-XSRF-TOKEN": extract_xsrf_token(cookie_header, self.portal.xsrf_cookie_name),
            "User-Agent": self.portal.user_agent,
            "Referer": self.portal.referer,
        }

    def fetch(self, cookie_header: str) -> list[CandidateReferral]:
        return self.fetch_response(cookie_header).referrals

    def fetch_response(self, cookie_header: str) -> ReferralResponse:
        url = self.portal.referrals_api_url
        try:
            resp = self.http.post(
                url,
                json=self.query.body(),
                headers=self.headers(cookie_header),
                timeout=self.portal.api_timeout_seconds,
            )
        except requests.RequestException as e:
            raise SourceUnavailable(f"Referral API request failed: {e}") from e

        if resp.status_code in (401, 403):
            log_event(logger, "auth.expired", level=logging.WARNING, status=resp.status_code)
            raise AuthExpired(resp.status_code)
        if resp.status_code >= 400:
            raise SourceUnavailable(f"Referral API returned HTTP {resp.status_code}: {(resp.text or '')[:200]}")

        try:
            payload = resp.json()
        except ValueError as e:
            raise SourceUnavailable(f"Referral API returned malformed JSON: {e}") from e
        if not isinstance(payload, dict):
            raise SourceUnavailable(f"Referral API returned {type(payload).__name__}, expected an object")

        referrals = parse_referrals(payload.get("referrals"))
        effective_date = str(payload.get("effectiveDate") or "")
        logger.info("Referral API returned %d referral(s) (effectiveDate=%s)", len(referrals), effective_date or "-")
        return ReferralResponse(effective_date=effective_date, referrals=referrals)
