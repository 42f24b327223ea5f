from __future__ import annotations

from typing import Optional, Sequence


class ReferralWatchError(RuntimeError):
    """Base class for every failure the polling pipeline knows how to classify."""


class InvalidSecret(ReferralWatchError):
    """The configured TOTP secret is empty or not valid base32."""


class ProvisioningError(ReferralWatchError):
    """The browser could not be launched (fatal to the cycle, retried next poll)."""


class NavigationTimeout(ReferralWatchError):
    """A bounded wait was exceeded. Inconclusive: callers re-detect state instead of failing."""


class LoginFailed(ReferralWatchError):
    """Credentials were submitted but the portal never reached an authenticated state."""


class StrategiesExhausted(ReferralWatchError):
    """
    Every strategy in an ordered fallback list failed.

    `failures` holds one `(strategy_name, reason)` pair per attempt, in the order tried.
    """

    def __init__(self, what: str, failures: Sequence[tuple[str, str]] = ()) -> None:
        self.what = what
        self.failures = list(failures)
        detail = "; ".join(f"{name}: {reason}" for name, reason in self.failures) or "no strategies"
        super().__init__(f"Could not {what} ({detail})")


class ChallengeSelectionFailed(StrategiesExhausted):
    """No second-factor option could be selected (or no code could be entered/submitted)."""


class NavigationFailed(StrategiesExhausted):
    """A post-login navigation step could not be completed."""


class ChallengeRejected(ReferralWatchError):
    """The portal explicitly rejected the second-factor code."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Second-factor code rejected: {message}")


class AuthExpired(ReferralWatchError):
    """A downstream call was rejected with 401/403; the session must be invalidated."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(message or f"Portal rejected the session (HTTP {status_code})")


class SourceUnavailable(ReferralWatchError):
    """Transient failure fetching referrals; the cycle ends early and the watermark stays put."""


class DeliveryError(ReferralWatchError):
    """A notification channel failed to deliver. Logged, never propagated past the dispatcher."""

    def __init__(self, channel: str, message: str, *, cause: Optional[BaseException] = None) -> None:
        self.channel = channel
        self.cause = cause
        super().__init__(f"{channel} delivery failed: {message}")
