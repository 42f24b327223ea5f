from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from ..config import PortalConfig
from ..errors import NavigationFailed
from ..logging_config import log_event
from .client import PortalClient


logger = logging.getLogger(__name__)


def split_preference(value: str) -> list[str]:
    """`"Acme Home Care|Acme"` -> `["Acme Home Care", "Acme"]` (priority order). `|` because names contain commas."""
    return [p.strip() for p in (value or "").split("|") if p.strip()]


@dataclass
class NavigationStep:
    """
    One idempotent "ensure we are at step N" operation.

    `is_done()` probes whether the page already shows the step's result; `perform()` drives the UI
    towards it and raises on failure.
    """

    name: str
    perform: Callable[[], object]
    is_done: Optional[Callable[[], bool]] = None
    retries: int = 1


class NavigationPlan:
    """
    Ordered post-login navigation that resumes from the last confirmed step.

    A failed `run()` leaves the cursor on the failing step, so the next `run()` on the same page
    does not redo earlier steps. `reset()` rewinds to the start (use it after a new login).
    """

    def __init__(self, steps: Sequence[NavigationStep]) -> None:
        self.steps = list(steps)
        self._cursor = 0

    @property
    def resume_index(self) -> int:
        return self._cursor

    @property
    def completed(self) -> bool:
        return self._cursor >= len(self.steps)

    def reset(self) -> None:
        self._cursor = 0

    def run(self) -> None:
        while self._cursor < len(self.steps):
            step = self.steps[self._cursor]
            if self._probe(step):
                logger.debug("Navigation step %r already satisfied.", step.name)
                self._cursor += 1
                continue

            failures: list[tuple[str, str]] = []
            attempts = max(1, step.retries + 1)
            for attempt in range(1, attempts + 1):
                try:
                    step.perform()
                except Exception as e:
                    logger.warning("Navigation step %r failed (attempt %d/%d): %s", step.name, attempt, attempts, e)
                    failures.append((f"{step.name}#{attempt}", f"{type(e).__name__}: {e}"))
                    continue
                break
            else:
                log_event(logger, "navigation.failed", level=logging.WARNING, step=step.name, attempts=attempts)
                raise NavigationFailed(f"complete navigation step {step.name!r}", failures)

            log_event(logger, "navigation.step", step=step.name, index=self._cursor)
            self._cursor += 1

    @staticmethod
    def _probe(step: NavigationStep) -> bool:
        if step.is_done is None:
            return False
        try:
            return bool(step.is_done())
        except Exception:
            logger.debug("Probe for navigation step %r failed.", step.name, exc_info=True)
            return False


def build_navigation_plan(client: PortalClient, config: PortalConfig) -> NavigationPlan:
    """Dashboard -> care application -> organization/provider form -> referrals tab."""
    sel = client.selectors
    organizations = split_preference(config.organization_preference)
    providers = split_preference(config.provider_preference)
    timeout_s = config.navigation_timeout_seconds

    def _past_selection_form() -> bool:
        return client.on_application_home()

    return NavigationPlan(
        [
            NavigationStep(
                "open_application",
                perform=lambda: client.open_application(timeout_s=timeout_s),
                is_done=client.application_open,
                retries=1,
            ),
            NavigationStep(
                "select_organization",
                perform=lambda: client.choose_dropdown(sel.organization_dropdown, organizations, timeout_s=timeout_s),
                is_done=_past_selection_form,
            ),
            NavigationStep(
                "select_provider",
                perform=lambda: client.choose_dropdown(sel.provider_dropdown, providers, timeout_s=timeout_s),
                is_done=_past_selection_form,
            ),
            NavigationStep(
                "submit_selection",
                perform=lambda: client.submit_selection(timeout_s=timeout_s),
                is_done=_past_selection_form,
            ),
            NavigationStep(
                "open_referrals",
                perform=lambda: client.open_referrals_tab(timeout_s=min(timeout_s, 30.0)),
                is_done=client.referrals_listed,
            ),
        ]
    )
