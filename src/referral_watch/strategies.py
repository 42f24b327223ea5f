from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Generic, Optional, Sequence, Type, TypeVar

from .errors import StrategiesExhausted


logger = logging.getLogger(__name__)
T = TypeVar("T")


@dataclass(frozen=True)
class Strategy(Generic[T]):
    """
    One way of achieving a goal on the portal (e.g. "select the authenticator option by label text").

    `fn` returns a truthy value on success. Returning a falsy value or raising both mean
    "this strategy did not work, try the next one".
    """

    name: str
    fn: Callable[[], Optional[T]]


def run_strategies(
    strategies: Sequence[Strategy[T]],
    *,
    what: str,
    error_cls: Type[StrategiesExhausted] = StrategiesExhausted,
) -> T:
    """
    Try `strategies` in order and return the first truthy result.

    Exceptions from one strategy never abort the sequence. If all of them fail, raise `error_cls`
    with every failure reason collected so the terminal error explains what was tried.
    """
    failures: list[tuple[str, str]] = []
    for strategy in strategies:
        try:
            result = strategy.fn()
        except Exception as e:
            logger.debug("Strategy %r failed to %s.", strategy.name, what, exc_info=True)
            failures.append((strategy.name, f"{type(e).__name__}: {e}"))
            continue
        if result:
            logger.debug("Strategy %r succeeded (%s).", strategy.name, what)
            return result
        failures.append((strategy.name, "no match"))

    raise error_cls(what, failures)


def match_preferred(options: Sequence[str], preferred: Sequence[str]) -> Optional[int]:
    """
    Index of the first option containing a preferred needle (case-insensitive), or None.

    Needles are tried in priority order, so `("Acme Home Care LLC", "Acme")` prefers the
    exact organization before a looser match.
    """
    needles = [p.strip().casefold() for p in preferred if p and p.strip()]
    for needle in needles:
        for i, opt in enumerate(options):
            if needle in (opt or "").casefold():
                return i
    return None
