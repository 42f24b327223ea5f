from .agent import InteractiveAgent
from .client import ChallengeOutcome, LoginOutcome, PortalClient
from .navigation import NavigationPlan, NavigationStep, build_navigation_plan
from .selectors import PortalSelectors

__all__ = [
    "ChallengeOutcome",
    "InteractiveAgent",
    "LoginOutcome",
    "NavigationPlan",
    "NavigationStep",
    "PortalClient",
    "PortalSelectors",
    "build_navigation_plan",
]
