"""Watch a provider portal for new referrals and notify operators by email and SMS."""

__version__ = "0.1.0"
