from .dates import parse_timestamp, utcnow

__all__ = ["parse_timestamp", "utcnow"]
