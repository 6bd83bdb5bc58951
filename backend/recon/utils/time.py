from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return the current UTC time as a naive datetime (matches the DB columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_now_iso() -> str:
    """Return an ISO 8601 string for the current UTC time."""
    return datetime.now(timezone.utc).isoformat()
