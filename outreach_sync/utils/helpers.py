"""
Helper utilities
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import hashlib
import json

from dateutil import parser as date_parser


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hash_data(data: Any) -> str:
    """Create hash of data for caching/deduplication"""
    data_str = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(data_str.encode()).hexdigest()


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an API timestamp into naive UTC, or None"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = date_parser.parse(str(value))
        except (ValueError, OverflowError):
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def email_domain(email: Optional[str]) -> Optional[str]:
    """Lower-cased domain part of an email address"""
    if not email or "@" not in email:
        return None
    domain = email.rsplit("@", 1)[1].strip().lower()
    return domain or None


def truncate(text: Optional[str], limit: int = 500) -> Optional[str]:
    if text is None:
        return None
    return text[:limit]


def pick_present(record: Dict[str, Any], keys) -> Optional[Dict[str, Any]]:
    """Subset of record with the given keys that carry a value, or None when none do"""
    picked = {k: record[k] for k in keys if record.get(k) is not None}
    return picked or None
