"""
PhoneBurner connector

contacts -> dial sessions (date-chunked, 90 day max range) -> session calls (per session)
"""
from typing import Any, Dict, Tuple

from outreach_sync.config import get_settings
from outreach_sync.connectors.base import BaseConnector, ResponseShape, SyncStep
from outreach_sync.models.domain import CallActivity, DialSession, Lead
from outreach_sync.utils.helpers import email_domain, parse_datetime

settings = get_settings()

PLATFORM = "phoneburner"


def _nested_list(response, key: str):
    """v1 responses wrap each list twice: {"calls": {"calls": [...], "page": 1}}"""
    inner = response[key][key]
    if not isinstance(inner, list):
        raise TypeError(f"expected a list under {key}.{key}")
    return inner


def _flat_list(response, key: str):
    items = response[key]
    if not isinstance(items, list):
        raise TypeError(f"expected a list under {key}")
    return items


def _float_or_none(value):
    if value is None or value == "":
        return None
    return float(value)


class PhoneBurnerV1(ResponseShape):
    """REST v1 envelopes with nested objects for email, phone and caller"""
    version = "v1"
    required_fields = {
        "contacts": ("contact_user_id",),
        "dial_sessions": ("dialsession_id",),
        "session_calls": ("call_id",),
    }

    def extract_contacts(self, response):
        return _nested_list(response, "contacts")

    def extract_dial_sessions(self, response):
        return _nested_list(response, "dialsessions")

    def extract_session_calls(self, response):
        return _nested_list(response, "calls")

    def map_contacts(self, record, ctx, parent):
        email = ((record.get("primary_email") or {}).get("email_address") or "").strip().lower() or None
        return {
            "workspace_id": ctx.workspace_id,
            "platform": PLATFORM,
            "external_id": str(record["contact_user_id"]),
            "email": email,
            "email_domain": email_domain(email),
            "first_name": record.get("first_name"),
            "last_name": record.get("last_name"),
            "company_name": record.get("company"),
            "phone": (record.get("primary_phone") or {}).get("raw_phone"),
            "external_updated_at": parse_datetime(record.get("date_modified")),
        }

    def map_dial_sessions(self, record, ctx, parent):
        return {
            "workspace_id": ctx.workspace_id,
            "platform": PLATFORM,
            "external_id": str(record["dialsession_id"]),
            "caller_name": (record.get("caller") or {}).get("name"),
            "started_at": parse_datetime(record.get("start_when")),
            "ended_at": parse_datetime(record.get("end_when")),
            "call_count": record.get("call_count"),
        }

    def map_session_calls(self, record, ctx, parent):
        connected = record.get("connected")
        return {
            "workspace_id": ctx.workspace_id,
            "platform": PLATFORM,
            "external_event_id": str(record["call_id"]),
            "dial_session_id": parent.id,
            "lead_external_id": str(record["contact_user_id"]) if record.get("contact_user_id") else None,
            "to_phone": record.get("phone"),
            "caller_name": parent.caller_name,
            "disposition": record.get("disposition"),
            "connected": None if connected is None else bool(int(connected)),
            "duration_seconds": _float_or_none(record.get("duration")),
            "called_at": parse_datetime(record.get("start_when")),
            "recording_url": record.get("recording_url"),
            "notes": record.get("notes"),
        }


class PhoneBurnerV2(ResponseShape):
    """Flat lists with flat records"""
    version = "v2"
    required_fields = {
        "contacts": ("id",),
        "dial_sessions": ("id", "started_at"),
        "session_calls": ("id",),
    }

    def extract_contacts(self, response):
        return _flat_list(response, "contacts")

    def extract_dial_sessions(self, response):
        return _flat_list(response, "dialsessions")

    def extract_session_calls(self, response):
        return _flat_list(response, "calls")

    def map_contacts(self, record, ctx, parent):
        email = (record.get("email") or "").strip().lower() or None
        return {
            "workspace_id": ctx.workspace_id,
            "platform": PLATFORM,
            "external_id": str(record["id"]),
            "email": email,
            "email_domain": email_domain(email),
            "first_name": record.get("first_name"),
            "last_name": record.get("last_name"),
            "company_name": record.get("company"),
            "phone": record.get("phone"),
            "external_updated_at": parse_datetime(record.get("updated_at")),
        }

    def map_dial_sessions(self, record, ctx, parent):
        return {
            "workspace_id": ctx.workspace_id,
            "platform": PLATFORM,
            "external_id": str(record["id"]),
            "caller_name": record.get("caller_name"),
            "started_at": parse_datetime(record.get("started_at")),
            "ended_at": parse_datetime(record.get("ended_at")),
            "call_count": record.get("calls"),
        }

    def map_session_calls(self, record, ctx, parent):
        return {
            "workspace_id": ctx.workspace_id,
            "platform": PLATFORM,
            "external_event_id": str(record["id"]),
            "dial_session_id": parent.id,
            "lead_external_id": str(record["contact_id"]) if record.get("contact_id") else None,
            "to_phone": record.get("to_phone"),
            "caller_name": parent.caller_name,
            "disposition": record.get("disposition"),
            "connected": record.get("connected"),
            "duration_seconds": _float_or_none(record.get("duration_seconds")),
            "called_at": parse_datetime(record.get("called_at")),
            "recording_url": record.get("recording_url"),
            "notes": record.get("notes"),
        }


class PhoneBurnerConnector(BaseConnector):
    """Connector for the PhoneBurner power dialer"""
    platform = PLATFORM
    kind = "calls"
    default_shape = "v1"
    shapes = {"v1": PhoneBurnerV1, "v2": PhoneBurnerV2}
    size_param = "page_size"
    steps = [
        SyncStep(
            name="contacts",
            counter="contacts_synced",
            model=Lead,
            conflict_keys=("workspace_id", "platform", "external_id"),
            endpoint="/contacts",
        ),
        SyncStep(
            name="dial_sessions",
            counter="dial_sessions_synced",
            model=DialSession,
            conflict_keys=("workspace_id", "platform", "external_id"),
            endpoint="/dialsession",
            max_range_days=settings.phoneburner_max_range_days,
        ),
        SyncStep(
            name="session_calls",
            counter="calls_synced",
            model=CallActivity,
            conflict_keys=("workspace_id", "platform", "external_event_id"),
            endpoint="/dialsession/{parent_external_id}/calls",
            parent_model=DialSession,
            parent_window_column="started_at",
        ),
    ]

    def auth(self, api_key: str) -> Tuple[Dict[str, str], Dict[str, Any]]:
        return {"Authorization": f"Bearer {api_key}"}, {}
