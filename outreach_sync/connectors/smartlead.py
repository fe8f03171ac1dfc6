"""
Smartlead connector

campaigns -> campaign leads (per campaign) -> campaign statistics (per campaign)
"""
from typing import Any, Dict, List, Tuple

from outreach_sync.connectors.base import BaseConnector, ResponseShape, SyncStep
from outreach_sync.models.domain import Campaign, EmailActivity, Lead
from outreach_sync.services.contacts import get_or_create_contact
from outreach_sync.utils.helpers import email_domain, parse_datetime, pick_present

PLATFORM = "smartlead"

CAMPAIGN_STAT_FIELDS = ("sent_count", "open_count", "click_count", "reply_count", "bounce_count", "unsubscribed_count")


def _require_list(response: Any, what: str) -> List[Dict[str, Any]]:
    if not isinstance(response, list):
        raise TypeError(f"expected a list of {what}, got {type(response).__name__}")
    return response


def _activity_row(ctx, parent, email: str, step: Any, sent, opened, clicked, replied, bounced, unsubscribed) -> Dict[str, Any]:
    """
    Email activity row for the statistics step.

    Flags are only included when set, so a sync never clears a flag a
    webhook already raised.
    """
    if not email:
        raise ValueError("statistics record has no lead email")
    row = {
        "workspace_id": ctx.workspace_id,
        "campaign_id": parent.id,
        "step_number": int(step or 1),
        "to_email": email.strip().lower(),
    }
    for flag, at_column, value in (
        ("sent", "sent_at", sent),
        ("opened", "first_opened_at", opened),
        ("clicked", "first_clicked_at", clicked),
        ("replied", "replied_at", replied),
    ):
        when = parse_datetime(value)
        if when is not None:
            row[flag] = True
            row[at_column] = when
    if bounced:
        row["bounced"] = True
    if unsubscribed:
        row["unsubscribed"] = True
    return row


class SmartleadV1(ResponseShape):
    """Bare JSON arrays with flat records"""
    version = "v1"
    required_fields = {
        "campaigns": ("id", "name"),
        "campaign_leads": ("id", "email"),
        "campaign_statistics": ("lead_email", "sequence_number"),
    }

    def extract_campaigns(self, response):
        return _require_list(response, "campaigns")

    def extract_campaign_leads(self, response):
        return _require_list(response, "leads")

    def extract_campaign_statistics(self, response):
        return _require_list(response, "statistics")

    def map_campaigns(self, record, ctx, parent):
        return {
            "workspace_id": ctx.workspace_id,
            "platform": PLATFORM,
            "external_id": str(record["id"]),
            "name": record.get("name"),
            "status": record.get("status"),
            "external_created_at": parse_datetime(record.get("created_at")),
            "reported_stats": pick_present(record, CAMPAIGN_STAT_FIELDS),
        }

    def map_campaign_leads(self, record, ctx, parent):
        email = (record.get("email") or "").strip().lower() or None
        external_id = record.get("id") or email
        if not external_id:
            raise ValueError("lead has neither id nor email")
        return {
            "workspace_id": ctx.workspace_id,
            "platform": PLATFORM,
            "external_id": str(external_id),
            "campaign_id": parent.id,
            "email": email,
            "email_domain": email_domain(email),
            "first_name": record.get("first_name"),
            "last_name": record.get("last_name"),
            "company_name": record.get("company_name"),
            "title": record.get("designation"),
            "phone": record.get("phone_number"),
            "status": record.get("lead_status"),
            "external_updated_at": parse_datetime(record.get("updated_at")),
        }

    def map_campaign_statistics(self, record, ctx, parent):
        return _activity_row(
            ctx, parent,
            email=record.get("lead_email"),
            step=record.get("sequence_number"),
            sent=record.get("sent_time"),
            opened=record.get("open_time"),
            clicked=record.get("click_time"),
            replied=record.get("reply_time"),
            bounced=record.get("is_bounced"),
            unsubscribed=record.get("is_unsubscribed"),
        )


class SmartleadV2(ResponseShape):
    """{"data": [...]} envelopes; leads and statistics nest the lead object"""
    version = "v2"
    required_fields = {
        "campaigns": ("id", "name"),
        "campaign_leads": ("lead",),
        "campaign_statistics": ("lead", "sequence_number"),
    }

    def extract_campaigns(self, response):
        return _require_list(response["data"], "campaigns")

    def extract_campaign_leads(self, response):
        return _require_list(response["data"], "leads")

    def extract_campaign_statistics(self, response):
        return _require_list(response["data"], "statistics")

    def map_campaigns(self, record, ctx, parent):
        return {
            "workspace_id": ctx.workspace_id,
            "platform": PLATFORM,
            "external_id": str(record["id"]),
            "name": record.get("name"),
            "status": record.get("status"),
            "external_created_at": parse_datetime(record.get("created_at")),
            "reported_stats": pick_present(record, CAMPAIGN_STAT_FIELDS),
        }

    def map_campaign_leads(self, record, ctx, parent):
        lead = record["lead"]
        email = (lead.get("email") or "").strip().lower() or None
        external_id = lead.get("id") or email
        if not external_id:
            raise ValueError("lead has neither id nor email")
        return {
            "workspace_id": ctx.workspace_id,
            "platform": PLATFORM,
            "external_id": str(external_id),
            "campaign_id": parent.id,
            "email": email,
            "email_domain": email_domain(email),
            "first_name": lead.get("first_name"),
            "last_name": lead.get("last_name"),
            "company_name": lead.get("company_name"),
            "title": lead.get("designation"),
            "phone": lead.get("phone_number"),
            "status": record.get("status"),
            "external_updated_at": parse_datetime(record.get("updated_at")),
        }

    def map_campaign_statistics(self, record, ctx, parent):
        events = record.get("events") or {}
        return _activity_row(
            ctx, parent,
            email=record["lead"].get("email"),
            step=record.get("sequence_number"),
            sent=events.get("sent_at"),
            opened=events.get("opened_at"),
            clicked=events.get("clicked_at"),
            replied=events.get("replied_at"),
            bounced=record.get("is_bounced"),
            unsubscribed=record.get("is_unsubscribed"),
        )


class SmartleadConnector(BaseConnector):
    """Connector for the Smartlead cold email platform"""
    platform = PLATFORM
    kind = "email"
    default_shape = "v1"
    shapes = {"v1": SmartleadV1, "v2": SmartleadV2}
    steps = [
        SyncStep(
            name="campaigns",
            counter="campaigns_synced",
            model=Campaign,
            conflict_keys=("workspace_id", "platform", "external_id"),
            endpoint="/campaigns",
            paging="single",
        ),
        SyncStep(
            name="campaign_leads",
            counter="leads_synced",
            model=Lead,
            conflict_keys=("workspace_id", "platform", "external_id"),
            endpoint="/campaigns/{parent_external_id}/leads",
            paging="offset",
            parent_model=Campaign,
        ),
        SyncStep(
            name="campaign_statistics",
            counter="activities_synced",
            model=EmailActivity,
            conflict_keys=("workspace_id", "campaign_id", "contact_id", "step_number"),
            endpoint="/campaigns/{parent_external_id}/statistics",
            paging="offset",
            parent_model=Campaign,
        ),
    ]

    def auth(self, api_key: str) -> Tuple[Dict[str, str], Dict[str, Any]]:
        return {}, {"api_key": api_key}

    def prepare_row(self, db, ctx, step, row):
        if step.model is not EmailActivity:
            return row
        contact = get_or_create_contact(db, ctx.workspace_id, row["to_email"], source="sync")
        return {**row, "contact_id": contact.id, "company_id": contact.company_id}
