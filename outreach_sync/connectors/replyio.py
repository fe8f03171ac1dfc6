"""
Reply.io connector

sequences -> sequence people (per sequence; archived sequences answer 404)
"""
from typing import Any, Dict, Tuple

from outreach_sync.connectors.base import BaseConnector, ResponseShape, SyncStep
from outreach_sync.models.domain import Campaign, Lead
from outreach_sync.utils.helpers import email_domain, parse_datetime, pick_present

PLATFORM = "replyio"

SEQUENCE_STAT_FIELDS = ("deliveriesCount", "opensCount", "repliesCount", "bouncesCount", "optOutsCount")


class ReplyioV1(ResponseShape):
    """camelCase fields; people wrapped in {"people": [...]}"""
    version = "v1"
    required_fields = {
        "sequences": ("id", "name"),
        "sequence_people": ("id", "email"),
    }

    def extract_sequences(self, response):
        if not isinstance(response, list):
            raise TypeError("expected a list of sequences")
        return response

    def extract_sequence_people(self, response):
        people = response["people"]
        if not isinstance(people, list):
            raise TypeError("expected a list of people")
        return people

    def map_sequences(self, record, ctx, parent):
        return {
            "workspace_id": ctx.workspace_id,
            "platform": PLATFORM,
            "external_id": str(record["id"]),
            "name": record.get("name"),
            "status": record.get("status"),
            "external_created_at": parse_datetime(record.get("created")),
            "reported_stats": pick_present(record, SEQUENCE_STAT_FIELDS),
        }

    def map_sequence_people(self, record, ctx, parent):
        email = (record.get("email") or "").strip().lower() or None
        return {
            "workspace_id": ctx.workspace_id,
            "platform": PLATFORM,
            "external_id": str(record["id"]),
            "campaign_id": parent.id,
            "email": email,
            "email_domain": email_domain(email),
            "first_name": record.get("firstName"),
            "last_name": record.get("lastName"),
            "company_name": record.get("company"),
            "title": record.get("title"),
            "phone": record.get("phone"),
            "status": record.get("status"),
            "external_updated_at": parse_datetime(record.get("lastModified")),
        }


class ReplyioV2(ResponseShape):
    """{"items": [...]} envelopes with snake_case fields"""
    version = "v2"
    required_fields = {
        "sequences": ("id", "name"),
        "sequence_people": ("id", "email"),
    }

    def extract_sequences(self, response):
        items = response["items"]
        if not isinstance(items, list):
            raise TypeError("expected a list of sequences")
        return items

    def extract_sequence_people(self, response):
        items = response["items"]
        if not isinstance(items, list):
            raise TypeError("expected a list of people")
        return items

    def map_sequences(self, record, ctx, parent):
        return {
            "workspace_id": ctx.workspace_id,
            "platform": PLATFORM,
            "external_id": str(record["id"]),
            "name": record.get("name"),
            "status": record.get("status"),
            "external_created_at": parse_datetime(record.get("created_at")),
            "reported_stats": pick_present(record, SEQUENCE_STAT_FIELDS),
        }

    def map_sequence_people(self, record, ctx, parent):
        email = (record.get("email") or "").strip().lower() or None
        return {
            "workspace_id": ctx.workspace_id,
            "platform": PLATFORM,
            "external_id": str(record["id"]),
            "campaign_id": parent.id,
            "email": email,
            "email_domain": email_domain(email),
            "first_name": record.get("first_name"),
            "last_name": record.get("last_name"),
            "company_name": record.get("company_name"),
            "title": record.get("job_title"),
            "phone": record.get("phone"),
            "status": record.get("status"),
            "external_updated_at": parse_datetime(record.get("updated_at")),
        }


class ReplyioConnector(BaseConnector):
    """Connector for the Reply.io sales engagement platform"""
    platform = PLATFORM
    kind = "email"
    default_shape = "v1"
    shapes = {"v1": ReplyioV1, "v2": ReplyioV2}
    steps = [
        SyncStep(
            name="sequences",
            counter="campaigns_synced",
            model=Campaign,
            conflict_keys=("workspace_id", "platform", "external_id"),
            endpoint="/v1/campaigns",
            paging="single",
        ),
        SyncStep(
            name="sequence_people",
            counter="leads_synced",
            model=Lead,
            conflict_keys=("workspace_id", "platform", "external_id"),
            endpoint="/v1/campaigns/{parent_external_id}/people",
            paging="page",
            parent_model=Campaign,
            allow_404=True,
        ),
    ]

    def auth(self, api_key: str) -> Tuple[Dict[str, str], Dict[str, Any]]:
        return {"X-Api-Key": api_key}, {}
