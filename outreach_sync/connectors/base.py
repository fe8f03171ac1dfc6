"""
Base Connector Class

A connector describes one outreach platform: how to authenticate, which
steps a sync walks through, and which response shapes it understands.
The sync orchestrator drives the steps; connectors never loop on their own.
"""
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Type

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from outreach_sync.config import get_settings
from outreach_sync.connectors.client import RateLimitedClient, Transport
from outreach_sync.models.domain import Campaign, DailyMetric, EmailActivity, HourlyMetric
from outreach_sync.services.sync_context import SyncContext
from outreach_sync.services.upsert import RecordResult
from outreach_sync.utils.date_ranges import chunk_date_range
from outreach_sync.utils.exceptions import ApiError, UnknownShape
from outreach_sync.utils.logger import log

settings = get_settings()


@dataclass(frozen=True)
class SyncStep:
    """
    One fetch sequence within a sync.

    paged:   `paging` set, no range or parent
    chunked: `max_range_days` set, the sync window is tiled and each
             sub-range paginated
    fan-out: `parent_model` set, one pagination per stored parent row;
             with `parent_window_column` only parents dated inside the
             sync window (or undated) are walked
    """
    name: str
    counter: str
    model: Any
    conflict_keys: Tuple[str, ...]
    endpoint: str  # may reference {parent_external_id}
    paging: str = "page"  # page, offset, single
    page_size: int = 100
    max_range_days: Optional[int] = None
    parent_model: Any = None
    parent_window_column: Optional[str] = None
    allow_404: bool = False

    @property
    def kind(self) -> str:
        if self.parent_model is not None:
            return "fan_out"
        if self.max_range_days:
            return "chunked"
        return "paged"


class ResponseShape:
    """
    Parser for one known version of a platform's responses.

    Subclasses implement extract_<step>(response) -> list and
    map_<step>(record, ctx, parent) -> row dict. Each shape reads exactly
    one set of field names; alternative layouts get their own shape.
    """
    version = "v1"
    # Fields the first record must carry for matches() to accept a response
    required_fields: Dict[str, Tuple[str, ...]] = {}

    def extract(self, step: str, response: Any) -> List[Dict[str, Any]]:
        if response is None:
            return []
        extractor = getattr(self, f"extract_{step}", None)
        if extractor is None:
            raise UnknownShape(f"{type(self).__name__} has no extractor for step {step}")
        return extractor(response)

    def map(self, step: str, record: Dict[str, Any], ctx: SyncContext, parent=None) -> RecordResult:
        mapper = getattr(self, f"map_{step}")
        ref = self.record_ref(record)
        try:
            row = mapper(record, ctx, parent)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            return RecordResult.failure(f"unmappable record: {type(e).__name__}: {e}", ref=ref)
        return RecordResult.success(row, ref=ref)

    def matches(self, step: str, response: Any) -> bool:
        """Whether this shape can parse the response (diagnostic mode only)"""
        try:
            records = self.extract(step, response)
        except (KeyError, TypeError, AttributeError, ValueError, UnknownShape):
            return False
        if not isinstance(records, list):
            return False
        if not records:
            return True
        first = records[0]
        return isinstance(first, dict) and all(f in first for f in self.required_fields.get(step, ()))

    @staticmethod
    def record_ref(record: Any) -> Optional[str]:
        if isinstance(record, dict):
            for key in ("id", "email"):
                if record.get(key) is not None:
                    return str(record[key])
        return None


class BaseConnector:
    """
    Base class for all platform connectors

    Subclasses set platform, kind, steps and shapes, and implement auth().
    """
    platform: str = ""
    kind: str = "email"  # email, calls
    steps: List[SyncStep] = []
    shapes: Dict[str, Type[ResponseShape]] = {}
    default_shape: str = "v1"

    page_param: str = "page"
    size_param: str = "limit"
    offset_param: str = "offset"
    range_start_param: str = "date_start"
    range_end_param: str = "date_end"

    def __init__(self):
        self.base_url = getattr(settings, f"{self.platform}_base_url")
        self.request_delay = getattr(settings, f"{self.platform}_request_delay_seconds")
        self.rate_limit_backoff = getattr(settings, f"{self.platform}_rate_limit_backoff_seconds")

    def auth(self, api_key: str) -> Tuple[Dict[str, str], Dict[str, Any]]:
        """Return (headers, query params) carrying the credentials"""
        raise NotImplementedError

    def shape_for(self, api_shape: Optional[str]) -> ResponseShape:
        version = api_shape or self.default_shape
        shape_cls = self.shapes.get(version)
        if shape_cls is None:
            raise UnknownShape(f"{self.platform} has no response shape {version!r} (known: {sorted(self.shapes)})")
        return shape_cls()

    def build_client(self, ctx: SyncContext, transport: Optional[Transport] = None, sleep=None) -> RateLimitedClient:
        headers, params = self.auth(ctx.api_key)
        kwargs = {}
        if sleep is not None:
            kwargs["sleep"] = sleep
        return RateLimitedClient(
            self.base_url,
            platform=self.platform,
            headers=headers,
            params=params,
            request_delay=self.request_delay,
            rate_limit_backoff=self.rate_limit_backoff,
            max_retries=settings.request_max_retries,
            timeout=settings.request_timeout_seconds,
            transport=transport,
            **kwargs,
        )

    def step_index(self, name: str) -> int:
        for i, step in enumerate(self.steps):
            if step.name == name:
                return i
        raise KeyError(name)

    def page_size(self, step: SyncStep) -> int:
        return min(step.page_size, settings.max_page_size)

    def page_params(self, step: SyncStep, page: int) -> Dict[str, Any]:
        """Query params for a 0-indexed page of a step"""
        size = self.page_size(step)
        if step.paging == "page":
            return {self.page_param: page + 1, self.size_param: size}
        if step.paging == "offset":
            return {self.offset_param: page * size, self.size_param: size}
        return {}

    def range_params(self, start: datetime, end: datetime) -> Dict[str, Any]:
        return {
            self.range_start_param: start.strftime("%Y-%m-%d %H:%M:%S"),
            self.range_end_param: end.strftime("%Y-%m-%d %H:%M:%S"),
        }

    def endpoint_for(self, step: SyncStep, parent=None) -> str:
        if parent is None:
            return step.endpoint
        return step.endpoint.format(parent_external_id=parent.external_id)

    def prepare_row(self, db: Session, ctx: SyncContext, step: SyncStep, row: Dict[str, Any]) -> Dict[str, Any]:
        """Hook run inside the row's SAVEPOINT before the upsert"""
        return row

    def parent_query(self, db: Session, ctx: SyncContext, step: SyncStep):
        """Stored parent rows a fan-out step walks, in a stable order"""
        model = step.parent_model
        query = db.query(model).filter(
            model.workspace_id == ctx.workspace_id,
            model.platform == self.platform,
        )
        if step.parent_window_column:
            column = getattr(model, step.parent_window_column)
            query = query.filter(or_(column.is_(None), column >= ctx.window_start))
        return query.order_by(model.id)

    def reset_data(self, db: Session, workspace_id: int) -> Dict[str, int]:
        """Delete everything this platform's syncs wrote for a workspace"""
        deleted = {}
        if self.kind == "email":
            campaign_ids = select(Campaign.id).where(
                Campaign.workspace_id == workspace_id,
                Campaign.platform == self.platform,
            )
            for model in (EmailActivity, HourlyMetric, DailyMetric):
                deleted[model.__tablename__] = db.query(model).filter(
                    model.campaign_id.in_(campaign_ids)
                ).delete(synchronize_session=False)

        for step in reversed(self.steps):
            model = step.model
            if "platform" not in model.__table__.c or model.__tablename__ in deleted:
                continue
            deleted[model.__tablename__] = db.query(model).filter(
                model.workspace_id == workspace_id,
                model.platform == self.platform,
            ).delete(synchronize_session=False)
        return deleted

    async def diagnose(self, db: Session, ctx: SyncContext, client: RateLimitedClient) -> Dict[str, Any]:
        """
        Hit each step's endpoint once and report which known shapes match.

        Read-only: no rows are written and the checkpoint is untouched.
        """
        report = {"platform": self.platform, "pinned_shape": ctx.api_shape or self.default_shape, "steps": []}
        for step in self.steps:
            entry = {"step": step.name, "kind": step.kind}
            parent = None
            if step.kind == "fan_out":
                parent = self.parent_query(db, ctx, step).first()
                if parent is None:
                    entry.update({"skipped": True, "reason": "no stored parent rows yet"})
                    report["steps"].append(entry)
                    continue

            endpoint = self.endpoint_for(step, parent)
            params = self.page_params(step, 0)
            if step.kind == "chunked":
                chunks = chunk_date_range(ctx.window_start, ctx.window_end, step.max_range_days)
                if chunks:
                    params.update(self.range_params(*chunks[0]))

            entry["endpoint"] = endpoint
            try:
                response = await client.request(endpoint, params=params, allow_404=step.allow_404)
            except ApiError as e:
                entry.update({"ok": False, "error": str(e), "status_code": e.status_code})
                report["steps"].append(entry)
                continue

            entry["ok"] = True
            entry["matching_shapes"] = [
                version for version, shape_cls in sorted(self.shapes.items())
                if shape_cls().matches(step.name, response)
            ]
            entry["sample"] = json.dumps(response, default=str)[:2000]
            report["steps"].append(entry)
            log.info(f"{self.platform} diagnostic {step.name}: shapes={entry['matching_shapes']}")
        return report
