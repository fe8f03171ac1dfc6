"""
Explicit per-invocation sync state

SyncContext is built once per invocation and passed to every call that
needs it; nothing about an in-flight sync lives in module globals.
SyncCheckpoint is the resumable part, serialised into
ApiConnection.sync_progress after every committed page.
"""
import copy
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from outreach_sync.utils.helpers import parse_datetime

COMPLETE = "complete"


@dataclass
class SyncContext:
    connection_id: int
    workspace_id: int
    platform: str
    api_key: str
    api_shape: Optional[str]
    sync_type: str
    is_retry: bool
    window_start: datetime
    window_end: datetime
    time_budget: float
    clock: Callable[[], float]
    started: float
    lock_token: str
    min_headroom: float = 5.0

    def elapsed(self) -> float:
        return self.clock() - self.started

    def remaining(self) -> float:
        return self.time_budget - self.elapsed()

    def can_fetch(self) -> bool:
        """Enough budget left to start another page fetch"""
        return self.remaining() > self.min_headroom


@dataclass
class SyncCheckpoint:
    step: Optional[str] = None
    step_index: int = 0
    page: int = 0
    chunk_index: int = 0
    parent_offset: int = 0
    totals: Dict[str, int] = field(default_factory=dict)
    records_failed: int = 0
    errors: List[str] = field(default_factory=list)
    heartbeat: Optional[str] = None
    window_start: Optional[str] = None
    window_end: Optional[str] = None
    sync_type: str = "full"
    invocations: int = 0
    started_at: Optional[str] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SyncCheckpoint":
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def copy(self) -> "SyncCheckpoint":
        return SyncCheckpoint.from_dict(copy.deepcopy(self.to_dict()))

    def adopt(self, other: "SyncCheckpoint"):
        """Take over the state of a working copy once it has been committed"""
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(other, name))

    @property
    def is_resumable(self) -> bool:
        return self.step is not None and self.step != COMPLETE and self.window_start is not None

    @property
    def window(self):
        return parse_datetime(self.window_start), parse_datetime(self.window_end)

    def add_count(self, counter: str, amount: int):
        self.totals[counter] = self.totals.get(counter, 0) + amount

    def add_errors(self, errors: List[str], cap: int = 20):
        """Keep only the most recent `cap` errors"""
        self.errors = (self.errors + list(errors))[-cap:]

    def next_page(self):
        self.page += 1

    def next_chunk(self):
        self.chunk_index += 1
        self.page = 0

    def next_parent(self):
        self.parent_offset += 1
        self.page = 0

    def advance_step(self, step_names: List[str]):
        """Move to the start of the following step, or to complete"""
        self.step_index += 1
        self.page = 0
        self.chunk_index = 0
        self.parent_offset = 0
        self.step = step_names[self.step_index] if self.step_index < len(step_names) else COMPLETE


@dataclass
class SyncRequest:
    """One call to the sync entry point"""
    workspace_id: int
    platform: str
    sync_type: str = "full"  # full, incremental
    reset: bool = False
    diagnostic: bool = False
    is_retry: bool = False
