"""Data models for the tracker service."""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union
import uuid

from pydantic import BaseModel, ConfigDict, Field

# Throughput is undefined below this much elapsed time
MIN_ELAPSED_SECONDS = 1.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_session_id() -> str:
    """Generate unique session ID."""
    return f"ses_{uuid.uuid4().hex[:12]}"


# ── Log reading ──────────────────────────────────────────────────────


class LogPosition(BaseModel):
    """How much of the log has been consumed, and from which file."""
    model_config = ConfigDict(frozen=True)

    offset: int = 0
    device: Optional[int] = None
    inode: Optional[int] = None
    size: int = 0
    mtime: float = 0.0

    def same_file(self, device: Optional[int], inode: Optional[int]) -> bool:
        """Compare inode identity; a position with no identity matches anything."""
        if not self.inode or not inode:
            return True
        return (self.device, self.inode) == (device, inode)


class RawLine(BaseModel):
    """One complete line of the log and the byte range it came from."""
    model_config = ConfigDict(frozen=True)

    text: str
    start: int
    end: int


# ── Events ───────────────────────────────────────────────────────────


class ItemsSnapshot(BaseModel):
    """Complete bag contents at one instant."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["items_snapshot"] = "items_snapshot"
    items: dict[str, int]
    at: datetime


class MapChanged(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["map_changed"] = "map_changed"
    map_name: str
    at: datetime


class SessionMarker(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["session_marker"] = "session_marker"
    marker: Literal["start", "stop"]
    at: datetime


class SlotChanged(BaseModel):
    """A single bag slot was initialised or modified."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["slot_changed"] = "slot_changed"
    page_id: int
    slot_id: int
    item_id: str
    item_name: str
    num: int
    is_init: bool = False
    at: datetime


class SlotRemoved(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["slot_removed"] = "slot_removed"
    page_id: int
    slot_id: int
    at: datetime


class PickupMarker(BaseModel):
    """Boundary of an ItemChange@ block such as PickItems."""
    model_config = ConfigDict(frozen=True)

    kind: Literal["pickup_marker"] = "pickup_marker"
    proto_name: str
    is_start: bool
    at: datetime


class Unrecognized(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["unrecognized"] = "unrecognized"


Event = Annotated[
    Union[
        ItemsSnapshot,
        MapChanged,
        SessionMarker,
        SlotChanged,
        SlotRemoved,
        PickupMarker,
        Unrecognized,
    ],
    Field(discriminator="kind"),
]

UNRECOGNIZED = Unrecognized()


# ── Inventory and sessions ───────────────────────────────────────────


class ItemDelta(BaseModel):
    """Signed change of one item between two snapshots."""
    model_config = ConfigDict(frozen=True)

    item_name: str
    delta: int
    observed_at: datetime


class DropRecord(BaseModel):
    """One inventory change attributed to a session."""
    item_name: str
    quantity: int
    value: Optional[float] = None
    at: datetime


class SessionState(str, Enum):
    """Session state machine state."""
    IDLE = "idle"
    ACTIVE = "active"


class Session(BaseModel):
    """A farming session."""
    schema_version: str = "1.0"
    id: str = Field(default_factory=generate_session_id)
    started_at: datetime
    ended_at: Optional[datetime] = None
    map: Optional[str] = None
    map_source: Optional[Literal["user", "log"]] = None
    notes: Optional[str] = None
    drops: list[DropRecord] = Field(default_factory=list)
    primary_resource_gained: int = 0

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    def elapsed_seconds(self, now: Optional[datetime] = None) -> float:
        end = self.ended_at or now or utcnow()
        return (end - self.started_at).total_seconds()

    def elapsed_minutes(self, now: Optional[datetime] = None) -> float:
        return self.elapsed_seconds(now) / 60.0

    def throughput(self, now: Optional[datetime] = None) -> Optional[float]:
        """Primary resource per minute, or None while too little time has passed."""
        seconds = self.elapsed_seconds(now)
        if seconds < MIN_ELAPSED_SECONDS:
            return None
        return self.primary_resource_gained / (seconds / 60.0)

    def total_value(self) -> float:
        return sum(d.value * d.quantity for d in self.drops if d.value is not None)

    def value_per_minute(self, now: Optional[datetime] = None) -> Optional[float]:
        seconds = self.elapsed_seconds(now)
        if seconds < MIN_ELAPSED_SECONDS:
            return None
        return self.total_value() / (seconds / 60.0)


class TrackerSnapshot(BaseModel):
    """Immutable aggregate handed to readers and subscribers."""
    sequence: int
    at: datetime
    state: SessionState
    session: Optional[Session] = None
    closed_session: Optional[Session] = None
    deltas: list[ItemDelta] = Field(default_factory=list)
    inventory: dict[str, int] = Field(default_factory=dict)
    throughput: Optional[float] = None
    log_reset: bool = False
    in_pickup: bool = False
    zone: Optional[str] = None

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "sequence": 42,
                "at": "2026-02-02T10:15:00Z",
                "state": "active",
                "session": {
                    "id": "ses_abc123def456",
                    "started_at": "2026-02-02T10:00:00Z",
                    "map": "/Game/Art/Maps/01SD/XZ_YuJinZhiXiBiNanSuo200",
                    "drops": [],
                    "primary_resource_gained": 30
                },
                "deltas": [{"item_name": "Flame Elementium", "delta": 5,
                            "observed_at": "2026-02-02T10:15:00Z"}],
                "inventory": {"Flame Elementium": 639},
                "throughput": 2.0,
                "log_reset": False
            }
        },
    )


# ── Commands ─────────────────────────────────────────────────────────


class StartRequested(BaseModel):
    """Request to start a new session."""
    command: Literal["start"] = "start"
    map: Optional[str] = None
    notes: Optional[str] = None
    at: Optional[datetime] = None

    model_config = ConfigDict(
        json_schema_extra={"example": {"map": "Blistering Lava Sea", "notes": "t8 juiced"}}
    )


class StopRequested(BaseModel):
    """Request to end the active session."""
    command: Literal["stop"] = "stop"
    at: Optional[datetime] = None


class AddDropRequested(BaseModel):
    """Manually record a drop on the active session."""
    command: Literal["add_drop"] = "add_drop"
    item_name: str = Field(..., description="Item name")
    quantity: int = 1
    value: Optional[float] = None
    at: Optional[datetime] = None

    model_config = ConfigDict(
        json_schema_extra={"example": {"item_name": "Flame Elementium", "quantity": 20, "value": 1.0}}
    )


class FlushRequested(BaseModel):
    """Retry handing closed sessions whose persistence failed."""
    command: Literal["flush"] = "flush"
    at: Optional[datetime] = None


Command = Union[StartRequested, StopRequested, AddDropRequested, FlushRequested]
