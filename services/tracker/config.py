"""Tracker configuration from environment variables."""
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .broadcaster import DEFAULT_BUFFER_SIZE
from .catalog import FLAME_ELEMENTIUM
from .session import NegativeDeltaPolicy, OverlapPolicy
from .tailer import DEFAULT_MAX_READ_BYTES


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class TrackerSettings(BaseModel):
    """Runtime settings; invalid values fail at load time."""
    log_path: Path = Field(..., description="Game client log to follow")
    data_dir: Path = Path("/data/tracker")
    poll_interval: float = Field(0.5, gt=0)
    max_read_bytes: int = Field(DEFAULT_MAX_READ_BYTES, ge=1024)
    primary_resource: str = FLAME_ELEMENTIUM
    overlap_policy: OverlapPolicy = OverlapPolicy.AUTO_CLOSE
    negative_delta_policy: NegativeDeltaPolicy = NegativeDeltaPolicy.SESSION_FLOOR
    subscriber_buffer: int = Field(DEFAULT_BUFFER_SIZE, ge=1)
    pickups_only: bool = False
    item_catalog_path: Optional[Path] = None
    item_values_path: Optional[Path] = None
    session_sink_url: Optional[str] = None

    @property
    def sessions_path(self) -> Path:
        return self.data_dir / "sessions.jsonl"

    @classmethod
    def from_env(cls, environ=None) -> "TrackerSettings":
        env = os.environ if environ is None else environ
        values = {
            "log_path": env.get("LOG_PATH", "UE_game.log"),
            "data_dir": env.get("DATA_DIR", "/data/tracker"),
            "poll_interval": env.get("POLL_INTERVAL", "0.5"),
            "max_read_bytes": env.get("MAX_READ_BYTES", str(DEFAULT_MAX_READ_BYTES)),
            "primary_resource": env.get("PRIMARY_RESOURCE", FLAME_ELEMENTIUM),
            "overlap_policy": env.get("OVERLAP_POLICY", OverlapPolicy.AUTO_CLOSE.value),
            "negative_delta_policy": env.get(
                "NEGATIVE_DELTA_POLICY", NegativeDeltaPolicy.SESSION_FLOOR.value
            ),
            "subscriber_buffer": env.get("SUBSCRIBER_BUFFER", str(DEFAULT_BUFFER_SIZE)),
            "pickups_only": _flag(env.get("PICKUPS_ONLY", "false")),
            "item_catalog_path": env.get("ITEM_CATALOG_PATH") or None,
            "item_values_path": env.get("ITEM_VALUES_PATH") or None,
            "session_sink_url": env.get("SESSION_SINK_URL") or None,
        }
        return cls(**values)
