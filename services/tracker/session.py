"""Session state machine: Idle <-> Active(Session)."""
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, Mapping, Optional

import structlog

from .errors import NoActiveSessionError, SessionConflictError
from .models import DropRecord, ItemDelta, MapChanged, Session, SessionState, utcnow

logger = structlog.get_logger()

# Log stamps carry milliseconds; changes this close to the start still count
START_GRACE = timedelta(seconds=1)


class OverlapPolicy(str, Enum):
    """What a start does while a session is already active."""
    AUTO_CLOSE = "auto_close"
    REJECT = "reject"


class NegativeDeltaPolicy(str, Enum):
    """How consumption of the primary resource affects the gained total."""
    SESSION_FLOOR = "session_floor"
    ZERO_FLOOR = "zero_floor"


def _session_floor(gained: int, delta: int) -> int:
    # Consumption is recorded as a drop but never reduces what was gained
    return gained


def _zero_floor(gained: int, delta: int) -> int:
    return max(0, gained + delta)


NEGATIVE_DELTA_RULES: dict[NegativeDeltaPolicy, Callable[[int, int], int]] = {
    NegativeDeltaPolicy.SESSION_FLOOR: _session_floor,
    NegativeDeltaPolicy.ZERO_FLOOR: _zero_floor,
}


class SessionStateMachine:
    """Owns the current session and applies inventory deltas to it.

    Only the ingestion loop calls the mutating methods; readers use
    ``snapshot()`` which returns a deep copy.
    """

    def __init__(
        self,
        primary_resource: str,
        overlap_policy: OverlapPolicy = OverlapPolicy.AUTO_CLOSE,
        negative_policy: NegativeDeltaPolicy = NegativeDeltaPolicy.SESSION_FLOOR,
        item_values: Optional[Mapping[str, float]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.primary_resource = primary_resource
        self.overlap_policy = OverlapPolicy(overlap_policy)
        self.negative_policy = NegativeDeltaPolicy(negative_policy)
        self.item_values = dict(item_values or {})
        self.clock = clock
        self._current: Optional[Session] = None

    @property
    def state(self) -> SessionState:
        return SessionState.ACTIVE if self._current is not None else SessionState.IDLE

    @property
    def active(self) -> bool:
        return self._current is not None

    def snapshot(self) -> Optional[Session]:
        return self._current.model_copy(deep=True) if self._current else None

    def throughput(self, now: Optional[datetime] = None) -> Optional[float]:
        if self._current is None:
            return None
        return self._current.throughput(now or self.clock())

    # ── transitions ──────────────────────────────────────────────────

    def start(
        self,
        map: Optional[str] = None,
        notes: Optional[str] = None,
        at: Optional[datetime] = None,
        inferred_map: Optional[str] = None,
    ) -> tuple[Optional[Session], Session]:
        """Open a session.

        Returns ``(closed, opened)``; ``closed`` is the session ended by the
        auto-close policy, if any.
        """
        at = at or self.clock()
        closed = None
        if self._current is not None:
            if self.overlap_policy is OverlapPolicy.REJECT:
                logger.warning("session_start_rejected", active_session=self._current.id)
                raise SessionConflictError(self._current.id)
            closed = self.stop(at=at)

        if map:
            source = "user"
        elif inferred_map:
            map, source = inferred_map, "log"
        else:
            source = None
        self._current = Session(started_at=at, map=map, map_source=source, notes=notes)
        logger.info("session_started", session_id=self._current.id, map=map, map_source=source)
        return closed, self._current.model_copy(deep=True)

    def stop(self, at: Optional[datetime] = None) -> Optional[Session]:
        """Close the active session and return it; None when idle."""
        if self._current is None:
            logger.debug("session_stop_ignored_idle")
            return None
        session = self._current
        session.ended_at = at or self.clock()
        self._current = None
        logger.info(
            "session_ended",
            session_id=session.id,
            drops=len(session.drops),
            primary_resource_gained=session.primary_resource_gained,
            elapsed_minutes=round(session.elapsed_minutes(), 2),
        )
        return session

    def apply_deltas(self, deltas: Iterable[ItemDelta]) -> list[DropRecord]:
        """Attribute inventory changes to the active session.

        Changes observed before the session started are backlog from the
        log and are not counted.
        """
        if self._current is None:
            return []
        session = self._current
        earliest = session.started_at - START_GRACE
        records = []
        skipped = 0
        for delta in deltas:
            if not delta.delta:
                continue
            if delta.observed_at < earliest:
                skipped += 1
                continue
            record = DropRecord(
                item_name=delta.item_name,
                quantity=delta.delta,
                value=self.item_values.get(delta.item_name),
                at=delta.observed_at,
            )
            session.drops.append(record)
            records.append(record)

            if delta.item_name == self.primary_resource:
                if delta.delta > 0:
                    session.primary_resource_gained += delta.delta
                else:
                    rule = NEGATIVE_DELTA_RULES[self.negative_policy]
                    session.primary_resource_gained = rule(session.primary_resource_gained, delta.delta)
        if skipped:
            logger.debug("deltas_before_session_start", session_id=session.id, skipped=skipped)
        return records

    def apply_map(self, event: MapChanged) -> bool:
        """Fill in the map from the log; an existing map is kept."""
        if self._current is None or self._current.map:
            return False
        self._current.map = event.map_name
        self._current.map_source = "log"
        logger.info("session_map_inferred", session_id=self._current.id, map=event.map_name)
        return True

    def add_drop(self, item_name: str, quantity: int, value: Optional[float] = None,
                 at: Optional[datetime] = None) -> DropRecord:
        """Record a drop by hand on the active session."""
        if self._current is None:
            raise NoActiveSessionError("No active session to add a drop to")
        if value is None:
            value = self.item_values.get(item_name)
        record = DropRecord(item_name=item_name, quantity=quantity, value=value, at=at or self.clock())
        self._current.drops.append(record)
        if item_name == self.primary_resource and quantity > 0:
            self._current.primary_resource_gained += quantity
        logger.info("drop_added", session_id=self._current.id, item_name=item_name, quantity=quantity)
        return record
