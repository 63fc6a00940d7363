"""Ingestion loop: tail -> classify -> diff -> session -> broadcast.

All tracker state is owned by the loop. Commands from front ends are
queued and applied at the start of the next tick, in arrival order;
readers get copies through ``current()`` or a broadcaster subscription.
"""
import asyncio
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

import structlog

from .bag import BagAssembler
from .broadcaster import Broadcaster
from .catalog import DEFAULT_CATALOG, ItemCatalog, load_item_values
from .classifier import classify
from .config import TrackerSettings
from .differ import InventoryDiffer
from .errors import PersistenceError, SessionConflictError, TailError
from .models import (
    AddDropRequested,
    Command,
    Event,
    FlushRequested,
    ItemDelta,
    ItemsSnapshot,
    MapChanged,
    PickupMarker,
    Session,
    SessionMarker,
    SlotChanged,
    SlotRemoved,
    StartRequested,
    StopRequested,
    TrackerSnapshot,
    utcnow,
)
from .session import SessionStateMachine
from .storage import SessionSink
from .tailer import Tailer

logger = structlog.get_logger()


class Tracker:
    """One watched log file and the session built from it."""

    def __init__(
        self,
        settings: TrackerSettings,
        sink: Optional[SessionSink] = None,
        catalog: Optional[ItemCatalog] = None,
        item_values: Optional[dict[str, float]] = None,
        broadcaster: Optional[Broadcaster] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.sink = sink
        self.clock = clock

        if catalog is None:
            catalog = (ItemCatalog.from_file(settings.item_catalog_path)
                       if settings.item_catalog_path else DEFAULT_CATALOG)
        if item_values is None:
            item_values = load_item_values(settings.item_values_path)
        self.catalog = catalog

        self.tailer = Tailer(settings.log_path, max_read_bytes=settings.max_read_bytes)
        self.bag = BagAssembler()
        self.differ = InventoryDiffer()
        self.sessions = SessionStateMachine(
            primary_resource=settings.primary_resource,
            overlap_policy=settings.overlap_policy,
            negative_policy=settings.negative_delta_policy,
            item_values=item_values,
            clock=clock,
        )
        self.broadcaster = broadcaster or Broadcaster(settings.subscriber_buffer)

        self.zone: Optional[str] = None
        self.pending_sessions: list[Session] = []
        self.lines_processed = 0
        self._sequence = 0
        self._file_state: Optional[str] = None
        self._backlog = False
        self._commands: asyncio.Queue = asyncio.Queue()
        self._wakeup = asyncio.Event()
        self._stopping = asyncio.Event()
        self.running = False

    # ── read side ────────────────────────────────────────────────────

    def _build_snapshot(self, deltas: Iterable[ItemDelta] = (), log_reset: bool = False,
                        closed: Optional[Session] = None) -> TrackerSnapshot:
        now = self.clock()
        session = self.sessions.snapshot()
        return TrackerSnapshot(
            sequence=self._sequence,
            at=now,
            state=self.sessions.state,
            session=session,
            closed_session=closed.model_copy(deep=True) if closed else None,
            deltas=list(deltas),
            inventory=self.differ.inventory(),
            throughput=session.throughput(now) if session else None,
            log_reset=log_reset,
            in_pickup=self.bag.in_pickup,
            zone=self.zone,
        )

    def current(self) -> TrackerSnapshot:
        """Copy of the current aggregate, for an initial render."""
        return self._build_snapshot()

    def _publish(self, deltas: Iterable[ItemDelta] = (), log_reset: bool = False,
                 closed: Optional[Session] = None) -> TrackerSnapshot:
        self._sequence += 1
        snapshot = self._build_snapshot(deltas, log_reset, closed)
        self.broadcaster.publish(snapshot)
        return snapshot

    # ── control side ─────────────────────────────────────────────────

    def submit(self, command: Command) -> asyncio.Future:
        """Queue a command for the loop; the future resolves once it is applied."""
        if command.at is None:
            command = command.model_copy(update={"at": self.clock()})
        future = asyncio.get_running_loop().create_future()
        self._commands.put_nowait((command, future))
        self._wakeup.set()
        logger.debug("command_queued", command=command.command)
        return future

    async def request(self, command: Command, timeout: Optional[float] = None):
        """Submit a command and wait for its result."""
        return await asyncio.wait_for(self.submit(command), timeout)

    def retarget(self, path: Path) -> None:
        """Follow a different log file; the inventory is kept."""
        self.tailer.retarget(path)
        self.bag.reset_stream()
        self._file_state = None

    async def _flush_pending(self) -> int:
        """Retry handing closed sessions that previously failed to persist."""
        if self.sink is None:
            return 0
        saved = 0
        remaining = []
        for session in self.pending_sessions:
            try:
                await self.sink.save(session.model_copy(deep=True))
                saved += 1
            except PersistenceError as e:
                logger.warning("session_persist_retry_failed", session_id=session.id, error=e.reason)
                remaining.append(session)
        self.pending_sessions = remaining
        if saved:
            logger.info("pending_sessions_flushed", saved=saved, remaining=len(remaining))
        return saved

    async def _hand_off(self, session: Session) -> None:
        if self.sink is None:
            logger.debug("no_session_sink", session_id=session.id)
            return
        try:
            await self.sink.save(session.model_copy(deep=True))
        except PersistenceError as e:
            self.pending_sessions.append(session)
            logger.error("session_persist_failed", session_id=session.id, error=e.reason)
            raise

    async def _start(self, map: Optional[str], notes: Optional[str], at: Optional[datetime]) -> Session:
        closed, opened = self.sessions.start(map=map, notes=notes, at=at, inferred_map=self.zone)
        if closed is not None:
            try:
                await self._hand_off(closed)
            except PersistenceError:
                # The new session is open either way; the old one waits in pending_sessions
                pass
        self._publish(closed=closed)
        return opened

    async def _stop(self, at: Optional[datetime]) -> Optional[Session]:
        closed = self.sessions.stop(at=at)
        if closed is None:
            return None
        try:
            await self._hand_off(closed)
        finally:
            self._publish(closed=closed)
        return closed.model_copy(deep=True)

    async def _apply_command(self, command: Command):
        if isinstance(command, StartRequested):
            return await self._start(command.map, command.notes, command.at)
        if isinstance(command, StopRequested):
            return await self._stop(command.at)
        if isinstance(command, FlushRequested):
            return await self._flush_pending()
        if isinstance(command, AddDropRequested):
            self.sessions.add_drop(command.item_name, command.quantity, command.value, command.at)
            self._publish()
            return self.sessions.snapshot()
        raise TypeError(f"Unknown command: {command!r}")

    async def _drain_commands(self) -> int:
        applied = 0
        while True:
            try:
                command, future = self._commands.get_nowait()
            except asyncio.QueueEmpty:
                return applied
            try:
                result = await self._apply_command(command)
            except Exception as e:
                logger.warning("command_failed", command=command.command, error=str(e))
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            applied += 1

    # ── log side ─────────────────────────────────────────────────────

    def _attribute(self, deltas: list[ItemDelta]) -> None:
        if self.settings.pickups_only and not self.bag.in_pickup:
            logger.debug("deltas_outside_pickup", delta_count=len(deltas))
            return
        self.sessions.apply_deltas(deltas)

    async def apply_event(self, event: Event) -> bool:
        """Apply one classified event; returns True when state changed."""
        if isinstance(event, (SlotChanged, SlotRemoved, PickupMarker, ItemsSnapshot)):
            snapshots = self.bag.feed(event)
            if isinstance(event, ItemsSnapshot):
                snapshots.append(event)
            changed = False
            for snapshot in snapshots:
                was_primed = self.differ.primed
                deltas = self.differ.apply(snapshot)
                if deltas:
                    self._attribute(deltas)
                if deltas or not was_primed:
                    self._publish(deltas)
                    changed = True
            return changed

        if isinstance(event, MapChanged):
            self.zone = event.map_name
            if self.sessions.apply_map(event):
                self._publish()
                return True
            return False

        if isinstance(event, SessionMarker):
            if event.marker == "start":
                try:
                    await self._start(None, None, event.at)
                except SessionConflictError:
                    return False
                return True
            return await self._stop(event.at) is not None

        return False

    def _note_file_state(self, state: str, **context) -> None:
        if state == self._file_state:
            return
        self._file_state = state
        if state == "ok":
            logger.info("log_file_readable", path=str(self.tailer.path), **context)
        elif state == "missing":
            logger.warning("log_file_missing", path=str(self.tailer.path))
        else:
            logger.error("log_file_unreadable", path=str(self.tailer.path), **context)

    async def _poll_log(self) -> int:
        self._backlog = False
        try:
            batch = self.tailer.poll()
        except TailError as e:
            self._note_file_state("error", error=str(e.error))
            return 0

        if batch.missing:
            self._note_file_state("missing")
            return 0
        self._note_file_state("ok")
        self._backlog = batch.more

        if batch.reset:
            self.bag.reset_stream()
            self._publish(log_reset=True)

        received_at = self.clock()
        count = 0
        for raw in batch:
            try:
                event = classify(raw.text, received_at=received_at, catalog=self.catalog)
                await self.apply_event(event)
            except PersistenceError:
                # Already logged and kept in pending_sessions
                pass
            except Exception as e:
                logger.error("line_apply_failed", start=raw.start, error=str(e))
            count += 1
        self.lines_processed += count
        return count

    async def tick(self) -> int:
        """One loop iteration: queued commands first, then new log lines."""
        await self._drain_commands()
        return await self._poll_log()

    async def run(self) -> None:
        """Poll until stop(); never closes the active session."""
        self._stopping.clear()
        self.running = True
        logger.info(
            "tracker_started",
            path=str(self.tailer.path),
            poll_interval=self.settings.poll_interval,
        )
        try:
            while not self._stopping.is_set():
                try:
                    await self.tick()
                except Exception as e:
                    logger.error("tick_failed", error=str(e))

                self._wakeup.clear()
                if self._backlog:
                    # More bytes are waiting; read on without sleeping
                    await asyncio.sleep(0)
                elif self._commands.empty() and not self._stopping.is_set():
                    try:
                        await asyncio.wait_for(self._wakeup.wait(), timeout=self.settings.poll_interval)
                    except asyncio.TimeoutError:
                        pass
        finally:
            self.running = False
            logger.info(
                "tracker_stopped",
                offset=self.tailer.position.offset,
                session_active=self.sessions.active,
            )

    def stop(self) -> None:
        """Ask the loop to exit after the in-flight tick."""
        self._stopping.set()
        self._wakeup.set()
