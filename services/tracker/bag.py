"""Folds per-slot bag lines into complete inventory snapshots."""
from datetime import datetime
from typing import Optional

import structlog

from .models import Event, ItemsSnapshot, PickupMarker, SlotChanged, SlotRemoved

logger = structlog.get_logger()

PICKUP_PROTO = "PickItems"

SlotKey = tuple[int, int]


class BagAssembler:
    """Slot state for the tracked bag pages.

    The client dumps a page with a run of InitBagData lines (after login or
    sorting) and afterwards reports single-slot Modfy/RemoveBagItem lines.
    An init run is buffered until the first event that is not part of it,
    then replaces every slot on the pages it covered.
    """

    def __init__(self):
        self._slots: dict[SlotKey, tuple[str, int]] = {}
        self._init_run: Optional[dict[SlotKey, tuple[str, int]]] = None
        self._init_at: Optional[datetime] = None
        self.in_pickup = False

    @property
    def slot_count(self) -> int:
        return len(self._slots)

    def totals(self) -> dict[str, int]:
        """Item quantities summed across slots, in page/slot order."""
        totals: dict[str, int] = {}
        for key in sorted(self._slots):
            name, num = self._slots[key]
            totals[name] = totals.get(name, 0) + num
        return totals

    def _snapshot(self, at: datetime) -> ItemsSnapshot:
        return ItemsSnapshot(items=self.totals(), at=at)

    def _finish_init_run(self) -> Optional[ItemsSnapshot]:
        if self._init_run is None:
            return None
        run, at = self._init_run, self._init_at
        self._init_run, self._init_at = None, None

        pages = {page for page, _ in run}
        self._slots = {k: v for k, v in self._slots.items() if k[0] not in pages}
        self._slots.update(run)
        logger.debug("bag_init_run_applied", pages=sorted(pages), slots=len(run))
        return self._snapshot(at)

    def feed(self, event: Event) -> list[ItemsSnapshot]:
        """Apply one event; return the snapshots it completes (possibly none)."""
        if isinstance(event, SlotChanged) and event.is_init:
            if self._init_run is None:
                self._init_run = {}
            self._init_run[(event.page_id, event.slot_id)] = (event.item_name, event.num)
            self._init_at = event.at
            return []

        snapshots = []
        finished = self._finish_init_run()
        if finished is not None:
            snapshots.append(finished)

        if isinstance(event, SlotChanged):
            self._slots[(event.page_id, event.slot_id)] = (event.item_name, event.num)
            snapshots.append(self._snapshot(event.at))
        elif isinstance(event, SlotRemoved):
            if self._slots.pop((event.page_id, event.slot_id), None) is not None:
                snapshots.append(self._snapshot(event.at))
        elif isinstance(event, PickupMarker) and event.proto_name == PICKUP_PROTO:
            self.in_pickup = event.is_start

        return snapshots

    def reset_stream(self) -> None:
        """Forget state tied to the line stream; slot contents are kept."""
        self._init_run, self._init_at = None, None
        self.in_pickup = False

    def flush(self) -> list[ItemsSnapshot]:
        """Close a pending init run without waiting for the next event."""
        finished = self._finish_init_run()
        return [finished] if finished is not None else []
