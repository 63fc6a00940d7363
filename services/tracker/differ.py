"""Inventory diffing between successive complete snapshots."""
from typing import Mapping, Optional

import structlog

from .models import ItemDelta, ItemsSnapshot

logger = structlog.get_logger()


class InventoryDiffer:
    """Owns the last observed inventory and turns new snapshots into deltas.

    Without an initial mapping the first snapshot only establishes the
    baseline: the bag contents at startup are not gains.
    """

    def __init__(self, initial: Optional[Mapping[str, int]] = None):
        self._items: Optional[dict[str, int]] = dict(initial) if initial is not None else None

    @property
    def primed(self) -> bool:
        return self._items is not None

    def inventory(self) -> dict[str, int]:
        """Copy of the last observed inventory."""
        return dict(self._items or {})

    def apply(self, snapshot: ItemsSnapshot) -> list[ItemDelta]:
        """Replace the retained inventory and return the non-zero changes.

        Order: items as they appear in the new snapshot, then items that
        vanished from it, in their previous order.
        """
        new = dict(snapshot.items)
        if self._items is None:
            self._items = new
            logger.info("inventory_baseline_set", item_count=len(new))
            return []

        old = self._items
        deltas = []
        for name, quantity in new.items():
            change = quantity - old.get(name, 0)
            if change:
                deltas.append(ItemDelta(item_name=name, delta=change, observed_at=snapshot.at))
        for name, quantity in old.items():
            if name not in new and quantity:
                deltas.append(ItemDelta(item_name=name, delta=-quantity, observed_at=snapshot.at))

        self._items = new
        if deltas:
            logger.debug("inventory_changed", delta_count=len(deltas))
        return deltas
