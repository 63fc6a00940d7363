"""Line classification for the game client log.

Every line maps to exactly one event. Matching is by known substrings and
field markers rather than a grammar, since the log format is not stable
between client patches. Anything that does not match, or matches but
carries a field that does not parse, becomes ``Unrecognized``.

Recognised lines::

    [2026.02.02-10.00.00:123][ 42]GameLog: Display: [Game] BagMgr@:Modfy BagItem PageId = 102 SlotId = 0 ConfigBaseId = 100300 Num = 671
    ... BagMgr@:InitBagData PageId = 102 SlotId = 0 ConfigBaseId = 100300 Num = 609
    ... BagMgr@:RemoveBagItem PageId = 103 SlotId = 39
    ... BagMgr@:BagContents Items = [Flame Elementium: 609, 5028: 12]
    ... ItemChange@ ProtoName=PickItems start
    ... SceneLevelMgr@ OpenMainWorld END! InMainLevelPath = /Game/Art/Maps/...
    ... Session@ Start
"""
import re
from datetime import datetime, timezone
from typing import Optional

import structlog

from .catalog import DEFAULT_CATALOG, ItemCatalog
from .models import (
    UNRECOGNIZED,
    Event,
    ItemsSnapshot,
    MapChanged,
    PickupMarker,
    SessionMarker,
    SlotChanged,
    SlotRemoved,
)

# Gear page; equipment churn is not loot
EXCLUDED_PAGES = frozenset({100})

TIMESTAMP_PREFIX_RE = re.compile(r"^\[(?P<stamp>\d{4}\.[^\]]*)\]")
TIMESTAMP_FORMAT = "%Y.%m.%d-%H.%M.%S:%f"

BAG_CONTENTS_MARKER = "BagMgr@:BagContents"
BAG_INIT_MARKER = "BagMgr@:InitBagData"
BAG_MODIFY_RE = re.compile(r"BagMgr@:Modi?fy\b")
BAG_REMOVE_MARKER = "BagMgr@:RemoveBagItem"
ITEMS_LIST_RE = re.compile(r"Items\s*=\s*\[(?P<body>[^\]\[]*)\]")
ITEM_PAIR_RE = re.compile(r"^\s*(?P<name>[^:=]*?[^\s:=])\s*[:=]\s*(?P<qty>\d+)\s*$")

CONTEXT_MARKER = "ItemChange@"
PROTO_RE = re.compile(r"ProtoName=(?P<proto>\S+)\s+(?P<marker>start|end)\s*$")

MAP_MARKER = "OpenMainWorld END!"
MAP_PATH_RE = re.compile(r"InMainLevelPath\s*=\s*(?P<path>.*)$")

SESSION_RE = re.compile(r"\bSession@\s*:?\s*(?P<kind>start|stop|end)\b", re.IGNORECASE)


logger = structlog.get_logger()


class _Malformed(ValueError):
    """A recognised line carried a field that does not parse."""


def _field(line: str, name: str) -> str:
    match = re.search(rf"\b{name}\s*=\s*(\S+)", line)
    if not match:
        raise _Malformed(name)
    return match.group(1)


def _int_field(line: str, name: str) -> int:
    value = _field(line, name)
    if not value.isdecimal():
        raise _Malformed(name)
    try:
        return int(value)
    except ValueError:
        raise _Malformed(name) from None


def parse_timestamp(line: str) -> tuple[Optional[datetime], str]:
    """Split off a leading ``[YYYY.MM.DD-HH.MM.SS:mmm]`` stamp.

    Returns ``(None, line)`` when there is no stamp. Raises ValueError when
    something that looks like a stamp fails to parse.
    """
    match = TIMESTAMP_PREFIX_RE.match(line)
    if not match:
        return None, line
    stamp = datetime.strptime(match.group("stamp"), TIMESTAMP_FORMAT)
    return stamp.replace(tzinfo=timezone.utc), line[match.end():]


def _parse_items(body: str, catalog: ItemCatalog) -> dict[str, int]:
    items: dict[str, int] = {}
    if not body.strip():
        return items
    for pair in body.split(","):
        match = ITEM_PAIR_RE.match(pair)
        if not match:
            raise _Malformed("Items")
        name = match.group("name")
        if name.isdigit():
            name = catalog.name_for(name)
        items[name] = items.get(name, 0) + int(match.group("qty"))
    return items


def _classify_body(body: str, at: datetime, catalog: ItemCatalog) -> Event:
    if BAG_CONTENTS_MARKER in body:
        match = ITEMS_LIST_RE.search(body)
        if not match:
            raise _Malformed("Items")
        return ItemsSnapshot(items=_parse_items(match.group("body"), catalog), at=at)

    is_init = BAG_INIT_MARKER in body
    if is_init or BAG_MODIFY_RE.search(body):
        page_id = _int_field(body, "PageId")
        if page_id in EXCLUDED_PAGES:
            return UNRECOGNIZED
        item_id = _field(body, "ConfigBaseId")
        return SlotChanged(
            page_id=page_id,
            slot_id=_int_field(body, "SlotId"),
            item_id=item_id,
            item_name=catalog.name_for(item_id),
            num=_int_field(body, "Num"),
            is_init=is_init,
            at=at,
        )

    if BAG_REMOVE_MARKER in body:
        page_id = _int_field(body, "PageId")
        if page_id in EXCLUDED_PAGES:
            return UNRECOGNIZED
        return SlotRemoved(page_id=page_id, slot_id=_int_field(body, "SlotId"), at=at)

    if CONTEXT_MARKER in body and "ProtoName=" in body:
        match = PROTO_RE.search(body)
        if not match:
            return UNRECOGNIZED
        return PickupMarker(
            proto_name=match.group("proto"),
            is_start=match.group("marker") == "start",
            at=at,
        )

    if MAP_MARKER in body:
        match = MAP_PATH_RE.search(body)
        path = match.group("path").strip() if match else ""
        if not path:
            return UNRECOGNIZED
        return MapChanged(map_name=path, at=at)

    match = SESSION_RE.search(body)
    if match:
        kind = match.group("kind").lower()
        return SessionMarker(marker="start" if kind == "start" else "stop", at=at)

    return UNRECOGNIZED


def classify(
    line: str,
    received_at: Optional[datetime] = None,
    catalog: ItemCatalog = DEFAULT_CATALOG,
) -> Event:
    """Classify one raw log line.

    ``received_at`` stamps events from lines that carry no timestamp of
    their own. Never raises on malformed input.
    """
    line = line.rstrip("\r\n")
    try:
        at, body = parse_timestamp(line)
    except ValueError:
        return UNRECOGNIZED
    if at is None:
        at = received_at or datetime.now(timezone.utc)

    try:
        return _classify_body(body, at, catalog)
    except _Malformed:
        return UNRECOGNIZED
    except ValueError as e:
        # Includes pydantic ValidationError from out-of-range fields
        logger.debug("line_not_classified", error=str(e))
        return UNRECOGNIZED
