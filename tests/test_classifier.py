"""Tests for log line classification."""

from datetime import timedelta

import pytest

from services.tracker.catalog import ItemCatalog
from services.tracker.classifier import classify, parse_timestamp
from services.tracker.models import (
    ItemsSnapshot,
    MapChanged,
    PickupMarker,
    SessionMarker,
    SlotChanged,
    SlotRemoved,
    Unrecognized,
)
from testing_utils import (
    BASE_TIME,
    FLAME_ID,
    contents_line,
    game_line,
    init_line,
    map_line,
    modify_line,
    pickup_line,
    remove_line,
    session_line,
)


class TestTimestamps:
    """Leading UE timestamp handling."""

    def test_parses_stamp_with_milliseconds(self) -> None:
        at, body = parse_timestamp("[2026.02.02-10.15.30:250][ 42]GameLog: hello")
        assert at == BASE_TIME + timedelta(minutes=15, seconds=30, milliseconds=250)
        assert body == "[ 42]GameLog: hello"

    def test_line_without_stamp_uses_received_at(self) -> None:
        received = BASE_TIME + timedelta(hours=1)
        event = classify("GameLog: Display: [Game] ItemChange@ ProtoName=PickItems start",
                         received_at=received)
        assert isinstance(event, PickupMarker)
        assert event.at == received

    def test_invalid_stamp_is_unrecognized(self) -> None:
        line = "[2026.13.40-10.00.00:000][ 42]GameLog: Display: [Game] ItemChange@ ProtoName=PickItems start"
        assert isinstance(classify(line), Unrecognized)


class TestBagLines:
    """Per-slot bag lines."""

    def test_modify_line(self) -> None:
        event = classify(modify_line(slot=0, item_id=FLAME_ID, num=671))
        assert isinstance(event, SlotChanged)
        assert event.page_id == 102
        assert event.slot_id == 0
        assert event.item_id == FLAME_ID
        assert event.item_name == "Flame Elementium"
        assert event.num == 671
        assert event.is_init is False
        assert event.at == BASE_TIME

    def test_init_line(self) -> None:
        event = classify(init_line(slot=3, item_id=FLAME_ID, num=609))
        assert isinstance(event, SlotChanged)
        assert event.is_init is True
        assert event.num == 609

    def test_remove_line(self) -> None:
        event = classify(remove_line(slot=39, page=103))
        assert isinstance(event, SlotRemoved)
        assert (event.page_id, event.slot_id) == (103, 39)

    def test_unknown_item_id(self) -> None:
        event = classify(modify_line(slot=1, item_id="999999999", num=2))
        assert event.item_name == "Unknown 999999999"

    def test_catalog_is_used(self) -> None:
        catalog = ItemCatalog({"5028": "Fossil Ember"})
        event = classify(modify_line(slot=1, item_id="5028", num=2), catalog=catalog)
        assert event.item_name == "Fossil Ember"

    def test_gear_page_is_ignored(self) -> None:
        assert isinstance(classify(modify_line(slot=0, item_id=FLAME_ID, num=1, page=100)), Unrecognized)
        assert isinstance(classify(remove_line(slot=0, page=100)), Unrecognized)

    @pytest.mark.parametrize("body", [
        "BagMgr@:Modfy BagItem PageId = 102 SlotId = 0 ConfigBaseId = 100300 Num = lots",
        "BagMgr@:Modfy BagItem PageId = 102 SlotId = 0 ConfigBaseId = 100300 Num =",
        "BagMgr@:Modfy BagItem PageId = 102 SlotId = 0 ConfigBa",
        "BagMgr@:RemoveBagItem PageId = 103 SlotId = -1",
        "BagMgr@:Modfy BagItem PageId = \u00b2 SlotId = 0 ConfigBaseId = 100300 Num = 1",
        "BagMgr@:Modfy BagItem PageId = 102 SlotId = 0 ConfigBaseId = 100300 Num = \u00b9\u00b2",
    ])
    def test_malformed_fields_are_unrecognized(self, body: str) -> None:
        assert isinstance(classify(game_line(body)), Unrecognized)


class TestBagContents:
    """Full bag content reports."""

    def test_snapshot_items(self) -> None:
        event = classify(contents_line({"Flame Elementium": 609, "Fossil Ember": 12}))
        assert isinstance(event, ItemsSnapshot)
        assert event.items == {"Flame Elementium": 609, "Fossil Ember": 12}
        assert list(event.items) == ["Flame Elementium", "Fossil Ember"]

    def test_numeric_names_resolve_and_repeats_sum(self) -> None:
        line = game_line("BagMgr@:BagContents Items = [100300: 600, 5028: 12, Flame Elementium: 9]")
        event = classify(line)
        assert event.items == {"Flame Elementium": 609, "Unknown 5028": 12}

    def test_empty_bag(self) -> None:
        event = classify(game_line("BagMgr@:BagContents Items = []"))
        assert isinstance(event, ItemsSnapshot)
        assert event.items == {}

    def test_truncated_report_is_unrecognized(self) -> None:
        line = game_line("BagMgr@:BagContents Items = [Flame Elementium: 609, Fossil Em")
        assert isinstance(classify(line), Unrecognized)

    def test_bad_quantity_is_unrecognized(self) -> None:
        line = game_line("BagMgr@:BagContents Items = [Flame Elementium: many]")
        assert isinstance(classify(line), Unrecognized)


class TestMarkers:
    """Pickup, map and session markers."""

    def test_pickup_start_and_end(self) -> None:
        start = classify(pickup_line(True))
        end = classify(pickup_line(False))
        assert isinstance(start, PickupMarker) and start.is_start
        assert isinstance(end, PickupMarker) and not end.is_start
        assert start.proto_name == "PickItems"

    def test_other_proto_names(self) -> None:
        event = classify(pickup_line(False, proto="ResetItemsLayout"))
        assert event.proto_name == "ResetItemsLayout"

    def test_pickup_marker_without_boundary(self) -> None:
        assert isinstance(classify(game_line("ItemChange@ ProtoName=PickItems")), Unrecognized)
        assert isinstance(classify(game_line("ItemChange@ ProtoName=PickItems middle")), Unrecognized)

    def test_map_change(self) -> None:
        path = "/Game/Art/Maps/01SD/XZ_YuJinZhiXiBiNanSuo200/XZ_YuJinZhiXiBiNanSuo200"
        event = classify(map_line(path))
        assert isinstance(event, MapChanged)
        assert event.map_name == path

    def test_map_change_without_path(self) -> None:
        line = "[2026.02.02-10.00.00:000][ 42]SceneLevelMgr@ OpenMainWorld END! InMainLevelPath = "
        assert isinstance(classify(line), Unrecognized)

    @pytest.mark.parametrize("kind,expected", [
        ("Start", "start"),
        ("Stop", "stop"),
        ("End", "stop"),
        ("start", "start"),
    ])
    def test_session_markers(self, kind: str, expected: str) -> None:
        event = classify(session_line(kind))
        assert isinstance(event, SessionMarker)
        assert event.marker == expected


class TestFallback:
    """Lines that are not of interest."""

    @pytest.mark.parametrize("line", [
        "",
        "\r\n",
        "[2026.02.02-10.00.00:000][ 42]LogTemp: Warning: something else",
        "[2026.02.0",
        "BagMgr@:",
        "GameSession@ Start",
        "\x00\x01\x02",
    ])
    def test_unrecognized(self, line: str) -> None:
        assert isinstance(classify(line), Unrecognized)

    def test_events_are_immutable(self) -> None:
        event = classify(modify_line(slot=0, item_id=FLAME_ID, num=1))
        with pytest.raises(Exception):
            event.num = 5
