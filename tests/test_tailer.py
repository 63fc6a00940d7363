"""Tests for the log tailer."""

import os
from pathlib import Path

import pytest

from services.tracker import tailer as tailer_module
from services.tracker.errors import TailError
from services.tracker.tailer import Tailer


def write(path: Path, data: bytes, mode: str = "ab") -> None:
    with open(path, mode) as f:
        f.write(data)


def texts(batch) -> list[str]:
    return [line.text for line in batch]


class TestPolling:
    """Growth of a single file."""

    def test_missing_file_is_not_an_error(self, log_path: Path) -> None:
        batch = Tailer(log_path).poll()
        assert batch.missing is True
        assert texts(batch) == []

    def test_reads_complete_lines_and_holds_back_fragment(self, log_path: Path) -> None:
        tailer = Tailer(log_path)
        write(log_path, b"first\nsecond\npart")

        assert texts(tailer.poll()) == ["first", "second"]
        assert tailer.position.offset == len(b"first\nsecond\n")

        write(log_path, b"ial\n")
        assert texts(tailer.poll()) == ["partial"]
        assert tailer.position.offset == len(b"first\nsecond\npartial\n")

    def test_nothing_new(self, log_path: Path) -> None:
        tailer = Tailer(log_path)
        write(log_path, b"one\n")
        tailer.poll()
        batch = tailer.poll()
        assert texts(batch) == []
        assert not batch

    def test_line_ranges_and_crlf(self, log_path: Path) -> None:
        tailer = Tailer(log_path)
        write(log_path, b"ab\r\ncd\n")
        lines = list(tailer.poll())
        assert [line.text for line in lines] == ["ab", "cd"]
        assert (lines[0].start, lines[0].end) == (0, 4)
        assert (lines[1].start, lines[1].end) == (4, 7)

    def test_invalid_utf8_is_replaced(self, log_path: Path) -> None:
        tailer = Tailer(log_path)
        write(log_path, b"bad \xff byte\n")
        assert texts(tailer.poll()) == ["bad � byte"]

    def test_read_is_bounded(self, log_path: Path) -> None:
        tailer = Tailer(log_path, max_read_bytes=10)
        write(log_path, b"aaaa\nbbbb\ncccc\n")
        first = tailer.poll()
        assert texts(first) == ["aaaa", "bbbb"]
        assert first.more is True
        last = tailer.poll()
        assert texts(last) == ["cccc"]
        assert last.more is False

    def test_oversized_line_does_not_stall(self, log_path: Path) -> None:
        tailer = Tailer(log_path, max_read_bytes=4)
        write(log_path, b"abcdefgh\n")
        assert texts(tailer.poll()) == ["abcd"]
        assert tailer.position.offset == 4


class TestResets:
    """Truncation and rotation."""

    def test_truncation_resets_position(self, log_path: Path) -> None:
        tailer = Tailer(log_path)
        write(log_path, b"old line one\nold line two\n")
        tailer.poll()
        assert tailer.position.offset == 26

        write(log_path, b"new\n", mode="wb")
        batch = tailer.poll()
        assert batch.reset is True
        assert texts(batch) == ["new"]
        assert tailer.position.offset == 4

        follow_up = tailer.poll()
        assert follow_up.reset is False

    def test_truncation_to_empty(self, log_path: Path) -> None:
        tailer = Tailer(log_path)
        write(log_path, b"line\n")
        tailer.poll()
        write(log_path, b"", mode="wb")
        batch = tailer.poll()
        assert batch.reset is True
        assert texts(batch) == []
        assert tailer.position.offset == 0

    def test_rotation_to_a_larger_file(self, tmp_path: Path, log_path: Path) -> None:
        tailer = Tailer(log_path)
        write(log_path, b"short\n")
        tailer.poll()

        replacement = tmp_path / "next.log"
        write(replacement, b"a much longer first line\nsecond\n")
        os.replace(replacement, log_path)

        batch = tailer.poll()
        assert batch.reset is True
        assert texts(batch) == ["a much longer first line", "second"]

    def test_retarget_starts_from_beginning(self, tmp_path: Path, log_path: Path) -> None:
        tailer = Tailer(log_path)
        write(log_path, b"one\n")
        tailer.poll()

        other = tmp_path / "other.log"
        write(other, b"two\n")
        tailer.retarget(other)
        assert tailer.position.offset == 0
        assert texts(tailer.poll()) == ["two"]


class TestErrors:
    """I/O failures."""

    def test_read_error_raises_tail_error(self, log_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        tailer = Tailer(log_path)
        write(log_path, b"line\n")

        def deny(*args, **kwargs):
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr(tailer_module, "open", deny, raising=False)
        with pytest.raises(TailError) as exc_info:
            tailer.poll()
        assert isinstance(exc_info.value.error, PermissionError)
        assert tailer.position.offset == 0

        monkeypatch.undo()
        assert texts(tailer.poll()) == ["line"]
