"""Incremental reader for an append-only log file."""
import os
from pathlib import Path
from typing import Iterator, Optional

import structlog

from .errors import TailError
from .models import LogPosition, RawLine

logger = structlog.get_logger()

DEFAULT_MAX_READ_BYTES = 1024 * 1024


class TailBatch:
    """Lines read by one poll.

    Lines are decoded lazily on iteration; the bytes were read and the
    position advanced when the batch was created.
    """

    def __init__(self, data: bytes = b"", base: int = 0, reset: bool = False,
                 missing: bool = False, encoding: str = "utf-8", more: bool = False):
        self.data = data
        self.base = base
        self.reset = reset
        self.missing = missing
        self.encoding = encoding
        # The read filled the window; more bytes are waiting
        self.more = more

    def __iter__(self) -> Iterator[RawLine]:
        start = 0
        while start < len(self.data):
            end = self.data.find(b"\n", start)
            if end == -1:
                end = len(self.data)
                next_start = end
            else:
                next_start = end + 1
            text = self.data[start:end].decode(self.encoding, errors="replace").rstrip("\r")
            yield RawLine(text=text, start=self.base + start, end=self.base + next_start)
            start = next_start

    def __bool__(self) -> bool:
        return bool(self.data) or self.reset

    @property
    def byte_count(self) -> int:
        return len(self.data)


class Tailer:
    """Follows one log file across appends, truncation and rotation."""

    def __init__(self, path: Path, max_read_bytes: int = DEFAULT_MAX_READ_BYTES,
                 encoding: str = "utf-8", position: Optional[LogPosition] = None):
        self.path = Path(path)
        self.max_read_bytes = max_read_bytes
        self.encoding = encoding
        self._position = position or LogPosition()

    @property
    def position(self) -> LogPosition:
        return self._position

    def retarget(self, path: Path) -> None:
        """Follow a different file from its beginning."""
        logger.info("tailer_retargeted", old_path=str(self.path), new_path=str(path))
        self.path = Path(path)
        self._position = LogPosition()

    def poll(self) -> TailBatch:
        """Read whatever complete lines were appended since the last poll.

        A missing file yields an empty batch with ``missing`` set. Any other
        OSError is raised as TailError and leaves the position untouched.
        """
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return TailBatch(missing=True, encoding=self.encoding)
        except OSError as e:
            raise TailError(str(self.path), e) from e

        pos = self._position
        reset = False
        rotated = not pos.same_file(st.st_dev, st.st_ino)
        if rotated or st.st_size < pos.offset:
            logger.info(
                "log_reset_detected",
                path=str(self.path),
                previous_offset=pos.offset,
                new_size=st.st_size,
                rotated=rotated,
            )
            pos = LogPosition()
            reset = True

        offset = pos.offset
        data = b""
        if st.st_size > offset:
            try:
                with open(self.path, "rb") as f:
                    f.seek(offset)
                    data = f.read(self.max_read_bytes)
            except FileNotFoundError:
                return TailBatch(missing=True, encoding=self.encoding)
            except OSError as e:
                raise TailError(str(self.path), e) from e

        cut = data.rfind(b"\n") + 1
        if cut == 0 and len(data) >= self.max_read_bytes:
            # A single line longer than the read window; emit it whole
            logger.warning("oversized_log_line", path=str(self.path), offset=offset, length=len(data))
            cut = len(data)
        complete = data[:cut]

        self._position = LogPosition(
            offset=offset + len(complete),
            device=st.st_dev,
            inode=st.st_ino,
            size=st.st_size,
            mtime=st.st_mtime,
        )
        return TailBatch(complete, base=offset, reset=reset, encoding=self.encoding,
                         more=len(data) >= self.max_read_bytes)
