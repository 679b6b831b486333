"""Read-capped wrapper for binary streams pulled from the host platform."""

from __future__ import annotations

from typing import BinaryIO, Callable


class LimitedReader:
    """Reads at most ``limit`` bytes from ``stream`` and counts what was read.

    A negative ``limit`` disables the cap. ``pre_close`` runs before the
    underlying stream is closed and may raise to veto the close.
    """

    def __init__(
        self,
        stream: BinaryIO,
        limit: int,
        pre_close: Callable[["LimitedReader"], None] | None = None,
    ) -> None:
        self.stream = stream
        self.limit = limit
        self.pre_close = pre_close
        self.total_read = 0

    def read(self, size: int = -1) -> bytes:
        if self.limit >= 0:
            remaining = self.limit - self.total_read
            if remaining <= 0:
                return b""
            if size < 0 or size > remaining:
                size = remaining
        data = self.stream.read(size)
        self.total_read += len(data)
        return data

    def close(self) -> None:
        if self.pre_close is not None:
            self.pre_close(self)
        self.stream.close()

    def __enter__(self) -> "LimitedReader":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
