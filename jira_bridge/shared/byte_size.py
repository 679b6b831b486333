"""Human-readable byte sizes ("1.5Mb", "12,345b") and their parser."""

from __future__ import annotations

import math

NOT_AVAILABLE = "n/a"

SIZE_B = 1
SIZE_KB = 1024 * SIZE_B
SIZE_MB = 1024 * SIZE_KB
SIZE_GB = 1024 * SIZE_MB
SIZE_TB = 1024 * SIZE_GB

_UNITS = (SIZE_TB, SIZE_GB, SIZE_MB, SIZE_KB, SIZE_B)
_SUFFIXES = ("Tb", "Gb", "Mb", "Kb", "b")


class ByteSize(int):
    """Integer byte count that renders with one fractional digit of its largest unit."""

    def __str__(self) -> str:
        size = int(self)
        if size == 0:
            return "0"
        for unit, suffix in zip(_UNITS, _SUFFIXES):
            if size < unit:
                continue
            if unit == SIZE_B:
                return f"{size:,}{suffix}"
            tenths = str((size * 10 + unit // 2) // unit)
            if len(tenths) < 2:
                return NOT_AVAILABLE
            whole = f"{int(tenths[:-1]):,}"
            if tenths[-1] == "0":
                return f"{whole}{suffix}"
            return f"{whole}.{tenths[-1]}{suffix}"
        return NOT_AVAILABLE

    def __repr__(self) -> str:
        return f"ByteSize({int(self)})"


def parse_byte_size(text: str) -> ByteSize:
    """Parse the output of ``str(ByteSize)`` (or a bare integer) back into bytes."""

    value = text.strip().lower()
    unit = SIZE_B
    for candidate, suffix in zip(_UNITS, _SUFFIXES):
        if value.endswith(suffix.lower()):
            value = value[: -len(suffix)]
            unit = candidate
            break

    value = value.replace(",", "")
    try:
        return ByteSize(int(value) * unit)
    except ValueError:
        pass
    parsed = float(value)
    if not math.isfinite(parsed):
        raise ValueError(f"invalid byte size: {text!r}")
    return ByteSize(int(parsed * unit))
