from __future__ import annotations

import io

import pytest

from jira_bridge.shared.byte_size import (
    SIZE_B,
    SIZE_GB,
    SIZE_KB,
    SIZE_MB,
    SIZE_TB,
    ByteSize,
    parse_byte_size,
)
from jira_bridge.shared.limited_reader import LimitedReader


@pytest.mark.parametrize(
    ("size", "expected"),
    [
        (0, "0"),
        (1, "1b"),
        (1023, "1,023b"),
        (1024, "1Kb"),
        (1536, "1.5Kb"),
        (10 * SIZE_MB, "10Mb"),
        (int(2.5 * SIZE_GB), "2.5Gb"),
        (1500 * SIZE_TB, "1,500Tb"),
    ],
)
def test_byte_size_renders_one_fractional_digit(size: int, expected: str) -> None:
    assert str(ByteSize(size)) == expected


def test_byte_size_is_an_int() -> None:
    size = ByteSize(2048)
    assert size == 2048
    assert size > 1024
    assert repr(size) == "ByteSize(2048)"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("0", 0),
        ("123", 123),
        ("1,023b", 1023),
        ("1Kb", SIZE_KB),
        ("1.5kb", 1536),
        ("10MB", 10 * SIZE_MB),
        (" 2Gb ", 2 * SIZE_GB),
        ("1,500Tb", 1500 * SIZE_TB),
    ],
)
def test_parse_byte_size(text: str, expected: int) -> None:
    assert parse_byte_size(text) == expected


@pytest.mark.parametrize("text", ["", "n/a", "ten megs", "nanMb", "infKb"])
def test_parse_byte_size_rejects_garbage(text: str) -> None:
    with pytest.raises(ValueError):
        parse_byte_size(text)


@pytest.mark.parametrize(
    "size",
    [0, 7, 999, 1023, 1024, 1025, 1100, 5_000, 1_048_575, 3_333_333, 7 * SIZE_GB + 12345, 3 * SIZE_TB + 1],
)
def test_rendered_size_parses_back_within_a_tenth_of_its_unit(size: int) -> None:
    unit = SIZE_B
    for candidate in (SIZE_TB, SIZE_GB, SIZE_MB, SIZE_KB, SIZE_B):
        if size >= candidate:
            unit = candidate
            break

    parsed = parse_byte_size(str(ByteSize(size)))

    # Half a tenth from rounding, one byte from float truncation.
    assert abs(parsed - size) <= unit / 20 + 1


def test_limited_reader_stops_at_limit_and_counts() -> None:
    reader = LimitedReader(io.BytesIO(b"abcdefgh"), 5)

    assert reader.read(3) == b"abc"
    assert reader.read() == b"de"
    assert reader.read() == b""
    assert reader.total_read == 5


def test_limited_reader_negative_limit_reads_everything() -> None:
    with LimitedReader(io.BytesIO(b"abcdefgh"), -1) as reader:
        assert reader.read() == b"abcdefgh"
    assert reader.total_read == 8


def test_limited_reader_pre_close_runs_before_close() -> None:
    stream = io.BytesIO(b"abc")
    seen: list[bool] = []

    def pre_close(reader: LimitedReader) -> None:
        seen.append(reader.stream.closed)

    with LimitedReader(stream, 10, pre_close=pre_close) as reader:
        reader.read()

    assert seen == [False]
    assert stream.closed


def test_limited_reader_pre_close_can_veto() -> None:
    stream = io.BytesIO(b"abc")

    def veto(reader: LimitedReader) -> None:
        raise RuntimeError("still reading")

    reader = LimitedReader(stream, 10, pre_close=veto)
    with pytest.raises(RuntimeError, match="still reading"):
        reader.close()
    assert not stream.closed
