from __future__ import annotations

import pytest

from delta_proxy.streaming.framer import StreamFramer

WELL_FORMED_STREAM = (
    'data: {"choices":[{"delta":{"content":"Hé"}}]}\n'
    "\n"
    ": keep-alive comment\n"
    'data: {"choices":[{"delta":{"content":"Héllo 世界"}}]}\r\n'
    "\n"
    "event: ping\n"
    "data: [DONE]\n"
    "\n"
).encode("utf-8")


def _frame(chunks: list[bytes], max_buffer_bytes: int = 1024 * 1024) -> list[str]:
    framer = StreamFramer(max_buffer_bytes)
    records: list[str] = []
    for chunk in chunks:
        records.extend(framer.feed(chunk))
    records.extend(framer.flush())
    return records


def test_framer_keeps_only_data_records_in_order() -> None:
    assert _frame([WELL_FORMED_STREAM]) == [
        'data: {"choices":[{"delta":{"content":"Hé"}}]}',
        'data: {"choices":[{"delta":{"content":"Héllo 世界"}}]}\r',
        "data: [DONE]",
    ]


def test_framer_output_is_independent_of_chunk_boundaries() -> None:
    expected = _frame([WELL_FORMED_STREAM])

    for offset in range(1, len(WELL_FORMED_STREAM)):
        split = [WELL_FORMED_STREAM[:offset], WELL_FORMED_STREAM[offset:]]
        assert _frame(split) == expected, offset

    byte_by_byte = [
        WELL_FORMED_STREAM[index : index + 1]
        for index in range(len(WELL_FORMED_STREAM))
    ]
    assert _frame(byte_by_byte) == expected

    for size in (2, 3, 7, 13):
        sized = [
            WELL_FORMED_STREAM[index : index + size]
            for index in range(0, len(WELL_FORMED_STREAM), size)
        ]
        assert _frame(sized) == expected, size


def test_framer_holds_partial_record_until_delimiter_arrives() -> None:
    framer = StreamFramer()

    assert framer.feed(b'data: {"a"') == []
    assert framer.pending_bytes == len(b'data: {"a"')
    assert framer.feed(b":1}\ndata: ") == ['data: {"a":1}']
    assert framer.pending_bytes == len(b"data: ")


def test_framer_flushes_trailing_record_without_newline() -> None:
    assert _frame([b'data: {"x":1}\ndata: {"y":2}']) == [
        'data: {"x":1}',
        'data: {"y":2}',
    ]


def test_framer_ignores_surrounding_whitespace_only_for_prefix_check() -> None:
    assert _frame([b'   data: {"x":1}  \n\tdata:nospace\ndata: raw\r\n']) == [
        '   data: {"x":1}  ',
        "data: raw\r",
    ]


def test_framer_force_splits_past_limit_and_keeps_remainder() -> None:
    framer = StreamFramer(max_buffer_bytes=32)
    assert framer.feed(b'data: {"ok":1}\n') == ['data: {"ok":1}']

    assert framer.feed(b'data: {"a":1}\ndata: {"b":2}\ndata: ' + b"x" * 40) == [
        'data: {"a":1}',
        'data: {"b":2}',
    ]
    assert framer.pending_bytes == len(b"data: ") + 40


def test_framer_delivers_record_longer_than_limit_across_chunks() -> None:
    record = b'data: {"choices":[{"delta":{"content":"' + b"x" * 200 + b'"}}]}'
    chunks = [record[:50], record[50:120], record[120:], b"\n\ndata: {}\n"]

    assert _frame(chunks, max_buffer_bytes=64) == [record.decode("utf-8"), "data: {}"]


def test_framer_accepts_large_chunk_when_delimiters_keep_fragment_small() -> None:
    record = b'data: {"n":1}\n'
    framer = StreamFramer(max_buffer_bytes=32)

    records = framer.feed(record * 20)

    assert records == ['data: {"n":1}'] * 20
    assert framer.pending_bytes == 0


def test_framer_rejects_feed_after_flush() -> None:
    framer = StreamFramer()
    framer.flush()
    with pytest.raises(RuntimeError):
        framer.feed(b"data: {}\n")
