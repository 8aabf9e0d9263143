from __future__ import annotations

DATA_PREFIX = "data: "
DEFAULT_MAX_BUFFER_BYTES = 1024 * 1024


class StreamFramer:
    """Reassembles an upstream byte stream into `data: ` event records.

    Chunks may split records (and multi-byte characters) at any offset; the
    records produced are the same as for an unpartitioned read. Records are
    returned as received, without the trailing newline; only the prefix check
    ignores surrounding whitespace.

    Once the pending buffer grows past ``max_buffer_bytes`` it is force-split:
    every complete record is emitted and the remainder is kept. A single record
    longer than the limit stays pending until its delimiter arrives.
    """

    def __init__(self, max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES) -> None:
        self._max_buffer_bytes = max(1, int(max_buffer_bytes))
        self._buffer = bytearray()
        self._finished = False

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> list[str]:
        if self._finished:
            raise RuntimeError("feed() called after flush()")
        if not chunk:
            return []
        self._buffer.extend(chunk)
        if b"\n" in chunk or len(self._buffer) > self._max_buffer_bytes:
            return self._split()
        return []

    def flush(self) -> list[str]:
        self._finished = True
        remainder = bytes(self._buffer)
        self._buffer.clear()
        if not remainder:
            return []
        return _select_records(remainder.split(b"\n"))

    def _split(self) -> list[str]:
        cut = self._buffer.rfind(b"\n")
        if cut < 0:
            return []
        complete = bytes(self._buffer[:cut]).split(b"\n")
        del self._buffer[: cut + 1]
        return _select_records(complete)


def is_data_record(record: str) -> bool:
    return record.strip().startswith(DATA_PREFIX)


def record_body(record: str) -> str:
    """Text after the `data: ` prefix of a record, ignoring surrounding whitespace."""
    return record.strip()[len(DATA_PREFIX) :]


def _select_records(lines: list[bytes]) -> list[str]:
    records: list[str] = []
    for raw in lines:
        line = raw.decode("utf-8", errors="replace")
        if is_data_record(line):
            records.append(line)
    return records
