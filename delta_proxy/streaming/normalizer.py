from __future__ import annotations

import json
from typing import Any

from delta_proxy.streaming.framer import DATA_PREFIX, record_body
from delta_proxy.streaming.session import StreamSession


def format_record(payload: Any) -> str:
    return f"{DATA_PREFIX}{json.dumps(payload, ensure_ascii=False, separators=(',', ':'))}\n\n"


def normalize_record(record: str, session: StreamSession) -> str:
    """Rewrite one upstream record so its delta content is incremental.

    Upstream repeats the full text generated so far in ``delta.content``.
    ``session.last_full_content`` maps a choice index to the cumulative text
    last seen for it and is updated in place. Content that does not extend the
    previous value is treated as a new baseline and forwarded as-is.
    """
    last_full_content = session.last_full_content
    try:
        payload = json.loads(record_body(record))
    except ValueError:
        return f"{record}\n\n"
    if not isinstance(payload, dict):
        return f"{record}\n\n"

    choices = payload.get("choices")
    if not isinstance(choices, list):
        return format_record(payload)

    rewritten: list[Any] = []
    for position, choice in enumerate(choices):
        content = _delta_content(choice)
        if content is None:
            rewritten.append(choice)
            continue
        index = choice.get("index", position)
        if not isinstance(index, int):
            index = position
        previous = last_full_content.get(index, "")
        emitted = content
        if previous and content.startswith(previous):
            emitted = content[len(previous) :]
        last_full_content[index] = content
        rewritten.append({**choice, "delta": {**choice["delta"], "content": emitted}})

    return format_record({**payload, "choices": rewritten})


def _delta_content(choice: Any) -> str | None:
    if not isinstance(choice, dict):
        return None
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None
