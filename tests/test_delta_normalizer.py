from __future__ import annotations

import json
from typing import Any

from delta_proxy.streaming.normalizer import normalize_record
from delta_proxy.streaming.session import StreamSession


def _record(content: str | None, **choice: Any) -> str:
    delta: dict[str, Any] = {}
    if content is not None:
        delta["content"] = content
    return "data: " + json.dumps({"choices": [{"delta": delta, **choice}]})


def _parse(emitted: str) -> dict[str, Any]:
    assert emitted.startswith("data: ")
    assert emitted.endswith("\n\n")
    return json.loads(emitted[len("data: ") :])


def _content(emitted: str, position: int = 0) -> str:
    return _parse(emitted)["choices"][position]["delta"]["content"]


def test_normalizer_turns_cumulative_content_into_increments() -> None:
    session = StreamSession()

    first = normalize_record(
        'data: {"choices":[{"delta":{"content":"Hello"}}]}', session
    )
    second = normalize_record(
        'data: {"choices":[{"delta":{"content":"Hello world"}}]}', session
    )

    assert _content(first) == "Hello"
    assert _content(second) == " world"
    assert session.last_full_content == {0: "Hello world"}


def test_normalizer_increments_concatenate_back_to_final_text() -> None:
    final_text = "The quick brown fox jumps over the lazy dog. Ünïcødé ✓ 你好"
    cut_points = [1, 4, 5, 10, 10, 19, 30, 44, 50, len(final_text)]
    session = StreamSession()

    emitted = [
        _content(normalize_record(_record(final_text[:cut]), session))
        for cut in cut_points
    ]

    assert "".join(emitted) == final_text


def test_normalizer_treats_non_extending_content_as_new_baseline() -> None:
    session = StreamSession()
    normalize_record(_record("Hello world"), session)

    shorter = normalize_record(_record("Hello"), session)
    diverged = normalize_record(_record("Goodbye"), session)
    extended = normalize_record(_record("Goodbye moon"), session)

    assert _content(shorter) == "Hello"
    assert _content(diverged) == "Goodbye"
    assert _content(extended) == " moon"


def test_normalizer_forwards_malformed_record_verbatim_without_touching_state() -> None:
    session = StreamSession()
    normalize_record(_record("Hello"), session)

    malformed = normalize_record("data: not-json", session)
    following = normalize_record(_record("Hello world"), session)

    assert malformed == "data: not-json\n\n"
    assert _content(following) == " world"


def test_normalizer_forwards_records_without_content_unchanged() -> None:
    session = StreamSession()
    normalize_record(_record("Hi"), session)

    role_only = normalize_record(_record(None, role="assistant"), session)
    finish = normalize_record(
        'data: {"choices":[{"delta":{},"finish_reason":"stop"}],"usage":{"total_tokens":3}}',
        session,
    )
    empty = normalize_record(_record(""), session)
    no_choices = normalize_record('data: {"id":"x"}', session)

    assert _parse(role_only)["choices"][0] == {"delta": {}, "role": "assistant"}
    assert _parse(finish) == {
        "choices": [{"delta": {}, "finish_reason": "stop"}],
        "usage": {"total_tokens": 3},
    }
    assert _content(empty) == ""
    assert _parse(no_choices) == {"id": "x"}
    assert session.last_full_content == {0: "Hi"}


def test_normalizer_preserves_other_fields_and_non_ascii_text() -> None:
    session = StreamSession()
    emitted = normalize_record(
        'data: {"id":"c1","model":"qwen","choices":[{"index":0,"delta":{"role":"assistant","content":"é"},"finish_reason":null}]}',
        session,
    )

    assert emitted == (
        'data: {"id":"c1","model":"qwen","choices":[{"index":0,"delta":'
        '{"role":"assistant","content":"é"},"finish_reason":null}]}\n\n'
    )


def test_normalizer_tracks_each_choice_index_separately() -> None:
    session = StreamSession()

    def both(first: str, second: str) -> str:
        return "data: " + json.dumps(
            {
                "choices": [
                    {"index": 0, "delta": {"content": first}},
                    {"index": 1, "delta": {"content": second}},
                ]
            }
        )

    normalize_record(both("A", "B"), session)
    emitted = normalize_record(both("A1", "B2"), session)

    assert _content(emitted, 0) == "1"
    assert _content(emitted, 1) == "2"
    assert session.last_full_content == {0: "A1", 1: "B2"}


def test_normalizer_forwards_malformed_record_with_original_whitespace() -> None:
    session = StreamSession()

    assert normalize_record("data: not-json \r", session) == "data: not-json \r\n\n"
    padded = normalize_record(' data: {"choices":[{"delta":{"content":"a"}}]}\r', session)
    assert _content(padded) == "a"


def test_normalizer_forwards_non_object_json_verbatim() -> None:
    session = StreamSession()
    assert normalize_record("data: [1,2,3]", session) == "data: [1,2,3]\n\n"
