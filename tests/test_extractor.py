"""Unit tests for thought/payload extraction."""

from __future__ import annotations

from docstream.stream.extractor import decode, find_payload_start, think_regions


def test_fence_takes_precedence() -> None:
    """Text before a ```json fence is thought; the payload is the fence body."""
    text = 'thinking...\n```json\n{"a":1}\n```'
    result = decode(text)
    assert result.thought == "thinking..."
    assert result.payload_fragment == '{"a":1}'
    assert result.payload_started is True
    assert result.fenced is True
    assert result.fence_closed is True


def test_fence_body_runs_to_end_while_open() -> None:
    result = decode('Plan first.\n```json\n{"title": "Sol')
    assert result.payload_fragment == '{"title": "Sol'
    assert result.fenced is True
    assert result.fence_closed is False


def test_first_brace_starts_payload() -> None:
    result = decode("here is {data}")
    assert result.thought == "here is"
    assert result.payload_fragment == "{data}"
    assert result.payload_started is True
    assert result.fenced is False


def test_array_payload() -> None:
    result = decode('Pages:\n[{"title": "a"}]')
    assert result.payload_fragment.startswith("[")


def test_no_payload_is_all_thought() -> None:
    result = decode("  still thinking about it  ")
    assert result.thought == "still thinking about it"
    assert result.payload_fragment == ""
    assert result.payload_started is False


def test_escaped_brace_is_not_a_boundary() -> None:
    assert find_payload_start(r"a \{ b {c}") == 7


def test_braces_inside_think_are_thought() -> None:
    text = '<think>maybe {"draft": 1}</think>Final:\n{"title": "x"}'
    result = decode(text)
    assert result.payload_fragment == '{"title": "x"}'
    assert "draft" in result.thought
    assert "<think>" not in result.thought


def test_unclosed_think_hides_everything_after_it() -> None:
    assert think_regions("a<think>b{c") == [(1, 11)]
    result = decode("a<think>b{c")
    assert result.payload_started is False


def test_fence_inside_think_is_ignored() -> None:
    text = '<think>\n```json\n{"no": 1}\n```\n</think>\n{"yes": 2}'
    result = decode(text)
    assert result.payload_fragment == '{"yes": 2}'
    assert result.fenced is False


def test_payload_started_is_monotonic() -> None:
    text = 'thinking about {braces} later\n```json\n{"title": "T", "content": "c"}\n```'
    seen = False
    for end in range(len(text) + 1):
        started = decode(text[:end]).payload_started
        assert not (seen and not started), f"regressed at prefix {end}"
        seen = seen or started
    assert seen
