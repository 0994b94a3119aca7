"""Unit tests for the SSE stream decoder."""

from __future__ import annotations

import pytest

from docstream.stream.decoder import StreamDecoder, decode_frame


class TestDecodeFrame:
    def test_service_frame(self) -> None:
        event = decode_frame('{"content": "Hi", "reasoning": "hmm", "session_id": "s1"}')
        assert event is not None
        assert event.content_delta == "Hi"
        assert event.reasoning_delta == "hmm"
        assert event.session_id == "s1"

    def test_chat_chunk_frame(self) -> None:
        event = decode_frame(
            '{"choices": [{"delta": {"content": "a", "reasoning_content": "b"}}], "session_id": "s2"}'
        )
        assert event is not None
        assert event.content_delta == "a"
        assert event.reasoning_delta == "b"
        assert event.session_id == "s2"

    def test_done_sentinel_and_empty_frames(self) -> None:
        assert decode_frame("[DONE]") is None
        assert decode_frame("") is None
        assert decode_frame("{}") is None
        assert decode_frame('{"choices": []}') is None

    def test_session_only_frame(self) -> None:
        event = decode_frame('{"session_id": "abc"}')
        assert event is not None
        assert event.content_delta == ""
        assert event.session_id == "abc"

    @pytest.mark.parametrize("payload", ["not json", "[1, 2]", '{"content": 5}'])
    def test_bad_frames_raise(self, payload: str) -> None:
        with pytest.raises(ValueError):
            decode_frame(payload)


class TestStreamDecoder:
    def test_frame_split_across_chunks(self) -> None:
        decoder = StreamDecoder()
        assert decoder.feed('data: {"content": "He') == []
        events = decoder.feed('llo"}\n\n')
        assert [e.content_delta for e in events] == ["Hello"]

    def test_multiple_frames_in_one_chunk(self) -> None:
        decoder = StreamDecoder()
        events = decoder.feed('data: {"content": "a"}\n\ndata: {"content": "b"}\n\n')
        assert [e.content_delta for e in events] == ["a", "b"]

    def test_multibyte_character_split_across_byte_chunks(self) -> None:
        raw = 'data: {"content": "café"}\n'.encode()
        cut = raw.index("é".encode()) + 1
        decoder = StreamDecoder()
        assert decoder.feed(raw[:cut]) == []
        events = decoder.feed(raw[cut:])
        assert events[0].content_delta == "café"

    def test_ignores_non_data_lines(self) -> None:
        decoder = StreamDecoder()
        events = decoder.feed(
            ': keep-alive\r\nevent: message\r\nid: 7\r\ndata: {"content": "x"}\r\n\r\ndata: [DONE]\r\n'
        )
        assert [e.content_delta for e in events] == ["x"]
        assert decoder.skipped_frames == 0

    def test_data_without_space(self) -> None:
        events = StreamDecoder().feed('data:{"content": "tight"}\n')
        assert events[0].content_delta == "tight"

    def test_malformed_frame_is_skipped(self) -> None:
        decoder = StreamDecoder()
        events = decoder.feed('data: {broken\ndata: {"content": "ok"}\n')
        assert [e.content_delta for e in events] == ["ok"]
        assert decoder.skipped_frames == 1

    def test_close_discards_partial_frame(self) -> None:
        decoder = StreamDecoder()
        assert decoder.feed('data: {"content": "never finished') == []
        decoder.close()
        events = decoder.feed('data: {"content": "fresh"}\n')
        assert [e.content_delta for e in events] == ["fresh"]
