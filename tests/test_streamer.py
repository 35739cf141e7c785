# SPDX-License-Identifier: Apache-2.0
"""Tests for the TokenStreamer generation state machine."""

import logging

import pytest

from kvsession.cache.stats import SessionCacheStats
from kvsession.cache.window import ContextWindowManager
from kvsession.exceptions import ContextShiftError, DecodeError
from kvsession.state import SessionState, StepOutcome, StreamerState
from kvsession.streamer import TokenStreamer

from mocks import FakeEngine

EOG = 2


def make_streamer(engine: FakeEngine, cursor: int = 3, budget: int = 10, capacity: int = 64):
    """Streamer positioned as if a prompt of ``cursor`` tokens was processed."""
    stats = SessionCacheStats()
    window = ContextWindowManager(engine, capacity=capacity, headroom=4, stats=stats)
    state = SessionState(cached_tokens=list(range(10, 10 + cursor)))
    for position, token in enumerate(state.cached_tokens):
        engine.memory[position] = token
    window.cursor = cursor
    state.stop_horizon = cursor + budget
    return TokenStreamer(engine, window, state, stats=stats)


class TestStep:
    """Tests for a normal generation step."""

    def test_emits_ascii_token_text(self, fake_engine):
        streamer = make_streamer(fake_engine)
        fake_engine.queue_samples([ord("h"), ord("i")])

        first = streamer.step()
        second = streamer.step()

        assert first.outcome is StepOutcome.CONTINUING
        assert (first.text, second.text) == ("h", "i")
        assert streamer.status is StreamerState.GENERATING

    def test_step_order_sample_accept_decode(self, fake_engine):
        streamer = make_streamer(fake_engine)
        fake_engine.queue_samples([ord("a")])

        streamer.step()

        assert fake_engine.calls == [
            ("sample",),
            ("accept", ord("a")),
            ("decode", [ord("a")], [3]),
        ]
        assert fake_engine.batches[0].logits == [True]

    def test_advances_cursor_and_cache(self, fake_engine):
        streamer = make_streamer(fake_engine)
        fake_engine.queue_samples([ord("x")])

        result = streamer.step()

        assert result.token == ord("x")
        assert streamer.window.cursor == 4
        assert streamer.state.cached_tokens[-1] == ord("x")
        assert streamer.stats.tokens_generated == 1


class TestTerminalOutcomes:
    """Tests for end-of-generation, horizon and failure."""

    def test_end_of_generation(self, fake_engine):
        streamer = make_streamer(fake_engine)
        fake_engine.queue_samples([EOG])

        result = streamer.step()

        assert result.outcome is StepOutcome.END_OF_GENERATION
        assert result.finished
        assert result.finish_reason == "stop"
        assert streamer.status is StreamerState.STOPPED
        # The marker is still committed to the window
        assert streamer.window.cursor == 4
        assert streamer.state.cached_tokens[-1] == EOG

    def test_horizon_reached(self, fake_engine):
        streamer = make_streamer(fake_engine, budget=2)
        fake_engine.queue_samples([ord("a"), ord("b"), ord("c")])

        outcomes = [streamer.step().outcome for _ in range(3)]

        assert outcomes == [StepOutcome.CONTINUING, StepOutcome.CONTINUING, StepOutcome.LENGTH]
        assert streamer.status is StreamerState.EXHAUSTED
        assert streamer.window.cursor == 5

    def test_zero_budget_stops_immediately(self, fake_engine):
        streamer = make_streamer(fake_engine, budget=0)
        result = streamer.step()
        assert result.outcome is StepOutcome.LENGTH
        assert fake_engine.calls_named("sample") == []

    def test_decode_failure_is_failed_outcome(self, fake_engine):
        streamer = make_streamer(fake_engine)
        fake_engine.queue_samples([ord("a")])
        fake_engine.fail_decodes = {0}

        result = streamer.step()

        assert result.outcome is StepOutcome.FAILED
        assert isinstance(result.error, DecodeError)
        assert result.finish_reason == "error"
        assert streamer.window.cursor == 3
        assert streamer.stats.decode_failures == 1

    @pytest.mark.parametrize("script", ["eog", "horizon", "failure"])
    def test_terminal_signal_is_stable(self, fake_engine, script):
        streamer = make_streamer(fake_engine, budget=0 if script == "horizon" else 10)
        fake_engine.queue_samples([EOG if script == "eog" else ord("a"), ord("b")])
        if script == "failure":
            fake_engine.fail_decodes = {0}

        first = streamer.step()
        fake_engine.clear_calls()
        repeats = [streamer.step() for _ in range(5)]

        assert first.finished
        assert all(r.outcome is first.outcome for r in repeats)
        assert all(r.text == "" for r in repeats)
        assert fake_engine.calls == []

    def test_begin_rearms_after_terminal(self, fake_engine):
        streamer = make_streamer(fake_engine)
        fake_engine.queue_samples([EOG, ord("z")])
        streamer.step()

        streamer.begin()
        result = streamer.step()

        assert result.outcome is StepOutcome.CONTINUING
        assert result.text == "z"


class TestUtf8Buffering:
    """Tests for multi-byte characters split across tokens."""

    def test_two_byte_character_across_steps(self, fake_engine):
        fake_engine.token_bytes = {200: b"\xc3", 201: b"\xa9"}
        streamer = make_streamer(fake_engine)
        fake_engine.queue_samples([200, 201])

        first = streamer.step()
        assert first.outcome is StepOutcome.CONTINUING
        assert first.text == ""
        assert streamer.state.pending_bytes == bytearray(b"\xc3")

        second = streamer.step()
        assert second.text == "é"
        assert streamer.state.pending_bytes == bytearray()

    def test_four_byte_character_reassembled_exactly(self, fake_engine):
        emoji = "😀".encode("utf-8")
        fake_engine.token_bytes = {200: emoji[:3], 201: emoji[3:] + b"!"}
        streamer = make_streamer(fake_engine)
        fake_engine.queue_samples([ord("a"), 200, 201, ord("b")])

        texts = [streamer.step().text for _ in range(4)]

        assert texts == ["a", "", "😀!", "b"]
        assert "".join(texts) == "a😀!b"

    def test_character_split_over_three_tokens(self, fake_engine):
        euro = "€".encode("utf-8")
        fake_engine.token_bytes = {200: euro[:1], 201: euro[1:2], 202: euro[2:]}
        streamer = make_streamer(fake_engine)
        fake_engine.queue_samples([200, 201, 202])

        texts = [streamer.step().text for _ in range(3)]

        assert texts == ["", "", "€"]

    def test_malformed_buffer_is_flushed_with_replacement(self, fake_engine, caplog):
        fake_engine.token_bytes = {200: b"\xff", 201: b"ok"}
        streamer = make_streamer(fake_engine)
        fake_engine.queue_samples([200, 201])

        with caplog.at_level(logging.WARNING, logger="kvsession.streamer"):
            first = streamer.step()

        assert first.text == "�"
        assert streamer.state.pending_bytes == bytearray()
        assert streamer.stats.malformed_flushes == 1
        assert "malformed" in caplog.text.lower()
        # Output resumes instead of being swallowed forever
        assert streamer.step().text == "ok"

    def test_malformed_flush_keeps_partial_character(self, fake_engine):
        fake_engine.token_bytes = {200: b"\xff\xe4", 201: b"\xb8\xad"}
        streamer = make_streamer(fake_engine)
        fake_engine.queue_samples([200, 201])

        first = streamer.step()
        assert first.text == "\ufffd"
        assert streamer.state.pending_bytes == bytearray(b"\xe4")

        second = streamer.step()
        assert second.text == "中"
        assert streamer.state.pending_bytes == bytearray()
        assert streamer.stats.malformed_flushes == 1

    def test_malformed_middle_with_partial_tail(self, fake_engine):
        fake_engine.token_bytes = {200: b"a\xc3b\xe2\x82", 201: b"\xac"}
        streamer = make_streamer(fake_engine)
        fake_engine.queue_samples([200, 201])

        texts = [streamer.step().text for _ in range(2)]

        assert texts == ["a\ufffdb", "€"]

    def test_malformed_flush_can_be_silenced(self, fake_engine, caplog):
        fake_engine.token_bytes = {200: b"\x80"}
        streamer = make_streamer(fake_engine)
        streamer.log_malformed = False
        fake_engine.queue_samples([200])

        with caplog.at_level(logging.WARNING, logger="kvsession.streamer"):
            streamer.step()

        assert caplog.text == ""

    def test_pending_bytes_flushed_on_terminal(self, fake_engine):
        fake_engine.token_bytes = {200: b"\xe2\x82"}
        streamer = make_streamer(fake_engine)
        fake_engine.queue_samples([200, EOG])

        assert streamer.step().text == ""
        result = streamer.step()

        assert result.outcome is StepOutcome.END_OF_GENERATION
        assert result.text == "�"
        assert streamer.state.pending_bytes == bytearray()

    def test_reset_clears_pending(self, fake_engine):
        fake_engine.token_bytes = {200: b"\xc3"}
        streamer = make_streamer(fake_engine)
        fake_engine.queue_samples([200])
        streamer.step()

        streamer.reset()

        assert streamer.state.pending_bytes == bytearray()
        assert streamer.status is StreamerState.READY


class TestShiftDuringGeneration:
    """Tests for the capacity check at the start of each step."""

    def test_shifts_when_cursor_at_limit(self, fake_engine):
        streamer = make_streamer(fake_engine, cursor=60, budget=10)
        fake_engine.queue_samples([ord("a")])

        result = streamer.step()

        assert fake_engine.calls[:2] == [("remove", 0, 0, 30), ("shift", 0, 30, 60, -30)]
        assert fake_engine.batches[0].positions == [30]
        assert result.text == "a"
        assert streamer.window.cursor == 31

    def test_shift_keeps_remaining_budget(self, fake_engine):
        streamer = make_streamer(fake_engine, cursor=60, budget=3)
        fake_engine.queue_samples([ord("a"), ord("b"), ord("c"), ord("d")])

        texts = []
        while True:
            result = streamer.step()
            texts.append(result.text)
            if result.finished:
                break

        assert "".join(texts) == "abc"
        assert streamer.state.stop_horizon == 33

    def test_cursor_never_exceeds_limit(self, fake_engine):
        streamer = make_streamer(fake_engine, cursor=50, budget=200)
        fake_engine.queue_samples([ord("x")] * 150)

        for _ in range(150):
            streamer.step()
            assert streamer.window.cursor <= streamer.window.limit
        assert streamer.stats.shifts > 0

    def test_failed_shift_is_failed_outcome(self, fake_engine):
        streamer = make_streamer(fake_engine, cursor=60, budget=10)
        fake_engine.queue_samples([ord("a")])
        fake_engine.fail_shift = True

        result = streamer.step()

        assert result.outcome is StepOutcome.FAILED
        assert isinstance(result.error, ContextShiftError)
        assert streamer.stats.decode_failures == 1
        assert fake_engine.calls_named("sample") == []

    def test_failed_shift_leaves_record_matching_window(self, fake_engine):
        streamer = make_streamer(fake_engine, cursor=60, budget=10)
        fake_engine.fail_shift = True

        streamer.step()

        assert streamer.window.cursor == 0
        assert streamer.window.evicted == 0
        assert streamer.state.cached_tokens == []
        assert streamer.state.stop_horizon == 0
        assert fake_engine.memory == {}

    def test_failed_shift_is_sticky(self, fake_engine):
        streamer = make_streamer(fake_engine, cursor=60, budget=10)
        fake_engine.fail_shift = True
        first = streamer.step()
        fake_engine.clear_calls()

        repeats = [streamer.step() for _ in range(3)]

        assert all(r.outcome is StepOutcome.FAILED for r in repeats)
        assert all(r.error is first.error for r in repeats)
        assert fake_engine.calls == []
