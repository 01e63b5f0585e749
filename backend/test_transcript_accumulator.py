import asyncio
from datetime import datetime, timedelta, timezone

from transcript_accumulator import TranscriptAccumulator, format_clock

START = datetime(2025, 1, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now


def test_format_clock():
    assert format_clock(0) == "00:00"
    assert format_clock(75.9) == "01:15"
    assert format_clock(-3) == "00:00"


def test_duplicate_finals_are_collapsed():
    acc = TranscriptAccumulator(clock=FakeClock())
    acc.start()

    assert acc.on_transcript_event("moderator", "other", "Welcome everyone.", False) is not None
    assert acc.on_transcript_event("user", "human", "Thanks", False) is not None
    assert acc.on_transcript_event("moderator", "other", "  Welcome everyone. ", False) is None

    assert [e.text for e in acc.history] == ["Welcome everyone.", "Thanks"]
    assert [e.entry_id for e in acc.history] == ["entry_00001", "entry_00002"]


def test_same_text_from_different_speakers_is_kept():
    acc = TranscriptAccumulator(clock=FakeClock())
    acc.start()
    acc.on_transcript_event("panelist_0", "other", "I agree.", False)
    acc.on_transcript_event("panelist_1", "other", "I agree.", False)

    assert len(acc.history) == 2


def test_empty_final_is_not_stored():
    acc = TranscriptAccumulator(clock=FakeClock())
    acc.start()
    assert acc.on_transcript_event("user", "human", "   ", False) is None
    assert acc.history == []


def test_debounce_applies_only_last_partial():
    async def scenario():
        applied = []
        acc = TranscriptAccumulator(debounce_seconds=0.05, on_change=lambda: applied.append(acc.active_partial))
        acc.start()

        acc.on_transcript_event("user", "human", "I dis", True)
        acc.on_transcript_event("user", "human", "I disagree", True)
        acc.on_transcript_event("user", "human", "I disagree with", True)
        await asyncio.sleep(0.15)
        return acc, applied

    acc, applied = asyncio.run(scenario())

    assert acc.active_partial is not None
    assert acc.active_partial.text == "I disagree with"
    assert [p.text for p in applied] == ["I disagree with"]


def test_short_partial_is_dropped():
    async def scenario():
        acc = TranscriptAccumulator(debounce_seconds=0.01)
        acc.start()
        acc.on_transcript_event("user", "human", "um", True)
        await asyncio.sleep(0.05)
        return acc

    acc = asyncio.run(scenario())
    assert acc.active_partial is None


def test_final_cancels_pending_partial():
    async def scenario():
        acc = TranscriptAccumulator(debounce_seconds=0.05)
        acc.start()
        acc.on_transcript_event("user", "human", "I think that", True)
        acc.on_transcript_event("user", "human", "I think that is wrong.", False)
        await asyncio.sleep(0.1)
        return acc

    acc = asyncio.run(scenario())
    assert acc.active_partial is None
    assert [e.text for e in acc.history] == ["I think that is wrong."]


def test_elapsed_label_uses_event_timestamp():
    clock = FakeClock()
    acc = TranscriptAccumulator(clock=clock)
    acc.start()

    entry = acc.on_transcript_event("user", "human", "Opening point", False, START + timedelta(seconds=83))
    assert acc.elapsed_label(entry) == "01:23"

    clock.now = START + timedelta(seconds=5)
    received = acc.on_transcript_event("moderator", "other", "Noted", False)
    assert acc.elapsed_label(received) == "00:05"


def test_elapsed_label_is_floored_at_zero():
    acc = TranscriptAccumulator(clock=FakeClock())
    acc.start()
    entry = acc.on_transcript_event("user", "human", "Early", False, START - timedelta(seconds=10))
    assert acc.elapsed_label(entry) == "00:00"


def test_aware_timestamp_is_converted_to_local_time():
    local_start = datetime.now().replace(microsecond=0)
    acc = TranscriptAccumulator(clock=lambda: local_start)
    acc.start()

    aware = local_start.astimezone(timezone.utc) + timedelta(seconds=30)
    entry = acc.on_transcript_event("user", "human", "From the wire", False, aware)
    assert acc.elapsed_label(entry) == "00:30"


def test_elapsed_label_falls_back_to_running_timer():
    clock = FakeClock()
    acc = TranscriptAccumulator(clock=clock)
    acc.start()
    entry = acc.on_transcript_event("user", "human", "Something", False)
    acc.session_start = None

    assert acc.elapsed_label(entry) == "00:00"


def test_full_transcript_text_uses_display_names():
    clock = FakeClock()
    acc = TranscriptAccumulator(clock=clock)
    acc.start()
    clock.now = START + timedelta(seconds=61)
    acc.on_transcript_event("opponent", "other", "The resolution fails.", False)

    text = acc.full_transcript_text({"opponent": "Douglas"})
    assert text == "[01:01] DOUGLAS: The resolution fails."


def test_reset_clears_history_and_pending():
    async def scenario():
        acc = TranscriptAccumulator(debounce_seconds=0.05)
        acc.start()
        acc.on_transcript_event("user", "human", "Hello there", False)
        acc.on_transcript_event("user", "human", "Partial text", True)
        await acc.aclose()
        await asyncio.sleep(0.1)
        return acc

    acc = asyncio.run(scenario())
    assert acc.history == []
    assert acc.active_partial is None
    assert acc._pending == {}
