from __future__ import annotations

import json
import random

import pytest

from companion.dialogue import DialogueLine, DialogueSelector, LinePool
from companion.persistence import SpeechHistory

from conftest import EmotionRecorder, FixedRandom


def pool(prefix: str, count: int) -> list:
    return [DialogueLine(f"{prefix}.{i}", f"line {i}") for i in range(1, count + 1)]


@pytest.fixture
def store() -> SpeechHistory:
    return SpeechHistory()


@pytest.fixture
def recorder() -> EmotionRecorder:
    return EmotionRecorder()


def make_selector(store, memory, state, config, clock, recorder=None, rng=None) -> DialogueSelector:
    return DialogueSelector(store, memory, state, config, trigger_emotion=recorder,
                            rng=rng or random.Random(7), clock=clock)


def test_line_pool_groups_by_prefix_in_natural_order() -> None:
    lines = LinePool({
        "phase1.common.10": "ten",
        "phase1.common.2": "two",
        "phase1.common.1": "one",
        "phase1.common.3": "   ",
        "phase1.rare.1": "rare",
        "phase10.common.1": "other phase",
    })
    assert [l.text for l in lines.lines("phase1.common.")] == ["one", "two", "ten"]
    assert lines.line("phase1.common.3") is None
    assert lines.line("phase1.rare.1") == DialogueLine("phase1.rare.1", "rare")
    assert lines.lines("phase4.chunk.") == []


def test_line_pool_load(tmp_path) -> None:
    path = tmp_path / "lines.json"
    path.write_text(json.dumps({"logout.warning": "bye"}), encoding="utf-8")
    assert LinePool.load(str(path)).line("logout.warning").text == "bye"
    assert LinePool.load(str(tmp_path / "missing.json")).lines("") == []

    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    assert LinePool.load(str(bad)).lines("") == []


def test_recent_lines_are_not_repeated(store, memory, state, config, clock) -> None:
    memory.current_phase = 1
    selector = make_selector(store, memory, state, config, clock)
    common = pool("phase1.common", 6)
    picked = []
    for _ in range(6):
        clock.advance(1)
        picked.append(selector.select(common, None, 1, False).line.key)
    assert len(set(picked)) == 6


def test_exhausted_pool_falls_back_to_recent_lines(store, memory, state, config, clock) -> None:
    memory.current_phase = 2
    selector = make_selector(store, memory, state, config, clock)
    common = pool("phase2.common", 2)
    for _ in range(5):
        clock.advance(1)
        selection = selector.select(common, None, 1, False)
        assert selection is not None
        assert selection.line in common


def test_empty_pool_says_nothing(store, memory, state, config, clock, recorder) -> None:
    selector = make_selector(store, memory, state, config, clock, recorder)
    assert selector.select([], pool("rare", 2), 1, True) is None
    assert store.recent_keys_for_phase(0) == set()
    assert recorder.calls == []
    assert state.next_speak_at == 0.0


def test_rare_pool_mixed_in_on_winning_draw(store, memory, state, config, clock) -> None:
    selector = make_selector(store, memory, state, config, clock, rng=FixedRandom(0))
    selection = selector.select(pool("phase1.common", 1), pool("phase1.rare", 1), 4, True)
    assert selection.is_rare is True

    no_rare = selector.select(pool("phase1.common", 1), pool("phase1.rare", 1), 4, False)
    assert no_rare.is_rare is False
    assert no_rare.line.key == "phase1.common.1"


def test_losing_draw_keeps_common_pool(store, memory, state, config, clock) -> None:
    selector = make_selector(store, memory, state, config, clock, rng=FixedRandom(50))
    selection = selector.select(pool("phase1.common", 1), pool("phase1.rare", 3), 4, True)
    assert selection.is_rare is False
    assert selection.line.key == "phase1.common.1"


def test_selection_is_recorded_for_current_phase(store, memory, state, config, clock) -> None:
    memory.current_phase = 3
    selector = make_selector(store, memory, state, config, clock)
    selection = selector.select(pool("phase3.common", 1), None, 1, False)
    assert store.recent_keys_for_phase(3) == {selection.line.key}
    record = store.records[-1]
    assert record.spoken_at_ms == int(clock() * 1000)
    assert record.phase == 3


@pytest.mark.parametrize("phase, low, high", [(1, 240, 360), (2, 180, 300), (3, 120, 240)])
def test_next_speech_is_scheduled_within_phase_gap(store, memory, state, config, clock,
                                                   phase: int, low: int, high: int) -> None:
    memory.current_phase = phase
    selector = make_selector(store, memory, state, config, clock)
    for _ in range(20):
        selector.select(pool(f"phase{phase}.common", 3), None, 1, False)
        assert clock() + low <= state.next_speak_at <= clock() + high


def test_phase_zero_uses_global_gap(store, memory, state, config, clock) -> None:
    selector = make_selector(store, memory, state, config, clock)
    selector.select(pool("boot_greeting", 1), None, 1, False)
    assert state.next_speak_at == clock() + config.min_global_gap_s


def test_schedule_after_false_leaves_schedule_alone(store, memory, state, config, clock) -> None:
    state.next_speak_at = 123.0
    selector = make_selector(store, memory, state, config, clock)
    selector.select(pool("return_from_idle", 1), None, 1, False, schedule_after=False)
    assert state.next_speak_at == 123.0


@pytest.mark.parametrize(
    "roll, phase, expected",
    [
        (10, 1, [("Curious", 1.2, "FleetingThought")]),
        (30, 2, [("Restless", 1.2, "FleetingBoredom")]),
        (30, 1, []),
        (80, 3, []),
    ],
)
def test_fleeting_mood(store, memory, state, config, clock, recorder, roll, phase, expected) -> None:
    memory.current_phase = phase
    selector = make_selector(store, memory, state, config, clock, recorder, rng=FixedRandom(roll))
    selector.select(pool("phase.common", 1), None, 1, False)
    assert recorder.calls == expected
