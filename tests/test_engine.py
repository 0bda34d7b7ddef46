from __future__ import annotations

import random
import threading
from dataclasses import replace

import pytest

from companion.collaborators import AppProfile, SystemMetrics
from companion.config import EngineConfig
from companion.dialogue import LinePool
from companion.engine import CompanionEngine, TickDriver, estimate_speech_duration
from companion.monologue import SequencerState
from companion.persistence import SpeechHistory
from companion.state import OperatingMode

from conftest import FakeAudioRefresh, FakeClassifier, FakeClock, FakeSpeech, FakeTelemetry

LINES = LinePool({
    "boot_greeting.1": "Systems online.",
    "login_greeting.1": "Settled in?",
    "warm_login_greeting.1": "Welcome back, session resumed.",
    "return_from_idle.1": "You're back!",
    "return_to_game.1": "Back to {app_name}?",
    "phase4_interrupt.1": "Oh! Never mind.",
    "phase1.common.1": "Taking a break?",
    "phase1.common.2": "Still here.",
    "phase2.common.1": "Still away.",
    "phase3.common.1": "Getting long.",
    "phase3.game_rare.1": "Your game is waiting.",
    "phase4.chunk.1": "Gone a long time.",
    "phase4.chunk.2": "Tidying up soon.",
    "logout.warning": "Logging out.",
    "alert.cpu.high": "CPU at {cpu_load} percent.",
    "awareness.game.1": "Ooh, {app_name}!",
})

ELDEN_RING = AppProfile("eldenring.exe", "Elden Ring", "Game")


class Rig:
    def __init__(self, warm_boot: bool = False, greeted: bool = True, rng=None) -> None:
        self.clock = FakeClock()
        self.speech = FakeSpeech()
        self.telemetry = FakeTelemetry()
        self.audio = FakeAudioRefresh()
        self.engine = CompanionEngine(
            config=EngineConfig(),
            lines=LINES,
            telemetry=self.telemetry,
            speech=self.speech,
            store=SpeechHistory(),
            classifier=FakeClassifier({"eldenring.exe": ELDEN_RING}),
            audio_refresh=self.audio,
            rng=rng or random.Random(3),
            clock=self.clock,
        )
        self.engine.initialize(warm_boot=warm_boot)
        if greeted:
            self.engine.state.boot_greeting_played = True
            self.engine.state.login_greeting_played = True

    def tick(self, advance: float = 30.0, **metrics) -> None:
        self.clock.advance(advance)
        self.telemetry.metrics = replace(SystemMetrics(), **metrics)
        self.engine.tick()


def test_estimate_speech_duration() -> None:
    assert estimate_speech_duration("") == pytest.approx(0.4)
    assert estimate_speech_duration("abcd") == pytest.approx(0.86)


def test_cold_boot_greetings_follow_delays() -> None:
    rig = Rig(greeted=False)
    rig.tick(advance=2)
    assert rig.speech.spoken == []
    rig.tick(advance=4)
    assert rig.speech.spoken == ["Systems online."]
    rig.tick(advance=60)
    assert rig.speech.spoken == ["Systems online."]
    rig.tick(advance=60)
    assert rig.speech.spoken == ["Systems online.", "Settled in?"]
    rig.tick(advance=600)
    assert len(rig.speech.spoken) == 2


def test_warm_boot_greets_once() -> None:
    rig = Rig(warm_boot=True, greeted=False)
    rig.tick(advance=0.5)
    rig.tick()
    rig.tick(advance=200)
    assert rig.speech.spoken == ["Welcome back, session resumed."]
    assert rig.engine.state.login_greeting_played is True


def test_idle_escalation_speaks_phase_lines() -> None:
    rig = Rig()
    rig.tick(idle_minutes=6)
    assert rig.engine.memory.current_phase == 1
    assert rig.speech.spoken[-1] in ("Taking a break?", "Still here.")
    now = rig.clock()
    assert now + 240 <= rig.engine.state.next_speak_at <= now + 360
    assert rig.engine.emotions.intensity("IdlePhase1") == 1.0

    rig.tick(idle_minutes=11)
    assert rig.engine.memory.current_phase == 2
    assert rig.speech.spoken[-1] == "Still away."


def test_speech_gate_skips_ticks_while_talking() -> None:
    rig = Rig()
    rig.tick(idle_minutes=6)
    spoken_until = rig.engine.memory.speech_end_time
    assert spoken_until > rig.clock()
    rig.tick(advance=0.1, idle_minutes=30)
    assert rig.engine.memory.current_phase == 1


def test_return_from_idle_after_debounce() -> None:
    rig = Rig()
    rig.tick(idle_minutes=11)
    rig.tick(idle_minutes=0)
    rig.tick(idle_minutes=0)
    assert rig.engine.memory.current_phase == 2
    rig.tick(idle_minutes=0)
    assert rig.engine.memory.current_phase == 0
    assert rig.speech.spoken[-1] == "You're back!"
    assert rig.audio.count == 1
    assert rig.engine.emotions.intensity("Focused") == 1.0


def test_return_to_game_names_the_game() -> None:
    rig = Rig()
    playing = dict(active_process_name="eldenring.exe", running_processes=frozenset({"eldenring.exe"}))
    rig.tick(**playing)
    assert rig.speech.spoken[-1] == "Ooh, Elden Ring!"
    rig.tick(idle_minutes=6, **playing)
    for _ in range(3):
        rig.tick(idle_minutes=0, **playing)
    assert rig.speech.spoken[-1] == "Back to Elden Ring?"


def test_gaming_caps_escalation_at_phase_three() -> None:
    rig = Rig()
    playing = dict(active_process_name="eldenring.exe", running_processes=frozenset({"eldenring.exe"}))
    rig.tick(**playing)
    rig.tick(idle_minutes=45, **playing)
    assert rig.engine.memory.current_phase == 3
    assert rig.speech.sequences == []


def test_phase4_monologue_and_interrupt() -> None:
    rig = Rig()
    rig.tick(idle_minutes=30)
    assert rig.engine.memory.current_phase == 4
    assert rig.speech.sequences[0]["lines"] == ["Gone a long time.", "Tidying up soon."]
    assert rig.engine.memory.in_phase4_monologue is True

    for _ in range(3):
        rig.tick(idle_minutes=0)
    assert rig.engine.memory.current_phase == 0
    assert rig.engine.memory.in_phase4_monologue is False
    assert rig.speech.cancel_count >= 1
    assert rig.speech.spoken[-1] == "Oh! Never mind."
    assert rig.engine.emotions.intensity("Lonely") == 0.0


def test_monologue_held_through_search_window_starts_afterwards() -> None:
    rig = Rig()
    rig.tick(idle_minutes=21)
    rig.engine.set_search_mode(10)
    rig.tick(advance=5, idle_minutes=28)
    assert rig.engine.memory.current_phase == 4
    assert rig.speech.sequences == []

    rig.tick(idle_minutes=40)
    assert rig.speech.sequences[0]["lines"] == ["Gone a long time.", "Tidying up soon."]
    assert rig.engine.sequencer.status == SequencerState.MONOLOGUING
    assert rig.engine.memory.in_phase4_monologue is True


def test_monologue_held_through_manual_mute() -> None:
    rig = Rig()
    rig.engine.set_manually_muted(True)
    rig.tick(idle_minutes=30)
    rig.tick(idle_minutes=31)
    assert rig.engine.memory.current_phase == 4
    assert rig.speech.sequences == []

    rig.engine.set_manually_muted(False)
    rig.tick(idle_minutes=32)
    assert len(rig.speech.sequences) == 1
    rig.tick(idle_minutes=33)
    assert len(rig.speech.sequences) == 1


def test_attentive_mode_keeps_state_machine_but_stays_quiet() -> None:
    rig = Rig()
    rig.engine.set_mode(OperatingMode.ATTENTIVE)
    rig.tick(idle_minutes=12)
    assert rig.engine.memory.current_phase == 2
    assert rig.speech.spoken == []

    rig.engine.set_mode(OperatingMode.INTEGRATED)
    rig.tick(idle_minutes=12)
    assert rig.speech.spoken == ["Still away."]


def test_manual_mute_and_privileged_window_silence_chatter() -> None:
    rig = Rig()
    rig.engine.set_manually_muted(True)
    rig.tick(idle_minutes=6)
    assert rig.speech.spoken == []
    rig.engine.set_manually_muted(False)

    rig.engine.set_privileged_mode(True, duration_s=60)
    rig.tick(advance=1, idle_minutes=12)
    assert rig.speech.spoken == []
    rig.tick(advance=120, idle_minutes=12)
    assert rig.speech.spoken == ["Still away."]


def test_media_mute_blocks_speech() -> None:
    rig = Rig()
    rig.tick(idle_minutes=6, is_playing_media=True)
    assert rig.engine.memory.current_phase == 1
    assert rig.speech.spoken == []
    assert rig.engine.state.locked_out is True


def test_cpu_alert_after_sustained_load() -> None:
    rig = Rig()
    rig.tick(advance=1, cpu_load_percent=95)
    rig.tick(advance=30, cpu_load_percent=95)
    assert rig.speech.spoken == []
    rig.tick(advance=31, cpu_load_percent=95)
    assert rig.speech.spoken == ["CPU at 95 percent."]
    assert rig.engine.emotions.intensity("Pain") > 0


def test_cpu_alert_resets_when_load_drops() -> None:
    rig = Rig()
    rig.tick(advance=1, cpu_load_percent=95)
    rig.tick(advance=50, cpu_load_percent=20)
    rig.tick(advance=50, cpu_load_percent=95)
    rig.tick(advance=50, cpu_load_percent=95)
    assert rig.speech.spoken == []


def test_telemetry_failure_skips_tick(caplog) -> None:
    rig = Rig()
    rig.telemetry.error = RuntimeError("sensor offline")
    rig.clock.advance(10)
    rig.engine.tick()
    assert rig.engine.memory.current_phase == 0
    assert "Telemetry sample failed" in caplog.text


def test_verbose_status_logs_only_changes(caplog) -> None:
    rig = Rig()
    rig.engine.config.verbose_status = True
    caplog.set_level("INFO", logger="companion.engine")
    rig.tick(advance=1)
    rig.tick(advance=1)
    rig.tick(advance=1, idle_minutes=2)
    statuses = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Status:")]
    assert len(statuses) == 2


def test_command_path_updates_mood() -> None:
    rig = Rig()
    rig.engine.trigger_emotion("Lonely", 0.7)
    rig.engine.record_user_interaction()
    assert rig.engine.emotions.intensity("Lonely") == 0.0
    assert rig.engine.state.patience == pytest.approx(0.6)
    rig.engine.trigger_special_event("BIRTHDAY")
    assert rig.engine.emotions.intensity("Excited") == 1.0


class ExplodingEngine:
    def __init__(self) -> None:
        self.config = EngineConfig(check_interval_ms=5)
        self.calls = 0
        self.done = threading.Event()

    def tick(self) -> None:
        self.calls += 1
        if self.calls >= 3:
            self.done.set()
        raise RuntimeError("boom")


def test_tick_driver_survives_exceptions(caplog) -> None:
    engine = ExplodingEngine()
    driver = TickDriver(engine)
    driver.start()
    try:
        assert engine.done.wait(2.0)
    finally:
        driver.stop()
    assert not driver.thread.is_alive()
    errors = [r for r in caplog.records if r.levelname == "ERROR"]
    assert errors and errors[0].exc_info is not None
