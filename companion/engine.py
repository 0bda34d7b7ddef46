"""
The behavior engine: one ``tick`` per check interval decides whether the
companion speaks, changes phase, or starts the extended-idle sequence.
"""
import logging
import random
import threading
import time
from typing import Callable, Iterable, Optional

from companion import effects
from companion.collaborators import (AppClassifier, AudioRefresh, NetworkMonitor, NullAppClassifier,
                                     NullAudioRefresh, NullSpeech, NullTelemetry, OsActions, SpeechHistoryStore,
                                     SpeechSink, SystemMetrics, TelemetryProvider, VisualSink)
from companion.config import EngineConfig
from companion.dialogue import DialogueSelector, LinePool, Selection
from companion.emotion import EmotionModel, MoodConfig, MoodEngine
from companion.games import GameSessionTracker
from companion.monologue import LogoutSequencer
from companion.persistence import SpeechHistory
from companion.phases import HysteresisController, classify
from companion.state import SUPPRESSED, CompanionState, OperatingMode, SessionMemory

log = logging.getLogger(__name__)


def estimate_speech_duration(text: str) -> float:
    """Rough seconds needed to say ``text``."""
    return len(text) * 0.115 + 0.4


class CompanionEngine:
    def __init__(self, config: EngineConfig = None, lines: LinePool = None,
                 telemetry: TelemetryProvider = None, speech: SpeechSink = None,
                 store: SpeechHistoryStore = None, os_actions: OsActions = None,
                 classifier: AppClassifier = None, audio_refresh: AudioRefresh = None,
                 network_monitor: NetworkMonitor = None, visual_sink: VisualSink = None,
                 moods: MoodConfig = None, rng: random.Random = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or EngineConfig()
        self.clock = clock
        self.rng = rng or random.Random()
        self.state = CompanionState(clock)
        self.memory = SessionMemory(clock)

        self.lines = lines or LinePool()
        self.telemetry = telemetry or NullTelemetry()
        self.speech = speech or NullSpeech()
        self.store = store or SpeechHistory()
        self.classifier = classifier or NullAppClassifier()
        self.audio_refresh = audio_refresh or NullAudioRefresh()

        self.emotions = EmotionModel(moods or MoodConfig.load(),
                                     phase_provider=lambda: self.memory.current_phase, clock=clock)
        self.mood = MoodEngine(self.emotions, self.state, visual_sink, clock)
        self.selector = DialogueSelector(self.store, self.memory, self.state, self.config,
                                         trigger_emotion=self.mood.trigger, rng=self.rng, clock=clock)
        self.games = GameSessionTracker(self.memory, self.classifier, self.audio_refresh, self.config, clock)
        self.hysteresis = HysteresisController(self.state, self.memory, self.config, clock)
        self.sequencer = LogoutSequencer(self.memory, self.state, self.lines, self.speech, os_actions,
                                         network_monitor, self.telemetry, self.mood.trigger, self.config, clock)

    def initialize(self, warm_boot: bool = False):
        self.state.initialize(warm_boot)
        log.info("Companion engine initialized (%s boot).", "warm" if warm_boot else "cold")

    # -----------------------------
    # Tick
    # -----------------------------
    def tick(self):
        metrics = None
        try:
            metrics = self._behavior_tick()
        finally:
            self.mood.update(metrics)

    def _behavior_tick(self) -> Optional[SystemMetrics]:
        if self.memory.is_speaking():
            return None

        self._handle_greetings()

        try:
            metrics = self.telemetry.sample()
        except Exception:
            log.warning("Telemetry sample failed. Skipping this tick.", exc_info=True)
            return None
        self._log_status(metrics)

        game = self.games.update(metrics)
        self.execute(game.effects)
        if game.suspended:
            self.state.next_speak_at = SUPPRESSED
            return metrics

        self._handle_system_alerts(metrics)

        phase = classify(metrics.idle_minutes, game.is_gaming, self.config.thresholds.as_tuple())
        self.execute(self.hysteresis.evaluate(metrics, phase))
        return metrics

    def chatter_allowed(self) -> bool:
        return (self.state.current_mode != OperatingMode.ATTENTIVE
                and not self.state.manually_muted
                and not self.memory.is_in_privileged_mode()
                and not self.memory.is_search_mode_active())

    def execute(self, requested: Iterable[object]):
        for effect in requested:
            if isinstance(effect, effects.TriggerEmotion):
                self.mood.trigger(effect.name, effect.delta, effect.cause)
            elif isinstance(effect, effects.SpecialEvent):
                self.mood.trigger_special_event(effect.name)
            elif isinstance(effect, effects.RefreshAudio):
                self.audio_refresh.refresh()
            elif isinstance(effect, effects.CancelSpeech):
                self.speech.cancel()
                self.memory.speech_end_time = 0.0
            elif isinstance(effect, effects.CancelMonologue):
                self.sequencer.cancel(effect.reason)
            elif not self.chatter_allowed():
                if isinstance(effect, effects.StartMonologue):
                    # retried on the first tick chatter is allowed again
                    self.hysteresis.monologue_pending = True
                log.debug("Chatter suppressed, dropping %s.", effect)
            elif isinstance(effect, effects.StartMonologue):
                self.sequencer.start()
            elif isinstance(effect, effects.SpeakPhaseLine):
                self._speak_phase_line(effect.phase)
            elif isinstance(effect, effects.SpeakFromPool):
                self._speak_from_pool(effect)
            else:
                log.warning("Unhandled effect: %r", effect)

    # -----------------------------
    # Speech
    # -----------------------------
    def _speak_phase_line(self, phase: int):
        rare_chance = self.config.rare_chance.get(phase, 1)
        if (phase == 3 and self.memory.in_gaming_session
                and self.rng.randrange(self.config.phase3_game_rare_chance) == 0):
            selection = self.selector.select(self.lines.lines("phase3.game_rare."), None, 1, True)
        else:
            selection = self.selector.select(self.lines.lines(f"phase{phase}.common."),
                                             self.lines.lines(f"phase{phase}.rare."), rare_chance, True)
        self._say_selection(selection)

    def _speak_from_pool(self, effect: effects.SpeakFromPool):
        selection = self.selector.select(self.lines.lines(effect.prefix), None, 1, False,
                                         schedule_after=effect.schedule_after)
        self._say_selection(selection, app_name=effect.app_name)

    def _say_selection(self, selection: Optional[Selection], app_name: str = None):
        if selection is None:
            return
        text = selection.line.text
        if "{app_name}" in text:
            text = text.replace("{app_name}", self._display_name(app_name))
        if selection.is_rare:
            self.mood.trigger("Excited", 0.8, "RareDialogue")
        self.say(text)

    def _display_name(self, app_name: Optional[str]) -> str:
        if not app_name:
            return "your game"
        profile = self.classifier.identify(app_name, "")
        return profile.spoken_name if profile else app_name

    def say(self, text: str):
        self.speech.speak(text)
        self.memory.speech_end_time = self.clock() + estimate_speech_duration(text)

    # -----------------------------
    # Greetings, alerts, status
    # -----------------------------
    def _handle_greetings(self):
        if not self.chatter_allowed():
            return
        if self.state.warm_boot:
            if not self.state.boot_greeting_played:
                self._say_selection(self.selector.select(self.lines.lines("warm_login_greeting."), None, 1, False))
                self.state.boot_greeting_played = True
                self.state.login_greeting_played = True
            return

        since_start = self.clock() - self.state.app_start_time
        if not self.state.boot_greeting_played and since_start >= self.config.first_greeting_delay_s:
            self._say_selection(self.selector.select(self.lines.lines("boot_greeting."), None, 1, False))
            self.state.boot_greeting_played = True
        elif not self.state.login_greeting_played and since_start >= self.config.login_greeting_delay_s:
            self._say_selection(self.selector.select(self.lines.lines("login_greeting."), None, 1, False,
                                                     schedule_after=False))
            self.state.login_greeting_played = True

    def _handle_system_alerts(self, metrics: SystemMetrics):
        if self.memory.in_gaming_session or metrics.cpu_load_percent < self.config.high_cpu_threshold:
            self.state.high_cpu_since = 0.0
            return
        now = self.clock()
        if not self.state.high_cpu_since:
            self.state.high_cpu_since = now
            return
        if now - self.state.high_cpu_since > self.config.cpu_alert_cooldown_s:
            line = self.lines.random_line("alert.cpu.high", self.rng)
            if line is not None and self.chatter_allowed():
                self.say(line.text.replace("{cpu_load}", f"{metrics.cpu_load_percent:.0f}"))
            self.state.high_cpu_since = 0.0

    def _log_status(self, metrics: SystemMetrics):
        if not self.config.verbose_status:
            return
        status = "Idle:%dmin, Window:'%s'(%s), Stream:%s, Game:%s, Phase:%d" % (
            metrics.idle_minutes, metrics.active_window_title, metrics.active_process_name,
            metrics.is_streaming, self.memory.in_gaming_session, self.memory.current_phase)
        if status != self.state.last_logged_status:
            log.info("Status: %s", status)
            self.state.last_logged_status = status

    # -----------------------------
    # Command path
    # -----------------------------
    def record_user_interaction(self):
        self.mood.record_user_interaction()

    def trigger_emotion(self, name: str, delta: float, cause: str = None):
        self.mood.trigger(name, delta, cause)

    def trigger_special_event(self, event_name: str):
        self.mood.trigger_special_event(event_name)

    def set_privileged_mode(self, active: bool, duration_s: float = 15):
        self.memory.set_privileged_mode(active, duration_s)

    def set_search_mode(self, duration_s: float):
        self.memory.set_search_mode(duration_s)

    def set_mode(self, mode: OperatingMode):
        if mode != self.state.current_mode:
            log.info("Operating mode changed to %s.", mode.value)
        self.state.current_mode = mode

    def set_manually_muted(self, muted: bool):
        self.state.manually_muted = muted
        if muted:
            self.speech.cancel()
            self.memory.speech_end_time = 0.0
        log.info("Manual mute %s.", "on" if muted else "off")

    def shutdown(self):
        self.sequencer.cancel("shutting down")


# -----------------------------
# Tick Driver (thread)
# -----------------------------
class TickDriver:
    def __init__(self, engine: CompanionEngine, interval_ms: int = None):
        self.engine = engine
        self.interval = (interval_ms or engine.config.check_interval_ms) / 1000.0
        self.stop_flag = threading.Event()
        self.thread: Optional[threading.Thread] = None

    def _log_error(self, loop_name: str):
        log.exception("An error occurred in the %s loop. See behavior_crash.log for details.", loop_name)

    def start(self):
        self.thread = threading.Thread(target=self._tick_loop, daemon=True, name="tick-driver")
        self.thread.start()

    def stop(self, timeout: float = 5.0):
        log.info("Tick driver: stop flag set.")
        self.stop_flag.set()
        if self.thread is not None:
            self.thread.join(timeout)

    def _tick_loop(self):
        while not self.stop_flag.is_set():
            try:
                self.engine.tick()
            except Exception:
                self._log_error("tick")
            self.stop_flag.wait(self.interval)
        log.info("Tick driver: loop stopped.")
