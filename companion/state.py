"""
Process-lifetime state for one engine instance.

Nothing here is persisted. CompanionState and SessionMemory are shared between
the tick driver, the command path and the logout thread, so every field goes
through a lock.
"""
import enum
import math
import threading
import time
from typing import Callable, Optional

SUPPRESSED = math.inf  # next_speak_at while nothing may be scheduled

PATIENCE_DECAY_PER_SEC = 0.0005


class OperatingMode(enum.Enum):
    INTEGRATED = "integrated"  # idle chat and general assistance
    ATTENTIVE = "attentive"  # silent, wake word only
    DND_ASSISTANT = "dnd_assistant"


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


class CompanionState:
    def __init__(self, clock: Callable[[], float] = time.time):
        self.lock = threading.RLock()
        self._clock = clock
        self._next_speak_at = 0.0
        self._locked_out = False
        self._final_played = False
        self._boot_greeting_played = False
        self._login_greeting_played = False
        self._current_mode = OperatingMode.INTEGRATED
        self._manually_muted = False
        self._patience = 0.5
        self.app_start_time = clock()
        self.warm_boot = False
        # Tick-driver only
        self.consecutive_active_ticks = 0
        self.high_cpu_since = 0.0
        self.last_logged_status = ""

    def initialize(self, warm_boot: bool):
        with self.lock:
            self.app_start_time = self._clock()
            self.warm_boot = warm_boot

    @property
    def next_speak_at(self) -> float:
        with self.lock:
            return self._next_speak_at

    @next_speak_at.setter
    def next_speak_at(self, value: float):
        with self.lock:
            self._next_speak_at = value

    @property
    def locked_out(self) -> bool:
        with self.lock:
            return self._locked_out

    @locked_out.setter
    def locked_out(self, value: bool):
        with self.lock:
            self._locked_out = value

    @property
    def final_played(self) -> bool:
        with self.lock:
            return self._final_played

    @final_played.setter
    def final_played(self, value: bool):
        with self.lock:
            self._final_played = value

    @property
    def boot_greeting_played(self) -> bool:
        with self.lock:
            return self._boot_greeting_played

    @boot_greeting_played.setter
    def boot_greeting_played(self, value: bool):
        with self.lock:
            self._boot_greeting_played = value

    @property
    def login_greeting_played(self) -> bool:
        with self.lock:
            return self._login_greeting_played

    @login_greeting_played.setter
    def login_greeting_played(self, value: bool):
        with self.lock:
            self._login_greeting_played = value

    @property
    def current_mode(self) -> OperatingMode:
        with self.lock:
            return self._current_mode

    @current_mode.setter
    def current_mode(self, mode: OperatingMode):
        with self.lock:
            self._current_mode = mode

    @property
    def manually_muted(self) -> bool:
        with self.lock:
            return self._manually_muted

    @manually_muted.setter
    def manually_muted(self, value: bool):
        with self.lock:
            self._manually_muted = value

    # --- Patience ---
    @property
    def patience(self) -> float:
        with self.lock:
            return self._patience

    @patience.setter
    def patience(self, value: float):
        with self.lock:
            self._patience = _clamp01(value)

    def increase_patience(self, amount: float) -> float:
        with self.lock:
            self._patience = _clamp01(self._patience + amount)
            return self._patience

    def update_patience(self, delta_ms: float):
        if delta_ms <= 0:
            return
        with self.lock:
            self._patience = _clamp01(self._patience - (delta_ms / 1000.0) * PATIENCE_DECAY_PER_SEC)


class SessionMemory:
    """Short-term working memory; reset only by a process restart."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.lock = threading.RLock()
        self._clock = clock
        self._current_phase = 0
        self._in_phase4_monologue = False
        self._tracked_game: Optional[str] = None
        self._grace_period_end = 0.0
        self._in_gaming_session = False
        self._speech_end_time = 0.0
        self._privileged_mode_end_time = 0.0
        self._search_query_end_time = 0.0

    @property
    def current_phase(self) -> int:
        with self.lock:
            return self._current_phase

    @current_phase.setter
    def current_phase(self, phase: int):
        with self.lock:
            self._current_phase = phase

    @property
    def in_phase4_monologue(self) -> bool:
        with self.lock:
            return self._in_phase4_monologue

    @in_phase4_monologue.setter
    def in_phase4_monologue(self, value: bool):
        with self.lock:
            self._in_phase4_monologue = value

    @property
    def currently_tracked_game_process(self) -> Optional[str]:
        with self.lock:
            return self._tracked_game

    @currently_tracked_game_process.setter
    def currently_tracked_game_process(self, process_name: Optional[str]):
        with self.lock:
            self._tracked_game = process_name

    @property
    def game_session_grace_period_end(self) -> float:
        with self.lock:
            return self._grace_period_end

    @game_session_grace_period_end.setter
    def game_session_grace_period_end(self, timestamp: float):
        with self.lock:
            self._grace_period_end = timestamp

    @property
    def in_gaming_session(self) -> bool:
        with self.lock:
            return self._in_gaming_session

    @in_gaming_session.setter
    def in_gaming_session(self, value: bool):
        with self.lock:
            self._in_gaming_session = value

    @property
    def speech_end_time(self) -> float:
        with self.lock:
            return self._speech_end_time

    @speech_end_time.setter
    def speech_end_time(self, timestamp: float):
        with self.lock:
            self._speech_end_time = timestamp

    def is_speaking(self) -> bool:
        return self._clock() < self.speech_end_time

    # --- Command-path windows ---
    @property
    def privileged_mode_end_time(self) -> float:
        with self.lock:
            return self._privileged_mode_end_time

    def set_privileged_mode(self, active: bool, duration_s: float = 15):
        with self.lock:
            self._privileged_mode_end_time = self._clock() + duration_s if active else 0.0

    def is_in_privileged_mode(self) -> bool:
        return self._clock() < self.privileged_mode_end_time

    @property
    def search_query_end_time(self) -> float:
        with self.lock:
            return self._search_query_end_time

    def set_search_mode(self, duration_s: float):
        with self.lock:
            self._search_query_end_time = self._clock() + duration_s if duration_s > 0 else 0.0

    def is_search_mode_active(self) -> bool:
        return self._clock() < self.search_query_end_time
