"""
The extended-idle monologue and the logout that follows it.

After the phase-4 lines finish, a background thread waits for update
clients to go quiet, warns once, waits again and then closes browsers and
logs the user out. Any user return cancels the whole thing; every wait is an
Event wait so cancellation is seen immediately.
"""
import enum
import logging
import threading
import time
from typing import Callable, Dict, Optional

from companion.collaborators import (NetworkMonitor, NullNetworkMonitor, NullOsActions, NullSpeech,
                                     NullTelemetry, OsActions, SpeechSink, TelemetryProvider)
from companion.config import EngineConfig
from companion.dialogue import LinePool
from companion.state import CompanionState, SessionMemory

log = logging.getLogger(__name__)


class SequencerState(enum.Enum):
    IDLE = "idle"
    MONOLOGUING = "monologuing"
    AWAITING_NETWORK_CLEAR = "awaiting_network_clear"
    WARNED = "warned"
    EXECUTED = "executed"
    CANCELLED = "cancelled"


RUNNING_STATES = (SequencerState.MONOLOGUING, SequencerState.AWAITING_NETWORK_CLEAR, SequencerState.WARNED)


class LogoutSequencer:
    def __init__(self, memory: SessionMemory, state: CompanionState, lines: LinePool,
                 speech: SpeechSink = None, os_actions: OsActions = None,
                 network_monitor: NetworkMonitor = None, telemetry: TelemetryProvider = None,
                 trigger_emotion: Callable[[str, float, Optional[str]], None] = None,
                 config: EngineConfig = None, clock: Callable[[], float] = time.time):
        self.memory = memory
        self.state = state
        self.lines = lines
        self.speech = speech or NullSpeech()
        self.os_actions = os_actions or NullOsActions()
        self.network_monitor = network_monitor or NullNetworkMonitor()
        self.telemetry = telemetry or NullTelemetry()
        self.trigger_emotion = trigger_emotion or (lambda name, delta, cause: None)
        self.config = config or EngineConfig()
        self.clock = clock

        self.lock = threading.Lock()
        self.status = SequencerState.IDLE
        self.cancel_event = threading.Event()
        self.thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        with self.lock:
            return self.status in RUNNING_STATES

    def start(self) -> bool:
        if self.state.final_played or self.memory.in_gaming_session:
            return False
        with self.lock:
            if self.status in RUNNING_STATES:
                return False
            self.cancel_event = threading.Event()
            self.status = SequencerState.MONOLOGUING
            cancel = self.cancel_event

        self.memory.in_phase4_monologue = True
        self.trigger_emotion("Lonely", 0.9, "Phase4Lament")
        chunks = [line.text for line in self.lines.lines("phase4.chunk.")]
        log.info("Starting phase 4 monologue (%d lines).", len(chunks))
        self.speech.speak_sequentially(chunks, self.config.logout.chunk_delay_ms, True,
                                       lambda: self._on_monologue_complete(cancel))
        return True

    def cancel(self, reason: str = "user returned") -> bool:
        with self.lock:
            was_running = self.status in RUNNING_STATES
            self.cancel_event.set()
            if was_running:
                self.status = SequencerState.CANCELLED
        self.memory.in_phase4_monologue = False
        if was_running:
            self.speech.cancel()
            log.info("Logout sequence cancelled: %s", reason)
        return was_running

    def join(self, timeout: float = None):
        thread = self.thread
        if thread is not None:
            thread.join(timeout)

    # -----------------------------
    # Background sequence
    # -----------------------------
    def _on_monologue_complete(self, cancel: threading.Event):
        if cancel.is_set() or not self.memory.in_phase4_monologue:
            return
        self.thread = threading.Thread(target=self._run, args=(cancel,), daemon=True,
                                       name="logout-sequence")
        self.thread.start()

    def _run(self, cancel: threading.Event):
        try:
            self._set_status(cancel, SequencerState.AWAITING_NETWORK_CLEAR)
            if not self._wait_for_quiet_network(cancel):
                return

            self._set_status(cancel, SequencerState.WARNED)
            warning = self.lines.line("logout.warning")
            if warning is not None:
                self.trigger_emotion("Annoyed", 0.8, None)
                self.speech.speak(warning.text)
            if cancel.wait(self.config.logout.warning_delay_sec) or not self._still_valid(cancel):
                return

            self._execute(cancel)
        except Exception:
            log.exception("Logout sequence failed.")
            self._finish(cancel, SequencerState.CANCELLED)

    def _wait_for_quiet_network(self, cancel: threading.Event) -> bool:
        while True:
            busy = self._busy_update_client(cancel)
            if not self._still_valid(cancel):
                return False
            if busy is None:
                return True
            log.info("Phase 4 logout delayed. '%s' is updating.", busy)
            if cancel.wait(self.config.logout.network_retry_interval_sec):
                return False
            if not self._still_valid(cancel):
                return False

    def _busy_update_client(self, cancel: threading.Event) -> Optional[str]:
        logout = self.config.logout
        before: Dict[str, int] = {}
        for fragment in logout.update_client_fragments:
            sample = self.network_monitor.bytes_transferred(fragment)
            if sample is not None:
                before[fragment] = sample
        if not before or cancel.wait(logout.network_sample_window_sec):
            return None
        for fragment, start in before.items():
            end = self.network_monitor.bytes_transferred(fragment)
            if end is not None and end - start > logout.network_busy_threshold_bytes:
                return fragment
        return None

    def _execute(self, cancel: threading.Event):
        idle = self.telemetry.sample().idle_minutes
        if idle < self.config.thresholds.phase4:
            log.info("User activity detected (idle %.1f min). Logout skipped.", idle)
            self._finish(cancel, SequencerState.CANCELLED)
            return

        logout = self.config.logout
        if logout.dry_run:
            log.info("Dry run: would close %s and log out.", ", ".join(logout.browser_processes))
            succeeded = True
        else:
            log.info("Executing cleanup and logout.")
            self.os_actions.terminate_processes_by_name(logout.browser_processes)
            succeeded = self.os_actions.logout()

        if succeeded:
            self.state.final_played = True
        else:
            log.error("Logout command failed. Not retrying.")
        self._finish(cancel, SequencerState.EXECUTED)

    # -----------------------------
    # Helpers
    # -----------------------------
    def _still_valid(self, cancel: threading.Event) -> bool:
        return not cancel.is_set() and self.memory.in_phase4_monologue

    def _set_status(self, cancel: threading.Event, status: SequencerState):
        with self.lock:
            if not cancel.is_set():
                self.status = status

    def _finish(self, cancel: threading.Event, status: SequencerState):
        with self.lock:
            if cancel.is_set():
                return
            self.status = status
        self.memory.in_phase4_monologue = False
