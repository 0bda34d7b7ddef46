"""
Idle phases: classification from idle time, and the hysteresis rules that
decide when a new phase is actually committed.
"""
import logging
import time
from typing import Callable, List, Sequence

from companion import effects
from companion.collaborators import SystemMetrics
from companion.config import EngineConfig
from companion.state import SUPPRESSED, CompanionState, SessionMemory

log = logging.getLogger(__name__)

MAX_PHASE = 4


def classify(idle_minutes: float, is_gaming: bool, thresholds: Sequence[float]) -> int:
    """Maps idle minutes onto phase 0-4. A running game caps escalation at 3."""
    t1, t2, t3, t4 = thresholds
    if idle_minutes >= t4:
        return 3 if is_gaming else 4
    if idle_minutes >= t3:
        return 3
    if idle_minutes >= t2:
        return 2
    if idle_minutes >= t1:
        return 1
    return 0


def should_be_muted(metrics: SystemMetrics) -> bool:
    return (metrics.is_hard_muted
            or metrics.is_streaming
            or metrics.is_playing_media
            or (metrics.is_in_fullscreen and not metrics.is_browser_active))


class HysteresisController:
    """
    Commits phase changes. Escalations apply at once; a drop back to phase 0
    needs ``return_debounce_ticks`` consecutive phase-0 readings while unmuted.
    """

    def __init__(self, state: CompanionState, memory: SessionMemory, config: EngineConfig,
                 clock: Callable[[], float] = time.time):
        self.state = state
        self.memory = memory
        self.config = config
        self.clock = clock
        self.monologue_pending = False

    def update_mute(self, metrics: SystemMetrics) -> bool:
        muted = should_be_muted(metrics)
        if muted and not self.state.locked_out:
            log.info("Muting. (Stream:%s, Media:%s, FS:%s, HardMute:%s)", metrics.is_streaming,
                     metrics.is_playing_media, metrics.is_in_fullscreen, metrics.is_hard_muted)
            self.state.locked_out = True
        elif not muted and self.state.locked_out:
            log.info("Unmuting. Media conditions cleared.")
            self.state.locked_out = False
        return self.state.locked_out

    def evaluate(self, metrics: SystemMetrics, new_phase: int) -> List[object]:
        out: List[object] = []
        locked = self.update_mute(metrics)
        if locked:
            self.state.next_speak_at = SUPPRESSED

        old_phase = self.memory.current_phase
        committed = False
        if new_phase != old_phase:
            if new_phase == 0 and old_phase > 0:
                if locked:
                    self.state.consecutive_active_ticks = 0
                    return out
                self.state.consecutive_active_ticks += 1
                if self.state.consecutive_active_ticks < self.config.return_debounce_ticks:
                    return out
                self.state.consecutive_active_ticks = 0
                out.extend(self._commit_return(old_phase))
            else:
                self.state.consecutive_active_ticks = 0
                out.extend(self._commit_change(old_phase, new_phase, locked))
            committed = True
        else:
            self.state.consecutive_active_ticks = 0

        if locked:
            return out
        if self.state.next_speak_at == SUPPRESSED:
            self.state.next_speak_at = self.clock() + self.config.min_global_gap_s

        phase = self.memory.current_phase
        if phase == MAX_PHASE and self.monologue_pending:
            self.monologue_pending = False
            out.append(effects.StartMonologue())
        elif not committed and 1 <= phase < MAX_PHASE and self.clock() >= self.state.next_speak_at:
            out.append(effects.SpeakPhaseLine(phase))
        return out

    def _commit_change(self, old_phase: int, new_phase: int, locked: bool) -> List[object]:
        log.info("Phase changed from %d to %d.", old_phase, new_phase)
        self.memory.current_phase = new_phase
        self.state.final_played = False
        self.monologue_pending = False

        out: List[object] = []
        if new_phase > 0:
            out.append(effects.TriggerEmotion(f"IdlePhase{new_phase}", 1.0, "Idle"))
        if old_phase >= MAX_PHASE > new_phase:
            out.append(effects.CancelMonologue("left phase 4"))

        if new_phase == MAX_PHASE:
            if locked:
                # held until the mute clears
                self.monologue_pending = True
            else:
                out.append(effects.StartMonologue())
        elif new_phase > 0 and not locked:
            out.append(effects.SpeakPhaseLine(new_phase))
        return out

    def _commit_return(self, old_phase: int) -> List[object]:
        log.info("Phase changed from %d to 0 confirmed.", old_phase)
        self.memory.current_phase = 0
        self.state.final_played = False
        self.monologue_pending = False

        out: List[object] = [
            effects.TriggerEmotion("Focused", 1.0, "Activity"),
            effects.TriggerEmotion("Happy", 0.5, "UserReturn"),
            effects.TriggerEmotion("Lonely", -1.0),
            effects.RefreshAudio(),
        ]
        if old_phase >= MAX_PHASE:
            out.append(effects.CancelSpeech())
            out.append(effects.CancelMonologue("user returned"))
            out.append(effects.SpeakFromPool("phase4_interrupt."))
        elif self.memory.in_gaming_session:
            out.append(effects.SpeakFromPool("return_to_game.",
                                             app_name=self.memory.currently_tracked_game_process))
        else:
            out.append(effects.SpeakFromPool("return_from_idle."))
        return out
