import enum
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple

from companion.collaborators import NullVisualSink, SystemMetrics, VisualSink
from companion.state import CompanionState

log = logging.getLogger(__name__)

MOODS_FILE = os.path.join(os.path.dirname(__file__), "moods.json")
DECAY_RATE_PER_SEC = 0.05
FALLBACK_COLOR = (255, 0, 255)
IDLE_COLOR = (100, 100, 255)

Color = Tuple[int, int, int]


class AnimationStyle(enum.Enum):
    GENTLE_PULSE = "GENTLE_PULSE"
    SHARP_FLICKER = "SHARP_FLICKER"
    SLOW_BURN = "SLOW_BURN"
    SLOW_FADE = "SLOW_FADE"
    RAINBOW_CYCLE = "RAINBOW_CYCLE"
    ERRATIC_FLICKER = "ERRATIC_FLICKER"


def parse_color(rgb: Optional[str]) -> Color:
    if not rgb or not rgb.strip():
        return FALLBACK_COLOR
    try:
        r, g, b = (int(part.strip()) for part in rgb.split(","))
    except ValueError:
        return FALLBACK_COLOR
    return (_clamp_channel(r), _clamp_channel(g), _clamp_channel(b))


def _clamp_channel(value: float) -> int:
    return max(0, min(255, int(value)))


# -----------------------------
# Mood definitions
# -----------------------------
@dataclass(frozen=True)
class EmotionDefinition:
    base_color: str
    animation: AnimationStyle = AnimationStyle.GENTLE_PULSE
    voice_style: str = "default"
    pitch: str = "+0%"
    cause_tints: Dict[str, str] = field(default_factory=dict)

    def color_for(self, cause: Optional[str]) -> Color:
        if cause is not None and cause in self.cause_tints:
            return parse_color(self.cause_tints[cause])
        return parse_color(self.base_color)


class MoodConfig:
    def __init__(self, definitions: Dict[str, EmotionDefinition]):
        self.definitions = definitions

    def get(self, name: str) -> Optional[EmotionDefinition]:
        return self.definitions.get(name)

    @classmethod
    def from_dict(cls, data: Dict) -> "MoodConfig":
        definitions = {}
        for name, raw in data.get("emotions", {}).items():
            causes = raw.get("causes") or {}
            definitions[name] = EmotionDefinition(
                base_color=raw.get("base_color", ""),
                animation=AnimationStyle(raw.get("animation", "GENTLE_PULSE")),
                voice_style=raw.get("voice_style", "default"),
                pitch=raw.get("pitch", "+0%"),
                cause_tints={cause: c.get("color_tint", "") for cause, c in causes.items()},
            )
        return cls(definitions)

    @classmethod
    def load(cls, path: str = MOODS_FILE) -> "MoodConfig":
        with open(path, 'r', encoding='utf-8') as f:
            return cls.from_dict(json.load(f))


# -----------------------------
# Emotion Model
# -----------------------------
@dataclass(frozen=True)
class Emotion:
    name: str
    intensity: float
    cause: Optional[str]
    last_trigger_timestamp: float
    voice_style: str = "default"
    pitch: str = "+0%"


@dataclass(frozen=True)
class VisualState:
    color: Color
    animation: AnimationStyle
    brightness: float
    dominant: str
    weights: Dict[str, float] = field(default_factory=dict)


class EmotionModel:
    """
    A decaying set of named emotions, at most one entry per name.

    The sticky emotion for the current phase (IdlePhaseN while idle, Focused
    while active) does not decay.
    """

    def __init__(self, moods: MoodConfig, phase_provider: Callable[[], int] = lambda: 0,
                 clock: Callable[[], float] = time.time):
        self.moods = moods
        self.phase_provider = phase_provider
        self.clock = clock
        self.active: Dict[str, Emotion] = {}
        self.lock = threading.RLock()
        self._last_dominant = ""

    def trigger(self, name: str, delta: float, cause: Optional[str] = None):
        definition = self.moods.get(name)
        if definition is None:
            return
        with self.lock:
            current = self.active.get(name)
            base = current.intensity if current else 0.0
            intensity = max(0.0, min(1.0, base + delta))
            if intensity <= 0:
                self.active.pop(name, None)
                return
            self.active[name] = Emotion(name, intensity, cause, self.clock(),
                                        definition.voice_style, definition.pitch)

    def sticky_name(self) -> str:
        phase = self.phase_provider()
        return f"IdlePhase{phase}" if phase > 0 else "Focused"

    def apply_decay(self, delta_ms: float):
        if delta_ms <= 0:
            return
        amount = (delta_ms / 1000.0) * DECAY_RATE_PER_SEC
        sticky = self.sticky_name()
        with self.lock:
            for name, emotion in list(self.active.items()):
                if name == sticky:
                    continue
                intensity = max(0.0, emotion.intensity - amount)
                if intensity == 0:
                    del self.active[name]
                else:
                    self.active[name] = replace(emotion, intensity=intensity)

    def snapshot(self) -> Dict[str, Emotion]:
        with self.lock:
            return dict(self.active)

    def intensity(self, name: str) -> float:
        with self.lock:
            emotion = self.active.get(name)
            return emotion.intensity if emotion else 0.0

    def dominant(self) -> Optional[Emotion]:
        # ties go to the lexicographically smallest name
        with self.lock:
            if not self.active:
                return None
            return min(self.active.values(), key=lambda e: (-e.intensity, e.name))

    def ranked(self) -> List[Emotion]:
        with self.lock:
            return sorted(self.active.values(), key=lambda e: (-e.intensity, e.name))

    def visual_state(self) -> VisualState:
        with self.lock:
            if not self.active:
                self.trigger("Observing", 0.5, None)
            dominant = self.dominant()
            emotions = list(self.active.values())

        if dominant is None:
            return VisualState(IDLE_COLOR, AnimationStyle.GENTLE_PULSE, 0.5, "Observing")

        if dominant.name != self._last_dominant:
            log.debug("Dominant emotion changed from %s to %s. Active emotions: [%s]",
                      self._last_dominant or "None", dominant.name,
                      ", ".join(f"{e.name}({e.intensity:.2f})" for e in emotions))
            self._last_dominant = dominant.name

        definition = self.moods.get(dominant.name)
        animation = definition.animation if definition else AnimationStyle.GENTLE_PULSE

        total = sum(e.intensity for e in emotions)
        weights = {e.name: e.intensity / total for e in emotions}
        r = g = b = 0.0
        for e in emotions:
            definition = self.moods.get(e.name)
            cr, cg, cb = definition.color_for(e.cause) if definition else FALLBACK_COLOR
            w = weights[e.name]
            r += cr * w
            g += cg * w
            b += cb * w

        color = (_clamp_channel(r), _clamp_channel(g), _clamp_channel(b))
        return VisualState(color, animation, min(1.0, total), dominant.name, weights)


# -----------------------------
# Mood Engine
# -----------------------------
class MoodEngine:
    """Ticks the emotion model and applies the standing mood rules."""

    SPECIAL_EVENTS = {
        "BIRTHDAY": ("Excited", 1.0, "Birthday"),
        "GAME_START": ("Excited", 0.3, "GameStart"),
    }

    def __init__(self, model: EmotionModel, state: CompanionState,
                 visual_sink: VisualSink = None, clock: Callable[[], float] = time.time):
        self.model = model
        self.state = state
        self.visual_sink = visual_sink or NullVisualSink()
        self.clock = clock
        self.last_update_time = clock()

    def update(self, metrics: Optional[SystemMetrics] = None) -> VisualState:
        now = self.clock()
        delta_ms = (now - self.last_update_time) * 1000.0
        self.last_update_time = now

        self.model.apply_decay(delta_ms)
        if metrics is not None:
            self._detect_system_stress(metrics)
        self.state.update_patience(delta_ms)

        visual = self.model.visual_state()
        self.visual_sink.set_visual_state(visual)
        return visual

    def _detect_system_stress(self, metrics: SystemMetrics):
        if metrics.cpu_load_percent > 90:
            self.model.trigger("Pain", 0.5, "Overload")
        if metrics.memory_usage_percent > 95:
            self.model.trigger("Pain", 0.6, "Overload")

    def trigger(self, name: str, delta: float, cause: Optional[str] = None):
        self.model.trigger(name, delta, cause)

    def record_user_interaction(self):
        log.debug("User interaction recorded. Resetting idle moods.")
        self.model.trigger("Lonely", -1.0)
        self.model.trigger("Happy", 0.3, "Interaction")
        patience = self.state.increase_patience(0.1)
        log.debug("Patience increased to %.2f", patience)

    def trigger_special_event(self, event_name: str):
        event = self.SPECIAL_EVENTS.get(event_name)
        if event:
            self.model.trigger(*event)

    def voice_style(self) -> Tuple[str, str]:
        """(style, pitch) for the next utterance, taken from the dominant emotion."""
        ranked = self.model.ranked()
        if not ranked:
            return ("default", "+0%")
        style, pitch = ranked[0].voice_style, ranked[0].pitch
        if style == "default":
            for e in ranked[1:]:
                if e.voice_style != "default":
                    style = e.voice_style
                    break
        return (style, pitch)
