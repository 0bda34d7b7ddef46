import json
import logging
import os
import random
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from companion.collaborators import SpeechHistoryStore
from companion.config import EngineConfig
from companion.state import CompanionState, SessionMemory

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DialogueLine:
    key: Optional[str]
    text: str


@dataclass(frozen=True)
class SpokenLineRecord:
    line_key: Optional[str]
    line_text: str
    spoken_at_ms: int
    phase: int


@dataclass(frozen=True)
class Selection:
    line: DialogueLine
    is_rare: bool = False


def _natural_key(key: str):
    return [int(part) if part.isdigit() else part for part in re.split(r"(\d+)", key)]


# -----------------------------
# Line Pools
# -----------------------------
class LinePool:
    """
    Dialogue lines keyed like ``phase2.common.3``; a pool is every line sharing
    a key prefix, in natural key order.
    """

    def __init__(self, lines: Dict[str, str] = None):
        self._lines: Dict[str, str] = {k: v for k, v in (lines or {}).items() if v and v.strip()}
        self._ordered = sorted(self._lines, key=_natural_key)

    @classmethod
    def load(cls, path: str) -> "LinePool":
        if not os.path.exists(path):
            log.warning("Line file %s not found. The companion will stay quiet.", path)
            return cls()
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error("Could not load lines from %s: %s", path, e)
            return cls()
        return cls(data)

    def lines(self, prefix: str) -> List[DialogueLine]:
        return [DialogueLine(k, self._lines[k]) for k in self._ordered if k.startswith(prefix)]

    def line(self, key: str) -> Optional[DialogueLine]:
        text = self._lines.get(key)
        return DialogueLine(key, text) if text else None

    def random_line(self, prefix: str, rng: random.Random = random) -> Optional[DialogueLine]:
        pool = self.lines(prefix)
        return rng.choice(pool) if pool else None


# -----------------------------
# Dialogue Selector
# -----------------------------
class DialogueSelector:
    """Picks a line from a common/rare pool pair while avoiding recent repeats."""

    def __init__(self, store: SpeechHistoryStore, memory: SessionMemory, state: CompanionState,
                 config: EngineConfig, trigger_emotion: Callable[[str, float, Optional[str]], None] = None,
                 rng: random.Random = None, clock: Callable[[], float] = time.time):
        self.store = store
        self.memory = memory
        self.state = state
        self.config = config
        self.trigger_emotion = trigger_emotion or (lambda name, delta, cause: None)
        self.rng = rng or random.Random()
        self.clock = clock

    def select(self, common: Sequence[DialogueLine], rare: Sequence[DialogueLine] = None,
               rare_chance: int = 1, can_be_rare: bool = True,
               schedule_after: bool = True) -> Optional[Selection]:
        if not common:
            return None

        phase = self.memory.current_phase
        self._fleeting_mood(phase)

        candidates = list(common)
        is_rare = False
        if can_be_rare and rare and self.rng.randrange(max(1, rare_chance)) == 0:
            candidates.extend(rare)
            is_rare = True

        recent = self.store.recent_keys_for_phase(phase, self.config.recent_lines_per_phase)
        available = [line for line in candidates if line.key not in recent]
        # never come back empty-handed while the pool itself has lines
        line = self.rng.choice(available or candidates)

        self.store.record_spoken_line(
            SpokenLineRecord(line.key, line.text, int(self.clock() * 1000), phase))
        if schedule_after:
            self.schedule_next(phase)
        return Selection(line, is_rare)

    def schedule_next(self, phase: int):
        lo, hi = self.config.gap_for_phase(phase)
        gap = lo if lo == hi else self.rng.randint(int(lo), int(hi))
        self.state.next_speak_at = self.clock() + gap

    def _fleeting_mood(self, phase: int):
        roll = self.rng.randrange(100)
        if roll < 25:
            self.trigger_emotion("Curious", 1.2, "FleetingThought")
        elif roll < 35 and phase > 1:
            self.trigger_emotion("Restless", 1.2, "FleetingBoredom")
