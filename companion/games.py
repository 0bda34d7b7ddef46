import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List

from companion import effects
from companion.collaborators import AppClassifier, AudioRefresh, NullAppClassifier, NullAudioRefresh, SystemMetrics
from companion.config import GAME_AWARENESS_EXCLUSIONS, EngineConfig
from companion.state import SessionMemory

log = logging.getLogger(__name__)

GAME_CATEGORY = "game"


@dataclass
class GameStatus:
    is_gaming: bool
    suspended: bool = False
    effects: List[object] = field(default_factory=list)


def _bare_process_name(name: str) -> str:
    name = name.lower()
    return name[:-4] if name.endswith(".exe") else name


class GameSessionTracker:
    """
    Follows one game process at a time. A game that vanishes gets a grace
    period before the session ends, so a relaunch or loading screen does not
    count as leaving.
    """

    def __init__(self, memory: SessionMemory, classifier: AppClassifier = None,
                 audio_refresh: AudioRefresh = None, config: EngineConfig = None,
                 clock: Callable[[], float] = time.time):
        self.memory = memory
        self.classifier = classifier or NullAppClassifier()
        self.audio_refresh = audio_refresh or NullAudioRefresh()
        self.config = config or EngineConfig()
        self.clock = clock

    def update(self, metrics: SystemMetrics) -> GameStatus:
        tracked = self.memory.currently_tracked_game_process
        if tracked is not None and tracked not in metrics.running_processes:
            self._handle_missing_game(tracked)
            return GameStatus(self.memory.in_gaming_session, suspended=True)

        if tracked is not None and self.memory.game_session_grace_period_end:
            log.info("Tracked game '%s' is back. Grace period cancelled.", tracked)
            self.memory.game_session_grace_period_end = 0.0

        profile = self.classifier.identify(metrics.active_process_name, metrics.active_window_title)
        if profile is None or profile.category.lower() != GAME_CATEGORY:
            return GameStatus(self.memory.in_gaming_session)

        process_name = profile.process_name.lower()
        if _bare_process_name(process_name) in GAME_AWARENESS_EXCLUSIONS:
            return GameStatus(self.memory.in_gaming_session)

        out: List[object] = []
        if tracked != process_name:
            log.info("New game session detected: %s", profile.display_name)
            self.memory.currently_tracked_game_process = process_name
            self.memory.game_session_grace_period_end = 0.0
            self.memory.in_gaming_session = True
            out.append(effects.SpecialEvent("GAME_START"))
            out.append(effects.SpeakFromPool("awareness.game.", app_name=profile.spoken_name))
        return GameStatus(True, effects=out)

    def _handle_missing_game(self, tracked: str):
        grace_end = self.memory.game_session_grace_period_end
        now = self.clock()
        if not grace_end:
            log.info("Tracked game '%s' process disappeared. Starting grace period.", tracked)
            self.memory.game_session_grace_period_end = now + self.config.game_grace_period_s
        elif now > grace_end:
            log.info("Grace period ended for '%s'. Ending session.", tracked)
            self.memory.currently_tracked_game_process = None
            self.memory.game_session_grace_period_end = 0.0
            self.memory.in_gaming_session = False
            self.audio_refresh.refresh()
