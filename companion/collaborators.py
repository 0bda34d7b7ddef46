"""
Contracts for everything the engine talks to but does not own.

Each contract comes with a Null implementation so the engine can be built
with only the pieces a caller cares about.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, Iterable, List, Optional, Protocol, Set

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SystemMetrics:
    cpu_load_percent: float = 0.0
    memory_usage_percent: float = 0.0
    idle_minutes: float = 0.0
    active_process_name: str = "unknown"
    active_window_title: str = ""
    is_streaming: bool = False
    is_playing_media: bool = False
    is_in_fullscreen: bool = False
    is_browser_active: bool = False
    is_hard_muted: bool = False
    running_processes: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class AppProfile:
    process_name: str
    display_name: str
    category: str = "Generic"
    short_name: Optional[str] = None
    window_title_regex: Optional[re.Pattern] = None
    is_launcher: bool = False

    @property
    def spoken_name(self) -> str:
        return self.short_name or self.display_name


class TelemetryProvider(Protocol):
    def sample(self) -> SystemMetrics: ...


class SpeechSink(Protocol):
    def speak(self, text: str) -> None: ...

    def speak_sequentially(self, lines: List[str], delay_ms: int, cancellable: bool,
                           on_complete: Optional[Callable[[], None]]) -> None: ...

    def cancel(self) -> None: ...


class OsActions(Protocol):
    def terminate_processes_by_name(self, names: Iterable[str]) -> None: ...

    def logout(self) -> bool: ...


class AppClassifier(Protocol):
    def identify(self, process_name: str, window_title: str) -> Optional[AppProfile]: ...


class AudioRefresh(Protocol):
    def refresh(self) -> None: ...


class NetworkMonitor(Protocol):
    def bytes_transferred(self, name_fragment: str) -> Optional[int]: ...


class VisualSink(Protocol):
    def set_visual_state(self, state) -> None: ...


class SpeechHistoryStore(Protocol):
    def record_spoken_line(self, record) -> None: ...

    def recent_keys_for_phase(self, phase: int, limit: int = 5) -> Set[str]: ...


# -----------------------------
# No-op defaults
# -----------------------------
class NullTelemetry:
    def sample(self) -> SystemMetrics:
        return SystemMetrics()


class NullSpeech:
    """Logs what would have been said. Sequential batches complete immediately."""

    def speak(self, text: str) -> None:
        log.info("Speak: %s", text)

    def speak_sequentially(self, lines, delay_ms, cancellable, on_complete) -> None:
        for text in lines:
            log.info("Speak (sequence): %s", text)
        if on_complete:
            on_complete()

    def cancel(self) -> None:
        pass


class NullOsActions:
    def terminate_processes_by_name(self, names) -> None:
        log.info("Would terminate: %s", ", ".join(names))

    def logout(self) -> bool:
        log.info("Would log out now.")
        return True


class NullAppClassifier:
    def identify(self, process_name, window_title) -> Optional[AppProfile]:
        return None


class NullAudioRefresh:
    def refresh(self) -> None:
        pass


class NullNetworkMonitor:
    def bytes_transferred(self, name_fragment) -> Optional[int]:
        return None


class NullVisualSink:
    def set_visual_state(self, state) -> None:
        pass
