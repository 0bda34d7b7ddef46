from __future__ import annotations

import random
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest


def _find_repo_root(start: Path) -> Path:
    cur = start.resolve()
    for candidate in [cur, *cur.parents]:
        if (candidate / "companion").is_dir() and (candidate / "tests").is_dir():
            return candidate
    return cur


repo_root_str = str(_find_repo_root(Path(__file__).parent))
if repo_root_str not in sys.path:
    sys.path.insert(0, repo_root_str)

from companion.collaborators import AppProfile, SystemMetrics  # noqa: E402
from companion.config import EngineConfig  # noqa: E402
from companion.state import CompanionState, SessionMemory  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FixedRandom(random.Random):
    """A Random whose randrange always returns the same value (clamped to the range)."""

    def __init__(self, value: int) -> None:
        super().__init__(0)
        self.value = value

    def randrange(self, start, stop=None, step=1):  # type: ignore[override]
        low, high = (0, start) if stop is None else (start, stop)
        return max(low, min(self.value, high - 1))


class FakeSpeech:
    def __init__(self, auto_complete: bool = False) -> None:
        self.spoken: List[str] = []
        self.sequences: List[dict] = []
        self.cancel_count = 0
        self.auto_complete = auto_complete

    def speak(self, text: str) -> None:
        self.spoken.append(text)

    def speak_sequentially(self, lines, delay_ms, cancellable, on_complete) -> None:
        self.sequences.append({"lines": list(lines), "delay_ms": delay_ms,
                               "cancellable": cancellable, "on_complete": on_complete})
        if self.auto_complete and on_complete:
            on_complete()

    def complete_last_sequence(self) -> None:
        callback = self.sequences[-1]["on_complete"]
        if callback:
            callback()

    def cancel(self) -> None:
        self.cancel_count += 1


class FakeTelemetry:
    def __init__(self, metrics: Optional[SystemMetrics] = None) -> None:
        self.metrics = metrics or SystemMetrics()
        self.error: Optional[Exception] = None

    def sample(self) -> SystemMetrics:
        if self.error is not None:
            raise self.error
        return self.metrics


class FakeOsActions:
    def __init__(self, logout_result: bool = True) -> None:
        self.terminated: List[str] = []
        self.logout_calls = 0
        self.logout_result = logout_result

    def terminate_processes_by_name(self, names) -> None:
        self.terminated.extend(names)

    def logout(self) -> bool:
        self.logout_calls += 1
        return self.logout_result


class FakeNetworkMonitor:
    """Each call reports ``step`` more bytes than the last for that fragment."""

    def __init__(self, step: int = 0) -> None:
        self.step = step
        self.counters: Dict[str, int] = {}
        self.calls = 0

    def bytes_transferred(self, name_fragment: str) -> Optional[int]:
        self.calls += 1
        self.counters[name_fragment] = self.counters.get(name_fragment, 0) + self.step
        return self.counters[name_fragment]


class FakeClassifier:
    def __init__(self, profiles: Optional[Dict[str, AppProfile]] = None) -> None:
        self.profiles = profiles or {}

    def identify(self, process_name, window_title) -> Optional[AppProfile]:
        return self.profiles.get((process_name or "").lower())


class FakeAudioRefresh:
    def __init__(self) -> None:
        self.count = 0

    def refresh(self) -> None:
        self.count += 1


class EmotionRecorder:
    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def __call__(self, name, delta, cause=None) -> None:
        self.calls.append((name, delta, cause))

    def names(self) -> List[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def state(clock: FakeClock) -> CompanionState:
    return CompanionState(clock)


@pytest.fixture
def memory(clock: FakeClock) -> SessionMemory:
    return SessionMemory(clock)


@pytest.fixture
def elden_ring() -> AppProfile:
    return AppProfile(process_name="eldenring.exe", display_name="Elden Ring", category="Game")
