"""
Side effects requested by the phase and game-session logic.

Transitions return these as plain data; CompanionEngine executes them.
"""
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SpeakPhaseLine:
    """Pick and speak an autonomous line for the given phase."""
    phase: int


@dataclass(frozen=True)
class SpeakFromPool:
    """Speak one line from a pool prefix, optionally filling {app_name}."""
    prefix: str
    app_name: Optional[str] = None
    schedule_after: bool = False


@dataclass(frozen=True)
class TriggerEmotion:
    name: str
    delta: float
    cause: Optional[str] = None


@dataclass(frozen=True)
class SpecialEvent:
    name: str


@dataclass(frozen=True)
class StartMonologue:
    pass


@dataclass(frozen=True)
class CancelMonologue:
    reason: str = "user returned"


@dataclass(frozen=True)
class CancelSpeech:
    pass


@dataclass(frozen=True)
class RefreshAudio:
    pass
