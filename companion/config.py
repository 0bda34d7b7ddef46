import json
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, List, Tuple

# -----------------------------
# Config & Constants
# -----------------------------
DATA_FILE = "companion_speech_history.json"
LINES_FILE = "companion_lines.json"
PROFILES_FILE = "app_profiles.json"
CRASH_LOG_FILE = "behavior_crash.log"

CHECK_INTERVAL_MS = 1000
RETURN_DEBOUNCE_TICKS = 3
FIRST_GREETING_DELAY_SEC = 5
LOGIN_GREETING_DELAY_SEC = 120
MIN_GLOBAL_GAP_SEC = 5
GAME_GRACE_PERIOD_SEC = 10
HIGH_CPU_THRESHOLD = 90
CPU_ALERT_COOLDOWN_SEC = 60
RECENT_LINES_PER_PHASE = 5

# idle minutes at which phases 1..4 begin
PHASE_THRESHOLDS_MIN = (5, 10, 20, 27)

# (min, max) seconds between autonomous lines for phases 1-3; phases 0 and 4 use MIN_GLOBAL_GAP_SEC
PHASE_GAPS_SEC = {
    1: (240, 360),
    2: (180, 300),
    3: (120, 240),
}

# 1-in-N chance of mixing the rare pool in
RARE_CHANCE = {1: 4, 2: 7, 3: 20}
PHASE3_GAME_RARE_CHANCE = 10

BROWSER_PROCESSES_REGEX = r"(?i)chrome\.exe|msedge\.exe|firefox\.exe"
STREAMING_TITLE_REGEX = r"(?i)YouTube|Netflix|Twitch"
PLAYER_PROCESSES_REGEX = r"(?i)vlc\.exe|mpv\.exe"
HARD_MUTE_PROCS: List[str] = []

GAME_AWARENESS_EXCLUSIONS = {"steamwebhelper", "copilot", "steam"}

# Logout sequence
MONOLOGUE_CHUNK_DELAY_MS = 3000
UPDATE_CLIENT_FRAGMENTS = ["steam", "epic"]
NETWORK_BUSY_THRESHOLD_BYTES = 100_000
NETWORK_SAMPLE_WINDOW_SEC = 1.0
NETWORK_RETRY_INTERVAL_SEC = 60.0
LOGOUT_WARNING_DELAY_SEC = 30.0
BROWSER_PROCESSES = ["chrome.exe", "firefox.exe", "msedge.exe", "opera.exe", "brave.exe"]


class ConfigError(ValueError):
    """Raised at startup when the configuration cannot be used."""


def _require_number(name: str, value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{name} must be a number, got {value!r}")


@dataclass
class PhaseThresholds:
    phase1: float = PHASE_THRESHOLDS_MIN[0]
    phase2: float = PHASE_THRESHOLDS_MIN[1]
    phase3: float = PHASE_THRESHOLDS_MIN[2]
    phase4: float = PHASE_THRESHOLDS_MIN[3]

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.phase1, self.phase2, self.phase3, self.phase4)

    def validate(self):
        values = self.as_tuple()
        for value in values:
            _require_number("Idle threshold", value)
        if any(v < 0 for v in values):
            raise ConfigError(f"Idle thresholds must be non-negative, got {values}")
        if not all(a < b for a, b in zip(values, values[1:])):
            raise ConfigError(f"Idle thresholds must be strictly ascending, got {values}")


@dataclass
class MuteConfig:
    browser_processes_regex: str = BROWSER_PROCESSES_REGEX
    streaming_title_regex: str = STREAMING_TITLE_REGEX
    player_processes_regex: str = PLAYER_PROCESSES_REGEX
    hard_mute_procs: List[str] = field(default_factory=lambda: list(HARD_MUTE_PROCS))


@dataclass
class LogoutConfig:
    chunk_delay_ms: int = MONOLOGUE_CHUNK_DELAY_MS
    update_client_fragments: List[str] = field(default_factory=lambda: list(UPDATE_CLIENT_FRAGMENTS))
    network_busy_threshold_bytes: int = NETWORK_BUSY_THRESHOLD_BYTES
    network_sample_window_sec: float = NETWORK_SAMPLE_WINDOW_SEC
    network_retry_interval_sec: float = NETWORK_RETRY_INTERVAL_SEC
    warning_delay_sec: float = LOGOUT_WARNING_DELAY_SEC
    browser_processes: List[str] = field(default_factory=lambda: list(BROWSER_PROCESSES))
    dry_run: bool = False


LOGOUT_NUMERIC_FIELDS = ("chunk_delay_ms", "network_busy_threshold_bytes", "network_sample_window_sec",
                         "network_retry_interval_sec", "warning_delay_sec")
NUMERIC_FIELDS = ("phase3_game_rare_chance", "check_interval_ms", "return_debounce_ticks",
                  "first_greeting_delay_s", "login_greeting_delay_s", "min_global_gap_s",
                  "game_grace_period_s", "high_cpu_threshold", "cpu_alert_cooldown_s", "recent_lines_per_phase")


@dataclass
class EngineConfig:
    thresholds: PhaseThresholds = field(default_factory=PhaseThresholds)
    gaps: Dict[int, Tuple[int, int]] = field(default_factory=lambda: dict(PHASE_GAPS_SEC))
    rare_chance: Dict[int, int] = field(default_factory=lambda: dict(RARE_CHANCE))
    phase3_game_rare_chance: int = PHASE3_GAME_RARE_CHANCE
    mute: MuteConfig = field(default_factory=MuteConfig)
    logout: LogoutConfig = field(default_factory=LogoutConfig)
    check_interval_ms: int = CHECK_INTERVAL_MS
    return_debounce_ticks: int = RETURN_DEBOUNCE_TICKS
    first_greeting_delay_s: float = FIRST_GREETING_DELAY_SEC
    login_greeting_delay_s: float = LOGIN_GREETING_DELAY_SEC
    min_global_gap_s: float = MIN_GLOBAL_GAP_SEC
    game_grace_period_s: float = GAME_GRACE_PERIOD_SEC
    high_cpu_threshold: float = HIGH_CPU_THRESHOLD
    cpu_alert_cooldown_s: float = CPU_ALERT_COOLDOWN_SEC
    recent_lines_per_phase: int = RECENT_LINES_PER_PHASE
    verbose_status: bool = False
    data_file: str = DATA_FILE
    lines_file: str = LINES_FILE
    profiles_file: str = PROFILES_FILE

    def gap_for_phase(self, phase: int) -> Tuple[float, float]:
        if phase in (1, 2, 3) and phase in self.gaps:
            return self.gaps[phase]
        return (self.min_global_gap_s, self.min_global_gap_s)

    def validate(self) -> "EngineConfig":
        self.thresholds.validate()
        for name in NUMERIC_FIELDS:
            _require_number(name, getattr(self, name))
        for name in LOGOUT_NUMERIC_FIELDS:
            _require_number(f"logout.{name}", getattr(self.logout, name))
        for phase, (lo, hi) in self.gaps.items():
            if phase not in (1, 2, 3):
                raise ConfigError(f"Gaps apply to phases 1-3 only, got phase {phase}")
            _require_number(f"Gap for phase {phase}", lo)
            _require_number(f"Gap for phase {phase}", hi)
            if lo < 0 or lo > hi:
                raise ConfigError(f"Gap range for phase {phase} is invalid: ({lo}, {hi})")
        for phase, chance in self.rare_chance.items():
            _require_number(f"Rare chance for phase {phase}", chance)
            if chance < 1:
                raise ConfigError(f"Rare chance for phase {phase} must be >= 1, got {chance}")
        if self.phase3_game_rare_chance < 1:
            raise ConfigError("phase3_game_rare_chance must be >= 1")
        if self.return_debounce_ticks < 1:
            raise ConfigError("return_debounce_ticks must be >= 1")
        if self.check_interval_ms <= 0:
            raise ConfigError("check_interval_ms must be positive")
        if self.logout.network_retry_interval_sec <= 0:
            raise ConfigError("logout.network_retry_interval_sec must be positive")
        return self


# -----------------------------
# Loading
# -----------------------------
def _merge_dataclass(instance, payload: Dict[str, Any], section: str):
    if not isinstance(payload, dict):
        raise ConfigError(f"Config section '{section}' must be an object")
    known = {f.name for f in fields(instance)}
    unknown = set(payload) - known
    if unknown:
        raise ConfigError(f"Unknown keys in '{section}': {sorted(unknown)}")
    return replace(instance, **payload)


def _phase_keyed(payload: Dict[str, Any], section: str) -> Dict[int, Any]:
    if not isinstance(payload, dict):
        raise ConfigError(f"Config section '{section}' must be an object")
    try:
        return {int(k): v for k, v in payload.items()}
    except ValueError as e:
        raise ConfigError(f"Config section '{section}' must be keyed by phase number") from e


def config_from_dict(payload: Dict[str, Any]) -> EngineConfig:
    cfg = EngineConfig()
    payload = dict(payload)

    thresholds = payload.pop("thresholds", None)
    if thresholds is not None:
        if isinstance(thresholds, list):
            if len(thresholds) != 4:
                raise ConfigError(f"Expected four idle thresholds, got {len(thresholds)}")
            thresholds = dict(zip(("phase1", "phase2", "phase3", "phase4"), thresholds))
        cfg.thresholds = _merge_dataclass(cfg.thresholds, thresholds, "thresholds")

    gaps = payload.pop("gaps", None)
    if gaps is not None:
        for phase, pair in _phase_keyed(gaps, "gaps").items():
            if not isinstance(pair, (list, tuple)) or len(pair) != 2:
                raise ConfigError(f"Gap for phase {phase} must be a [min, max] pair")
            cfg.gaps[phase] = (pair[0], pair[1])

    rare = payload.pop("rare_chance", None)
    if rare is not None:
        cfg.rare_chance.update(_phase_keyed(rare, "rare_chance"))

    mute = payload.pop("mute", None)
    if mute is not None:
        cfg.mute = _merge_dataclass(cfg.mute, mute, "mute")

    logout = payload.pop("logout", None)
    if logout is not None:
        cfg.logout = _merge_dataclass(cfg.logout, logout, "logout")

    return _merge_dataclass(cfg, payload, "root").validate()


def load_config(path: str = None) -> EngineConfig:
    """Reads a JSON config file over the defaults. A missing file means defaults."""
    if not path or not os.path.exists(path):
        return EngineConfig().validate()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            payload = json.load(f)
    except (json.JSONDecodeError, IOError) as e:
        raise ConfigError(f"Could not read config from {path}: {e}") from e
    if not isinstance(payload, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return config_from_dict(payload)
