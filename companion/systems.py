import json
import logging
import os
import re
import subprocess
import sys
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

# Optional imports: degrade gracefully if missing
try:
    import psutil
except Exception:
    psutil = None

from companion.collaborators import AppProfile, SystemMetrics
from companion.config import MuteConfig

log = logging.getLogger(__name__)

IS_WINDOWS = sys.platform.startswith("win")


# -----------------------------
# Desktop probes
# -----------------------------
def _windows_idle_seconds() -> float:
    import ctypes

    class LASTINPUTINFO(ctypes.Structure):
        _fields_ = [("cbSize", ctypes.c_uint), ("dwTime", ctypes.c_uint)]

    info = LASTINPUTINFO()
    info.cbSize = ctypes.sizeof(LASTINPUTINFO)
    if not ctypes.windll.user32.GetLastInputInfo(ctypes.byref(info)):
        return 0.0
    millis = ctypes.windll.kernel32.GetTickCount() - info.dwTime
    return max(0, millis) / 1000.0


def _xprintidle_seconds() -> float:
    try:
        out = subprocess.run(["xprintidle"], capture_output=True, text=True, timeout=2, check=True)
        return int(out.stdout.strip()) / 1000.0
    except (OSError, subprocess.SubprocessError, ValueError):
        return 0.0


def _windows_foreground() -> Tuple[Optional[int], str, bool]:
    """(pid, title, fullscreen) of the foreground window."""
    import ctypes
    from ctypes import wintypes

    user32 = ctypes.windll.user32
    hwnd = user32.GetForegroundWindow()
    if not hwnd:
        return None, "", False

    length = user32.GetWindowTextLengthW(hwnd)
    buf = ctypes.create_unicode_buffer(length + 1)
    user32.GetWindowTextW(hwnd, buf, length + 1)

    pid = wintypes.DWORD()
    user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))

    rect = wintypes.RECT()
    user32.GetWindowRect(hwnd, ctypes.byref(rect))
    screen_w, screen_h = user32.GetSystemMetrics(0), user32.GetSystemMetrics(1)
    fullscreen = (rect.left <= 0 and rect.top <= 0
                  and rect.right >= screen_w and rect.bottom >= screen_h)
    return pid.value or None, buf.value, fullscreen


# -----------------------------
# System Telemetry
# -----------------------------
class SystemTelemetry:
    """
    Samples CPU, memory, idle time and the foreground window. Missing pieces
    (no psutil, no desktop session) read as zero/unknown instead of failing.
    """

    def __init__(self, mute: MuteConfig = None):
        self.mute = mute or MuteConfig()
        self.browser_re = re.compile(self.mute.browser_processes_regex) if self.mute.browser_processes_regex else None
        self.streaming_re = re.compile(self.mute.streaming_title_regex, re.IGNORECASE) \
            if self.mute.streaming_title_regex else None
        self.player_re = re.compile(self.mute.player_processes_regex) if self.mute.player_processes_regex else None
        self.hard_mute = {p.lower() for p in self.mute.hard_mute_procs}
        if psutil:
            psutil.cpu_percent(interval=None)  # prime the counter
        else:
            log.warning("psutil not available. CPU, memory and process awareness are disabled.")

    def sample(self) -> SystemMetrics:
        cpu = mem = 0.0
        processes: FrozenSet[str] = frozenset()
        if psutil:
            cpu = psutil.cpu_percent(interval=None)
            mem = psutil.virtual_memory().percent
            processes = self.running_processes()

        idle_minutes = self.idle_seconds() / 60.0
        pid, title, fullscreen = self.foreground()
        process_name = self.process_name(pid)

        is_browser = bool(self.browser_re and self.browser_re.fullmatch(process_name))
        is_streaming = bool(self.streaming_re and self.streaming_re.search(title))
        if is_browser and fullscreen:
            # fullscreen browser: treat as an unlisted streaming site
            is_streaming = True
        is_media = bool(self.player_re and self.player_re.fullmatch(process_name))
        is_hard_muted = bool(self.hard_mute & processes)

        if is_streaming or is_media or is_hard_muted:
            # watching something counts as being present
            idle_minutes = 0.0

        return SystemMetrics(
            cpu_load_percent=cpu,
            memory_usage_percent=mem,
            idle_minutes=idle_minutes,
            active_process_name=process_name,
            active_window_title=title,
            is_streaming=is_streaming,
            is_playing_media=is_media,
            is_in_fullscreen=fullscreen,
            is_browser_active=is_browser,
            is_hard_muted=is_hard_muted,
            running_processes=processes,
        )

    def running_processes(self) -> FrozenSet[str]:
        names = set()
        for p in psutil.process_iter(['name']):
            name = p.info.get('name')
            if name:
                names.add(name.lower())
        return frozenset(names)

    def idle_seconds(self) -> float:
        if IS_WINDOWS:
            return _windows_idle_seconds()
        return _xprintidle_seconds()

    def foreground(self) -> Tuple[Optional[int], str, bool]:
        if IS_WINDOWS:
            return _windows_foreground()
        return None, "", False

    def process_name(self, pid: Optional[int]) -> str:
        if not pid or not psutil:
            return "unknown"
        try:
            return psutil.Process(pid).name()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return "unknown"


# -----------------------------
# Process I/O (network heuristic)
# -----------------------------
class ProcessIoMonitor:
    """Total read+write bytes of every process whose name contains a fragment."""

    def bytes_transferred(self, name_fragment: str) -> Optional[int]:
        if not psutil:
            return None
        fragment = name_fragment.lower()
        total = 0
        found = False
        for p in psutil.process_iter(['name']):
            name = (p.info.get('name') or '').lower()
            if fragment not in name:
                continue
            try:
                io = p.io_counters()
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess, AttributeError):
                continue
            total += io.read_bytes + io.write_bytes
            found = True
        return total if found else None


# -----------------------------
# OS Actions
# -----------------------------
class SystemActions:
    def terminate_processes_by_name(self, names: Iterable[str]):
        if not psutil:
            log.warning("psutil not available. Cannot close %s.", ", ".join(names))
            return
        targets = {n.lower() for n in names}
        for p in psutil.process_iter(['name']):
            name = (p.info.get('name') or '').lower()
            if name not in targets:
                continue
            try:
                p.terminate()
                log.info("Terminated %s (pid %d).", name, p.pid)
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
                log.warning("Could not terminate %s: %s", name, e)

    def logout(self) -> bool:
        if IS_WINDOWS:
            cmd = ["shutdown", "-l"]
        else:
            session = os.environ.get("XDG_SESSION_ID")
            cmd = ["loginctl", "terminate-session", session] if session else ["loginctl", "terminate-user", str(os.getuid())]
        try:
            subprocess.run(cmd, check=True, timeout=30)
            return True
        except (OSError, subprocess.SubprocessError) as e:
            log.error("Logout command %s failed: %s", " ".join(cmd), e)
            return False


# -----------------------------
# App Profiles
# -----------------------------
class AppProfiler:
    """Known applications, matched by exact process name first, then by window title."""

    def __init__(self, profiles: Dict[str, AppProfile] = None):
        self.profiles: Dict[str, AppProfile] = {k.lower(): v for k, v in (profiles or {}).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Dict]) -> "AppProfiler":
        profiles = {}
        for process_name, values in data.items():
            name = values.get("name", process_name)
            regex = values.get("window_title_regex")
            short_name = name.split(":", 1)[1].strip() if ":" in name else None
            profiles[process_name.lower()] = AppProfile(
                process_name=process_name,
                display_name=name,
                category=values.get("category", "Generic"),
                short_name=short_name or None,
                window_title_regex=re.compile(regex) if regex and regex.strip() else None,
                is_launcher=bool(values.get("is_launcher", False)),
            )
        return cls(profiles)

    @classmethod
    def load(cls, path: str) -> "AppProfiler":
        if not os.path.exists(path):
            log.warning("%s not found. Application awareness will be disabled.", path)
            return cls()
        try:
            with open(path, 'r', encoding='utf-8') as f:
                profiler = cls.from_dict(json.load(f))
        except (json.JSONDecodeError, IOError, AttributeError, re.error) as e:
            log.error("Failed to load application profiles from %s: %s", path, e)
            return cls()
        log.info("Loaded %d application profiles.", len(profiler.profiles))
        return profiler

    def get_profile(self, process_name: Optional[str]) -> Optional[AppProfile]:
        if not process_name:
            return None
        return self.profiles.get(process_name.lower())

    def identify(self, process_name: str, window_title: str) -> Optional[AppProfile]:
        if process_name is None:
            return None
        profile = self.get_profile(process_name)
        if profile is not None:
            return profile
        if window_title and window_title.strip():
            for p in self.profiles.values():
                if p.window_title_regex is not None and p.window_title_regex.search(window_title):
                    log.debug("Identified '%s' as '%s' via window title.", process_name, p.display_name)
                    return p
        return None
