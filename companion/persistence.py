import json
import logging
import os
import tempfile
import threading
from collections import deque
from typing import Any, Dict, List, Optional, Set

from companion.dialogue import SpokenLineRecord

log = logging.getLogger(__name__)

MAX_HISTORY = 500


class SpeechHistory:
    """
    Best-effort record of spoken lines, used for the anti-repetition window.

    With a path the history is kept in a JSON file (atomic replace, .bak
    fallback); without one it lives in memory only. Failures are logged and
    never raised.
    """

    def __init__(self, path: Optional[str] = None, maxlen: int = MAX_HISTORY):
        self.path = path
        self.records: deque = deque(maxlen=maxlen)
        self.lock = threading.Lock()
        if path:
            for d in self.load():
                try:
                    self.records.append(SpokenLineRecord(
                        line_key=d.get('line_key'),
                        line_text=d.get('line_text', ''),
                        spoken_at_ms=int(d.get('spoken_at_ms', 0)),
                        phase=int(d.get('phase', 0)),
                    ))
                except (TypeError, ValueError, AttributeError):
                    log.warning("Skipping malformed speech history entry: %r", d)

    def record_spoken_line(self, record: SpokenLineRecord):
        try:
            with self.lock:
                # a key only counts once; the newest record wins
                if record.line_key is not None:
                    kept = [r for r in self.records if r.line_key != record.line_key]
                    self.records.clear()
                    self.records.extend(kept)
                self.records.append(record)
                snapshot = [r.__dict__ for r in self.records]
            if self.path:
                self.save(snapshot)
        except Exception:
            log.exception("Failed to record spoken line.")

    def recent_keys_for_phase(self, phase: int, limit: int = 5) -> Set[str]:
        try:
            with self.lock:
                matching = [r for r in self.records if r.phase == phase and r.line_key is not None]
            matching.sort(key=lambda r: r.spoken_at_ms, reverse=True)
            return {r.line_key for r in matching[:limit]}
        except Exception:
            log.exception("Failed to retrieve recent speech history for phase %d", phase)
            return set()

    # -----------------------------
    # File handling
    # -----------------------------
    def load(self) -> List[Dict[str, Any]]:
        bak_file = f"{self.path}.bak"

        def _load_from(file_path: str) -> Optional[List[Dict[str, Any]]]:
            if not os.path.exists(file_path):
                return None
            try:
                with open(file_path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                log.warning("Could not load speech history from %s: %s", file_path, e)
                return None
            if not isinstance(data, list):
                log.warning("Speech history in %s is not a list; ignoring it.", file_path)
                return None
            return data

        data = _load_from(self.path)
        if data is not None:
            return data

        data = _load_from(bak_file)
        if data is not None:
            log.info("Loaded speech history from backup. The next save will repair %s.", self.path)
            return data
        return []

    def save(self, data: List[Dict[str, Any]]):
        bak_file = f"{self.path}.bak"
        temp_dir = os.path.dirname(os.path.abspath(self.path))
        tmp_file_path = None

        try:
            with tempfile.NamedTemporaryFile('w', encoding='utf-8', dir=temp_dir, delete=False) as tmp_file:
                json.dump(data, tmp_file, indent=2)
                tmp_file_path = tmp_file.name

            if os.path.exists(self.path):
                os.replace(self.path, bak_file)
            os.replace(tmp_file_path, self.path)
        except (IOError, OSError) as e:
            log.error("Error saving speech history: %s. Restoring backup.", e)
            try:
                if os.path.exists(bak_file) and not os.path.exists(self.path):
                    os.replace(bak_file, self.path)
            except OSError as e_restore:
                log.error("Could not restore speech history backup: %s", e_restore)
        finally:
            if tmp_file_path and os.path.exists(tmp_file_path):
                os.remove(tmp_file_path)
