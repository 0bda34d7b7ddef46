import logging
import queue
import re
import threading
from typing import Callable, List, Optional

log = logging.getLogger(__name__)


# -----------------------------
# Voice I/O (optional)
# -----------------------------
class VoiceIO:
    """
    Text-to-speech on a single worker thread. Everything said goes through the
    worker's queue, so utterances never overlap. ``cancel`` drops whatever is
    queued and stops a running cancellable sequence mid-line.
    """

    def __init__(self, rate: int = 140, enabled: bool = True):
        self.rate = rate
        self.enabled = enabled
        self.tts = None
        self.queue: "queue.Queue" = queue.Queue()
        self.lock = threading.Lock()
        self.generation = 0
        self.cancel_event = threading.Event()
        self.stop_flag = threading.Event()
        self.active_sequence: Optional[threading.Event] = None
        self.worker = threading.Thread(target=self._worker_loop, daemon=True, name="voice-worker")
        self.worker.start()

    def _init_engine(self):
        self.tts = None
        if not self.enabled:
            return
        try:
            pyttsx3 = __import__('pyttsx3')
            self.tts = pyttsx3.init()
            self.tts.setProperty('rate', self.rate)
            # attempt to pick a female voice
            voice_id = None
            for v in self.tts.getProperty('voices'):
                name = (getattr(v, 'name', '') or '').lower()
                if 'female' in name or 'zira' in name:
                    voice_id = v.id
                    break
            if voice_id:
                self.tts.setProperty('voice', voice_id)
        except Exception:
            log.warning("pyttsx3 initialization failed, TTS will be disabled.")
            self.tts = None

    # --- SpeechSink ---
    def speak(self, text: str):
        self._enqueue("say", text)

    def speak_sequentially(self, lines: List[str], delay_ms: int, cancellable: bool,
                           on_complete: Optional[Callable[[], None]]):
        self._enqueue("sequence", (list(lines), delay_ms, cancellable, on_complete))

    def cancel(self):
        with self.lock:
            self.generation += 1
            old_event = self.cancel_event
            self.cancel_event = threading.Event()
            interrupt = self.active_sequence is old_event
        old_event.set()
        tts = self.tts
        if interrupt and tts is not None:
            # cut the line being spoken, not just the ones after it
            try:
                tts.stop()
            except Exception:
                log.warning("Could not interrupt the current utterance.", exc_info=True)
        log.debug("Speech cancelled.")

    # --- AudioRefresh ---
    def refresh(self):
        self._enqueue("refresh", None)

    def shutdown(self, timeout: float = 2.0):
        self.stop_flag.set()
        self.queue.put(None)
        self.worker.join(timeout)

    # -----------------------------
    # Worker
    # -----------------------------
    def _enqueue(self, kind: str, payload):
        with self.lock:
            self.queue.put((self.generation, self.cancel_event, kind, payload))

    def _worker_loop(self):
        self._init_engine()
        while not self.stop_flag.is_set():
            try:
                item = self.queue.get(timeout=0.5)
            except queue.Empty:
                continue
            if item is None:
                break
            generation, cancelled, kind, payload = item
            try:
                if kind == "refresh":
                    log.info("Refreshing audio output.")
                    self._init_engine()
                elif cancelled.is_set():
                    continue
                elif kind == "say":
                    self._say(payload)
                elif kind == "sequence":
                    try:
                        self._run_sequence(cancelled, *payload)
                    finally:
                        with self.lock:
                            self.active_sequence = None
            except Exception:
                log.exception("Voice worker failed on a %s request.", kind)
        log.info("Voice worker stopped.")

    def _run_sequence(self, cancelled: threading.Event, lines: List[str], delay_ms: int,
                      cancellable: bool, on_complete: Optional[Callable[[], None]]):
        if cancellable:
            with self.lock:
                self.active_sequence = cancelled
        for i, text in enumerate(lines):
            if cancellable and cancelled.is_set():
                return
            self._say(text)
            if i < len(lines) - 1 and cancelled.wait(delay_ms / 1000.0) and cancellable:
                return
        if cancellable and cancelled.is_set():
            return
        if on_complete:
            on_complete()

    def _say(self, text: str):
        clean = re.sub(r'\*.*?\*', '', text).strip()
        if not clean:
            return
        if not self.tts:
            log.info("Speak: %s", clean)
            return
        self.tts.say(clean)
        self.tts.runAndWait()
