import argparse
import faulthandler
import logging
import signal
import time

from companion.config import CRASH_LOG_FILE, ConfigError, load_config
from companion.dialogue import LinePool
from companion.engine import CompanionEngine, TickDriver
from companion.persistence import SpeechHistory
from companion.systems import AppProfiler, ProcessIoMonitor, SystemActions, SystemTelemetry
from companion.voice import VoiceIO

log = logging.getLogger("companion")

# Register a signal handler to dump a traceback on SIGUSR1
if hasattr(signal, "SIGUSR1"):
    faulthandler.register(signal.SIGUSR1)


def configure_logging(verbose: bool = False, crash_log: str = CRASH_LOG_FILE):
    """Console output for everything, plus a crash file that only collects errors."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s", "%H:%M:%S"))
    root.addHandler(console)

    crash = logging.FileHandler(crash_log, encoding="utf-8", delay=True)
    crash.setLevel(logging.ERROR)
    crash.setFormatter(logging.Formatter(
        "--- ERROR LOG: %(asctime)s in %(name)s ---\n%(message)s", "%Y-%m-%d %H:%M:%S"))
    root.addHandler(crash)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Companion - an autonomous idle-aware desktop companion")
    parser.add_argument("--config", type=str, help="Path to a JSON config file.")
    parser.add_argument("--lines", type=str, help="Path to the dialogue line file (overrides the config).")
    parser.add_argument("--profiles", type=str, help="Path to the application profile file (overrides the config).")
    parser.add_argument("--no-voice", action="store_true", help="Disable text-to-speech; lines are only logged.")
    parser.add_argument("--verbose", action="store_true", help="Debug logging and status lines.")
    parser.add_argument("--dry-run", action="store_true", help="Never close programs or log the user out.")
    parser.add_argument("--warm-boot", action="store_true", help="Greet as if resuming an existing session.")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        log.error("Invalid configuration: %s", e)
        return 2
    if args.lines:
        config.lines_file = args.lines
    if args.profiles:
        config.profiles_file = args.profiles
    if args.verbose:
        config.verbose_status = True
    if args.dry_run:
        config.logout.dry_run = True

    voice = VoiceIO(rate=140, enabled=not args.no_voice)
    engine = CompanionEngine(
        config=config,
        lines=LinePool.load(config.lines_file),
        telemetry=SystemTelemetry(config.mute),
        speech=voice,
        store=SpeechHistory(config.data_file),
        os_actions=SystemActions(),
        classifier=AppProfiler.load(config.profiles_file),
        audio_refresh=voice,
        network_monitor=ProcessIoMonitor(),
    )
    engine.initialize(warm_boot=args.warm_boot)

    driver = TickDriver(engine)
    driver.start()
    log.info("Companion is running. Press Ctrl+C to exit.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        log.info("Shutdown signal received.")
    finally:
        driver.stop()
        engine.shutdown()
        voice.shutdown()
    return 0
