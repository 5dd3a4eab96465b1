"""Script to launch the terminal chat client."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

# Ensure src/ is on sys.path (so imports work when run directly)
SRC_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from chat_client.config import load_config  # noqa: E402
from chat_client.console import ConsoleObserver, run_console  # noqa: E402
from chat_client.controller import create_controller, create_gate  # noqa: E402
from chat_client.speech import NullSink, Pyttsx3Sink  # noqa: E402

logger = logging.getLogger("chat_client.run")


def _make_sink(enabled: bool):
    if not enabled:
        return NullSink()
    try:
        return Pyttsx3Sink()
    except ImportError:
        logger.warning("pyttsx3 not installed; speech output disabled (pip install '.[voice]')")
    except (RuntimeError, OSError) as e:
        logger.warning("No speech engine available (%s); speech output disabled", e)
    return NullSink()


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with the assistant from the terminal.")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config (default: $CHAT_CLIENT_CONFIG or config/default.yaml)",
    )
    parser.add_argument(
        "--voice",
        action="store_true",
        help="Treat typed lines as speech transcripts gated by the wake word",
    )
    parser.add_argument(
        "--no-speech",
        action="store_true",
        help="Do not speak replies aloud",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=os.environ.get("LOG_LEVEL", "WARNING"),
        help="Logging level (default: WARNING)",
    )
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper())

    cfg = load_config(args.config)
    speech_on = not args.no_speech and bool(cfg.get("speech", {}).get("enabled", True))
    sink = _make_sink(speech_on)
    controller = create_controller(
        config=cfg,
        sink=sink,
        observer=ConsoleObserver(),
    )
    gate = create_gate(controller, cfg) if args.voice else None

    try:
        asyncio.run(run_console(controller, gate=gate))
    except KeyboardInterrupt:
        print("\nbye")
    finally:
        if isinstance(sink, Pyttsx3Sink):
            sink.close()


if __name__ == "__main__":
    main()
