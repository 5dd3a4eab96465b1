"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import sys
from pathlib import Path
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


class RecordingSink:
    """Speech sink double: records speak/cancel calls, 'plays' until canceled."""

    def __init__(self):
        self.events = []
        self.utterances = []
        self.speaking = False

    def speak(self, utterance):
        self.events.append(("speak", utterance.text))
        self.utterances.append(utterance)
        self.speaking = True

    def cancel(self):
        self.events.append(("cancel",))
        self.speaking = False

    @property
    def spoken(self):
        return [e[1] for e in self.events if e[0] == "speak"]


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for stored transcripts."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    monkeypatch.delenv("CHAT_CLIENT_CONFIG", raising=False)
    for var in list(os.environ):
        if var.startswith("CHAT_CLIENT__"):
            monkeypatch.delenv(var, raising=False)
    yield
