"""Streaming conversational session client.

Typical usage
-------------
from chat_client import create_controller
controller = create_controller()
await controller.submit("hello")

or, from the provided launcher:

python scripts/run_chat.py --config config/default.yaml --voice
"""

from __future__ import annotations

from .controller import ConversationController, SessionObserver, create_controller, create_gate

__all__ = [
    "ConversationController",
    "SessionObserver",
    "create_controller",
    "create_gate",
    "__version__",
    "get_version",
]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
