"""Handlers for the external servers the bot depends on."""

from .server import ServerManager
from .services import (
    BaseServerHandler,
    RecognitionOutcome,
    RecognitionResult,
    SpeechRecognitionHandler,
)

__all__ = [
    "BaseServerHandler",
    "RecognitionOutcome",
    "RecognitionResult",
    "SpeechRecognitionHandler",
    "ServerManager",
]
