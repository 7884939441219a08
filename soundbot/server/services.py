from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

# -------------------------------------------------------------- #
# Base Server Handler
# -------------------------------------------------------------- #


class BaseServerHandler(ABC):
    """Abstract base class for all server handlers."""

    def __init__(self, name: str):
        self.name = name
        self._connected = False

    # -------------------------------------------------------------- #
    # Handler Methods
    # -------------------------------------------------------------- #

    async def on_startup(self) -> None:
        """Actions to perform on server startup."""
        pass

    async def on_close(self) -> None:
        """Actions to perform on server close."""
        pass

    # -------------------------------------------------------------- #
    # Abstract Methods
    # -------------------------------------------------------------- #

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to the server."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to the server."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the server is healthy and responding."""
        pass

    @property
    def is_connected(self) -> bool:
        """Check if currently connected to the server."""
        return self._connected


# -------------------------------------------------------------- #
# Speech Recognition Structures
# -------------------------------------------------------------- #


class RecognitionOutcome(Enum):
    RECOGNIZED = "recognized"
    NO_MATCH = "no_match"
    QUOTA_EXCEEDED = "quota_exceeded"
    ERROR = "error"


@dataclass
class RecognitionResult:
    """Result of a single recognition request."""

    outcome: RecognitionOutcome
    text: str | None = None
    detail: str | None = None

    @classmethod
    def recognized(cls, text: str) -> "RecognitionResult":
        return cls(RecognitionOutcome.RECOGNIZED, text=text)

    @classmethod
    def no_match(cls, detail: str | None = None) -> "RecognitionResult":
        return cls(RecognitionOutcome.NO_MATCH, detail=detail)

    @classmethod
    def quota_exceeded(cls, detail: str | None = None) -> "RecognitionResult":
        return cls(RecognitionOutcome.QUOTA_EXCEEDED, detail=detail)

    @classmethod
    def error(cls, detail: str) -> "RecognitionResult":
        return cls(RecognitionOutcome.ERROR, detail=detail)


class SpeechRecognitionHandler(BaseServerHandler):
    """Speech recognition server handler."""

    def __init__(self, name: str, endpoint: str, language: str = "en-US"):
        super().__init__(name)
        self.endpoint = endpoint
        self.language = language

    # -------------------------------------------------------------- #
    # Methods
    # -------------------------------------------------------------- #

    @abstractmethod
    async def recognize_once(self, audio_bytes: bytes) -> RecognitionResult:
        """
        Recognize a single utterance.

        Args:
            audio_bytes: Complete WAV file contents

        Returns:
            RecognitionResult describing the outcome. Implementations report
            service errors through the result instead of raising.
        """
        pass
