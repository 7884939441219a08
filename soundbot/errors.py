# -------------------------------------------------------------- #
# Error Types
# -------------------------------------------------------------- #


class SoundbotError(Exception):
    """Base class for every error raised by the bot's services."""

    user_message = "There was an error executing that command."


class TransportError(SoundbotError):
    """Voice connection could not be established or was lost."""

    user_message = "There was an error connecting to the voice channel."


class ProcessError(SoundbotError):
    """The transcoder process failed to spawn or died while running."""


class FileAccessError(SoundbotError):
    """A recording file is missing or unreadable."""


class RecognitionError(SoundbotError):
    """The speech recognition service returned an error."""


class StateConflictError(SoundbotError):
    """A command is not allowed in the session's current state."""

    def __init__(self, user_message: str):
        super().__init__(user_message)
        self.user_message = user_message
