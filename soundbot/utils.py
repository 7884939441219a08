import os
import re
import time
from datetime import datetime
from zoneinfo import ZoneInfo

# -------------------------------------------------------------- #
# Constants
# -------------------------------------------------------------- #

RECORDING_FILE_PREFIX = "recording"
RECORDING_FILE_EXTENSION = ".wav"

_UNSAFE_FILENAME_CHARS = re.compile(r'[\\/*?:"<>|]')


# -------------------------------------------------------------- #
# Util Functions
# -------------------------------------------------------------- #


def get_current_timestamp_est() -> datetime:
    """Get the current EST timestamp."""
    return datetime.now(ZoneInfo("America/New_York"))


def get_epoch_ms() -> int:
    """Milliseconds since the unix epoch."""
    return int(time.time() * 1000)


def sanitize_filename(name: str) -> str:
    """Replace characters that are not allowed in file names with underscores.

    Args:
        name: Raw name, e.g. a Discord display name

    Returns:
        Name safe to embed in a path component
    """
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", name).strip()
    return cleaned or "unknown"


def build_recording_path(
    directory: str, display_name: str, participant_id: int, epoch_ms: int | None = None
) -> str:
    """
    Build the deterministic output path for one participant recording.

    Args:
        directory: Folder the recording will be written to
        display_name: Participant display name (sanitized here)
        participant_id: Discord user id, distinguishes equal display names
        epoch_ms: Timestamp used in the name (defaults to now)

    Returns:
        Path like ``<directory>/recording_<name>_<participant id>_<epoch ms>.wav``
    """
    if epoch_ms is None:
        epoch_ms = get_epoch_ms()
    filename = (
        f"{RECORDING_FILE_PREFIX}_{sanitize_filename(display_name)}_{participant_id}_{epoch_ms}"
        f"{RECORDING_FILE_EXTENSION}"
    )
    return os.path.join(directory, filename)
