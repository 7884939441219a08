import os
import platform
from dataclasses import dataclass, field

from dotenv import load_dotenv

# prefer a project-local .env.local file, then fallback to the process environment
load_dotenv(dotenv_path=".env.local")

# -------------------------------------------------------------- #
# Settings
# -------------------------------------------------------------- #


def _default_ffmpeg_path() -> str:
    """Pick the FFmpeg binary based on platform specific environment variables."""
    if platform.system().lower().startswith("win") or os.name == "nt":
        ffmpeg_env = os.getenv("WINDOWS_FFMPEG_PATH")
    else:
        ffmpeg_env = os.getenv("MAC_FFMPEG_PATH")
    return ffmpeg_env or "ffmpeg"


def _parse_guild_ids(raw: str | None) -> list[int]:
    if not raw:
        return []
    return [int(part) for part in raw.split(",") if part.strip()]


@dataclass
class Settings:
    """Runtime configuration read from `.env.local` / the environment."""

    discord_token: str | None = None
    speech_key: str | None = None
    speech_region: str | None = None
    speech_language: str = "en-US"
    ffmpeg_path: str = "ffmpeg"
    audio_files_path: str = os.path.join("assets", "audio_files")
    recording_storage_path: str = os.path.join("assets", "data", "recordings")
    soundboard_config_path: str = os.path.join("assets", "soundboard.json")
    log_dir: str = "logs"
    debug_guild_ids: list[int] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        defaults = cls()
        return cls(
            discord_token=os.getenv("DISCORD_API_TOKEN"),
            speech_key=os.getenv("SPEECH_KEY"),
            speech_region=os.getenv("SPEECH_REGION"),
            speech_language=os.getenv("SPEECH_LANGUAGE", defaults.speech_language),
            ffmpeg_path=_default_ffmpeg_path(),
            audio_files_path=os.getenv("AUDIO_FILES_PATH", defaults.audio_files_path),
            recording_storage_path=os.getenv(
                "RECORDING_STORAGE_PATH", defaults.recording_storage_path
            ),
            soundboard_config_path=os.getenv(
                "SOUNDBOARD_CONFIG_PATH", defaults.soundboard_config_path
            ),
            log_dir=os.getenv("LOG_DIR", defaults.log_dir),
            debug_guild_ids=_parse_guild_ids(os.getenv("DEBUG_GUILD_IDS")),
        )
