from __future__ import annotations

import asyncio
import contextlib
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from soundbot.context import Context
    from soundbot.server.services import SpeechRecognitionHandler


# -------------------------------------------------------------- #
# Services Manager Class
# -------------------------------------------------------------- #


class ServicesManager:
    """Manager for handling multiple service instances."""

    def __init__(
        self,
        context: Context,
        logging_service: BaseAsyncLoggingService,
        file_service_manager: BaseFileServiceManager,
        ffmpeg_service_manager: BaseFFmpegServiceManager,
        recognition_gate: BaseRecognitionGateServiceManager,
        soundboard_service: BaseSoundboardServiceManager,
        media_queue_service: BaseMediaQueueServiceManager,
        voice_session_manager: BaseVoiceSessionServiceManager,
    ):
        self.context = context
        self.server = context.server_manager

        self.logging_service = logging_service

        # add service managers as attributes
        self.file_service_manager = file_service_manager
        self.ffmpeg_service_manager = ffmpeg_service_manager

        # Shared recognition gate (one per process)
        self.recognition_gate = recognition_gate

        # Reaction + playback collaborators
        self.soundboard_service = soundboard_service
        self.media_queue_service = media_queue_service

        # Per-guild voice sessions
        self.voice_session_manager = voice_session_manager

    async def initialize_all(self) -> None:
        """Initialize all service managers."""

        # Logging
        await self.logging_service.on_start(self)

        # Service managers, leaves first
        await self.file_service_manager.on_start(self)
        await self.ffmpeg_service_manager.on_start(self)
        await self.recognition_gate.on_start(self)
        await self.soundboard_service.on_start(self)
        await self.media_queue_service.on_start(self)

        # Voice sessions depend on everything above
        await self.voice_session_manager.on_start(self)

    async def shutdown_all(self, timeout: float = 30.0) -> None:
        """
        Gracefully shutdown all service managers.

        Phases:
        1. Mark the context as shutting down so no new commands start
        2. Leave every voice session (stops recording and playback)
        3. Let an in-flight recognition finish
        4. Stop playback queues and FFmpeg
        5. Disconnect external servers
        6. Flush logs

        Args:
            timeout: Maximum time in seconds to wait for services to shutdown
        """
        await self.logging_service.info("=" * 60)
        await self.logging_service.info("Starting graceful shutdown of all services...")

        if self.context:
            self.context.mark_shutdown_started()
            await self.logging_service.info("✓ Shutdown flag set - no new commands will start")

        try:
            await self.logging_service.info("Phase 1: Leaving all voice sessions...")
            await asyncio.wait_for(self.voice_session_manager.on_close(), timeout=timeout * 0.4)
            await self.logging_service.info("✓ All voice sessions closed")

            await self.logging_service.info("Phase 2: Waiting for recognition to finish...")
            await asyncio.wait_for(self.recognition_gate.on_close(), timeout=timeout * 0.3)
            await self.logging_service.info("✓ Recognition gate idle")

            await self.logging_service.info("Phase 3: Stopping playback and FFmpeg...")
            await asyncio.wait_for(self.media_queue_service.on_close(), timeout=timeout * 0.1)
            await self.soundboard_service.on_close()
            await asyncio.wait_for(self.ffmpeg_service_manager.on_close(), timeout=timeout * 0.1)
            await self.file_service_manager.on_close()
            await self.logging_service.info("✓ Playback and FFmpeg stopped")

            await self.logging_service.info("Phase 4: Disconnecting from all servers...")
            if self.context and self.context.server_manager:
                await self.context.server_manager.disconnect_all()
                await self.logging_service.info("✓ All servers disconnected")

            await self.logging_service.info("✓ Graceful shutdown completed successfully")
            await self.logging_service.info("=" * 60)

        except asyncio.TimeoutError:
            await self.logging_service.error(
                f"⚠️  Shutdown timeout exceeded ({timeout}s) - forcing shutdown"
            )
        except Exception as e:
            await self.logging_service.error(f"⚠️  Error during shutdown: {e}")

        # Always flush and close logging, even if there were errors
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self.logging_service.on_close(), timeout=5.0)


# -------------------------------------------------------------- #
# Base Service Manager Class
# -------------------------------------------------------------- #


class Manager(ABC):
    """Base class for all manager services."""

    def __init__(self, context: Context):
        self.context = context
        self.server = context.server_manager
        self.services: ServicesManager | None = None

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services: ServicesManager) -> None:
        """Actions to perform on manager start."""
        self.services = services

    async def on_close(self) -> None:
        """Actions to perform on manager close."""
        pass


# -------------------------------------------------------------- #
# Specialized Manager Classes
# -------------------------------------------------------------- #


class BaseAsyncLoggingService(Manager):
    """Specialized manager for asynchronous logging services."""

    @abstractmethod
    async def log(self, message: str, level: str = "INFO") -> None:
        pass

    @abstractmethod
    async def debug(self, message: str) -> None:
        pass

    @abstractmethod
    async def info(self, message: str) -> None:
        pass

    @abstractmethod
    async def warning(self, message: str) -> None:
        pass

    @abstractmethod
    async def error(self, message: str) -> None:
        pass

    @abstractmethod
    async def critical(self, message: str) -> None:
        pass


class BaseFileServiceManager(Manager):
    """Specialized manager for recording file storage."""

    @abstractmethod
    def get_storage_path(self) -> str:
        """Get the storage path recordings are written to."""
        pass

    @abstractmethod
    async def ensure_parent_dir(self, filepath: str) -> None:
        """Ensure the parent directory of the given filepath exists."""
        pass

    @abstractmethod
    async def file_exists(self, filepath: str) -> bool:
        """Check if a file exists."""
        pass

    @abstractmethod
    async def wait_for_file(self, filepath: str, timeout: float) -> bool:
        """Wait until a file exists, up to timeout seconds."""
        pass

    @abstractmethod
    async def read_file(self, filepath: str) -> bytes:
        """Read a file's contents."""
        pass

    @abstractmethod
    async def delete_file(self, filepath: str) -> bool:
        """Delete a file; returns False if it was already gone."""
        pass


class BaseFFmpegServiceManager(Manager):
    """Specialized manager for FFmpeg services."""

    @abstractmethod
    def get_ffmpeg_path(self) -> str:
        """Get the FFmpeg executable path."""
        pass

    @abstractmethod
    def create_transcoder(self, output_path: str, name: str = "transcoder") -> Any:
        """Create a PCM to WAV transcoder process writing to output_path."""
        pass


class BaseRecognitionGateServiceManager(Manager):
    """Specialized manager for the single-flight recognition gate."""

    @property
    @abstractmethod
    def speech_client(self) -> SpeechRecognitionHandler:
        pass

    @property
    @abstractmethod
    def is_busy(self) -> bool:
        pass

    @abstractmethod
    async def submit(self, file_path: str, on_recognized) -> bool:
        """Submit a finished recording; returns False if it was dropped."""
        pass


class BaseSoundboardServiceManager(Manager):
    """Specialized manager for keyword to clip lookups."""

    @abstractmethod
    def match(self, text: str) -> str | None:
        """Return the clip path for an utterance, or None."""
        pass

    @abstractmethod
    def get_join_cue(self) -> str | None:
        pass

    @abstractmethod
    def get_leave_cue(self) -> str | None:
        pass


class BaseMediaQueueServiceManager(Manager):
    """Specialized manager for music playback queues."""

    @abstractmethod
    async def enqueue(self, guild_id: int, connection, query: str, on_idle=None) -> Any:
        """Resolve a query and queue it for playback; returns the queued track."""
        pass

    @abstractmethod
    async def skip(self, guild_id: int) -> bool:
        pass

    @abstractmethod
    async def stop(self, guild_id: int) -> None:
        pass

    @abstractmethod
    def is_playing(self, guild_id: int) -> bool:
        pass


class BaseVoiceSessionServiceManager(Manager):
    """Specialized manager for per-guild voice sessions."""

    @abstractmethod
    def get_session(self, guild_id: int) -> Any:
        """Get the session for a guild, creating it if needed."""
        pass

    @abstractmethod
    def find_session(self, guild_id: int) -> Any | None:
        pass

    @abstractmethod
    def discard_session(self, guild_id: int) -> None:
        pass
