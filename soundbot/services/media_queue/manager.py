import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

import yt_dlp

if TYPE_CHECKING:
    from soundbot.context import Context
    from soundbot.services.voice_session.transport import VoiceConnection

from soundbot.errors import TransportError
from soundbot.services.manager import BaseMediaQueueServiceManager

logger = logging.getLogger(__name__)

# -------------------------------------------------------------- #
# Data Types
# -------------------------------------------------------------- #


@dataclass
class Track:
    title: str
    stream_url: str
    webpage_url: str | None = None
    query: str | None = None


@dataclass
class GuildQueue:
    connection: "VoiceConnection | None" = None
    tracks: deque[Track] = field(default_factory=deque)
    current: Track | None = None
    on_idle: Callable[[], None] | None = None


# -------------------------------------------------------------- #
# Media Queue Service
# -------------------------------------------------------------- #


class MediaQueueService(BaseMediaQueueServiceManager):
    """FIFO music queue per guild, streamed through the guild's voice connection."""

    YDL_OPTIONS = {
        "format": "bestaudio/best",
        "noplaylist": True,
        "default_search": "ytsearch",
        "quiet": True,
        "no_warnings": True,
    }

    def __init__(self, context: "Context", resolver: Callable[[str], Track] | None = None):
        super().__init__(context)
        self.resolver = resolver or self._resolve_sync
        self._queues: dict[int, GuildQueue] = {}

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_close(self) -> None:
        for guild_id in list(self._queues):
            await self.stop(guild_id)

    # -------------------------------------------------------------- #
    # Queue Operations
    # -------------------------------------------------------------- #

    async def resolve(self, query: str) -> Track:
        """Resolve a URL or search query to a streamable track."""
        # Run in executor because yt_dlp is blocking
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.resolver, query)

    def _resolve_sync(self, query: str) -> Track:
        with yt_dlp.YoutubeDL(self.YDL_OPTIONS) as ydl:
            info = ydl.extract_info(query, download=False)

        # search results come back as a playlist
        if info and "entries" in info:
            entries = [entry for entry in info["entries"] if entry]
            if not entries:
                raise LookupError(f"No results for '{query}'")
            info = entries[0]

        if not info or not info.get("url"):
            raise LookupError(f"No playable stream for '{query}'")

        return Track(
            title=info.get("title") or query,
            stream_url=info["url"],
            webpage_url=info.get("webpage_url"),
            query=query,
        )

    async def enqueue(
        self,
        guild_id: int,
        connection: "VoiceConnection",
        query: str,
        on_idle: Callable[[], None] | None = None,
    ) -> Track:
        """
        Resolve `query` and add it to the guild's queue, starting playback if idle.

        Args:
            guild_id: Guild the queue belongs to
            connection: Voice connection to play through
            query: URL or search terms
            on_idle: Called once the queue runs dry on its own

        Returns:
            The queued track
        """
        track = await self.resolve(query)

        queue = self._queues.setdefault(guild_id, GuildQueue())
        queue.connection = connection
        queue.on_idle = on_idle
        queue.tracks.append(track)
        await self.services.logging_service.info(f"Queued '{track.title}' in guild {guild_id}")

        if queue.current is None:
            self._play_next(guild_id)
        return track

    async def skip(self, guild_id: int) -> bool:
        """Skip the current track; returns False if nothing is playing."""
        queue = self._queues.get(guild_id)
        if queue is None or queue.current is None or queue.connection is None:
            return False

        await self.services.logging_service.info(
            f"Skipping '{queue.current.title}' in guild {guild_id}"
        )
        # the end-of-track callback advances the queue
        queue.connection.stop_playing()
        return True

    async def stop(self, guild_id: int) -> None:
        """Clear the queue and stop the current track."""
        queue = self._queues.pop(guild_id, None)
        if queue is None:
            return

        queue.tracks.clear()
        queue.current = None
        if queue.connection is not None:
            queue.connection.stop_playing()

    def is_playing(self, guild_id: int) -> bool:
        queue = self._queues.get(guild_id)
        return queue is not None and queue.current is not None

    def get_queue(self, guild_id: int) -> list[Track]:
        queue = self._queues.get(guild_id)
        return list(queue.tracks) if queue else []

    # -------------------------------------------------------------- #
    # Playback Callbacks
    # -------------------------------------------------------------- #

    def _play_next(self, guild_id: int) -> None:
        queue = self._queues.get(guild_id)
        if queue is None:
            return

        while queue.tracks:
            track = queue.tracks.popleft()
            queue.current = track
            try:
                queue.connection.play(
                    track.stream_url,
                    after=lambda error, t=track: self._on_track_end(guild_id, t, error),
                    stream=True,
                )
                logger.info(f"Now playing '{track.title}' in guild {guild_id}")
                return
            except TransportError as e:
                logger.error(f"Could not play '{track.title}': {e}")

        queue.current = None
        self._queues.pop(guild_id, None)
        if queue.on_idle is not None:
            queue.on_idle()

    def _on_track_end(self, guild_id: int, track: Track, error: Exception | None) -> None:
        queue = self._queues.get(guild_id)
        if queue is None or queue.current is not track:
            return
        if error is not None:
            logger.error(f"Playback of '{track.title}' failed: {error}")
        queue.current = None
        self._play_next(guild_id)
