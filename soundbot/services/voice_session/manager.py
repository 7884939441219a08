import asyncio
from contextlib import suppress
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import discord

from soundbot.errors import SoundbotError, StateConflictError, TransportError
from soundbot.services.manager import BaseVoiceSessionServiceManager
from soundbot.services.voice_capture.manager import CaptureRegistry
from soundbot.services.voice_session.transport import VoiceConnection, VoiceTransport

if TYPE_CHECKING:
    from soundbot.context import Context
    from soundbot.services.manager import BaseRecognitionGateServiceManager, ServicesManager

# -------------------------------------------------------------- #
# Constants
# -------------------------------------------------------------- #


class VoiceSessionConstants:
    # Longest the departure cue may hold up a leave
    LEAVE_CUE_TIMEOUT_SECONDS = 10.0

    # How far back to look for the bot's own messages on leave
    MESSAGE_HISTORY_LIMIT = 100


class VoiceSessionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    RECORDING = "recording"
    PLAYING = "playing"
    LEAVING = "leaving"


class Replies:
    NOT_IN_USER_CHANNEL = "You need to join a voice channel first!"
    ALREADY_CONNECTED = "Already connected to this voice channel!"
    JOINED = "Joined the voice channel."
    ALREADY_RECORDING = "Already recording!"
    RECORD_WHILE_PLAYING = "Cannot record while music is playing."
    STARTED_RECORDING = "Started recording."
    JOINED_AND_RECORDING = "Joined the voice channel and started recording."
    RECORD_NEEDS_CHANNEL = "I need to be in a voice channel to start recording!"
    STOPPED_RECORDING = "Stopped recording."
    NOT_RECORDING = "I am not recording."
    PLAY_NEEDS_CHANNEL = "You need to be in a voice channel to play music!"
    ENQUEUED = "**{title}** enqueued!"
    PLAY_FAILED = "Could not play `{query}`."
    SKIPPED = "I have skipped to the next track"
    NOTHING_PLAYING = "Nothing is playing right now."
    STOPPED_MUSIC = "I have stopped the music"
    NOT_CONNECTED = "I am not in a voice channel!"
    LEFT = "Left the voice channel"


# -------------------------------------------------------------- #
# Voice Session
# -------------------------------------------------------------- #


class VoiceSession:
    """
    The bot's presence in one guild: its voice connection, capture registry
    and playback state.

    Commands are serialized by a lock and always return the reply to show the
    user. Speaking signals, recognition results and playback callbacks arrive
    concurrently with commands.
    """

    def __init__(
        self,
        guild_id: int,
        services: "ServicesManager",
        transport: VoiceTransport,
        recognition_gate: "BaseRecognitionGateServiceManager",
        capture_options: dict | None = None,
        on_closed: Callable[["VoiceSession"], None] | None = None,
    ):
        self.guild_id = guild_id
        self.services = services
        self.transport = transport
        self.recognition_gate = recognition_gate
        self.on_closed = on_closed

        self.registry = CaptureRegistry(
            services, recognition_gate, self.on_utterance_recognized, **(capture_options or {})
        )
        self.connection: VoiceConnection | None = None
        self.state = VoiceSessionState.DISCONNECTED
        self.text_channel: Any = None

        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------- #
    # Properties
    # -------------------------------------------------------------- #

    @property
    def is_connected(self) -> bool:
        return self.connection is not None

    @property
    def is_recording(self) -> bool:
        return self.state == VoiceSessionState.RECORDING

    @property
    def is_playing(self) -> bool:
        return self.state == VoiceSessionState.PLAYING

    # -------------------------------------------------------------- #
    # Commands
    # -------------------------------------------------------------- #

    async def join(self, target: Any) -> str:
        return await self._run_command("join", self._join, target)

    async def leave(self, text_channel: Any = None) -> str:
        return await self._run_command("leave", self._leave, text_channel)

    async def start_recording(self, target: Any, text_channel: Any = None) -> str:
        return await self._run_command("record", self._start_recording, target, text_channel)

    async def stop_recording(self) -> str:
        return await self._run_command("stop_recording", self._stop_recording_command)

    async def start_playback(self, target: Any, query: str) -> str:
        return await self._run_command("play", self._start_playback, target, query)

    async def stop_playback(self) -> str:
        return await self._run_command("stop", self._stop_playback_command)

    async def skip_playback(self) -> str:
        return await self._run_command("skip", self._skip_playback)

    async def handle_forced_disconnect(self, channel_id: int | None = None) -> None:
        """
        The bot was removed from voice by someone else: tear down without the cue.

        Args:
            channel_id: Channel the bot left; ignored unless it is the current connection's
        """
        async with self._lock:
            if self.connection is None:
                return
            # the update for a channel we already switched away from
            if channel_id is not None and channel_id != self.connection.channel_id:
                await self.services.logging_service.debug(
                    f"Ignoring disconnect from stale channel {channel_id} in guild {self.guild_id}"
                )
                return
            await self.services.logging_service.warning(
                f"Disconnected from voice in guild {self.guild_id} externally"
            )
            self.state = VoiceSessionState.LEAVING
            await self._teardown(play_cue=False)

    async def _run_command(self, name: str, operation: Callable[..., Awaitable[str]], *args) -> str:
        logger = self.services.logging_service
        async with self._lock:
            try:
                return await operation(*args)
            except StateConflictError as e:
                await logger.info(f"/{name} rejected in guild {self.guild_id}: {e.user_message}")
                return e.user_message
            except SoundbotError as e:
                await logger.error(f"/{name} failed in guild {self.guild_id}: {e}")
                return e.user_message
            except Exception as e:
                await logger.error(f"/{name} crashed in guild {self.guild_id}: {e}")
                return SoundbotError.user_message

    # -------------------------------------------------------------- #
    # Command Implementations
    # -------------------------------------------------------------- #

    async def _join(self, target: Any) -> str:
        if target is None:
            raise StateConflictError(Replies.NOT_IN_USER_CHANNEL)

        if self.connection is not None and self.connection.channel_id == _channel_id(target):
            raise StateConflictError(Replies.ALREADY_CONNECTED)

        await self._connect(target)
        return Replies.JOINED

    async def _connect(self, target: Any) -> None:
        """Connect to `target`, releasing any connection to another channel first."""
        if self.connection is not None:
            await self.services.logging_service.info(
                f"Switching voice channel in guild {self.guild_id} to {_channel_id(target)}"
            )
            await self._stop_recording()
            await self._stop_playback()
            await self._destroy_connection()

        try:
            self.connection = await self.transport.connect(target)
        except TransportError:
            self.connection = None
            self.state = VoiceSessionState.DISCONNECTED
            raise

        self.state = VoiceSessionState.CONNECTED
        await self.services.logging_service.info(
            f"Connected to voice channel {self.connection.channel_id} in guild {self.guild_id}"
        )

        cue = self.services.soundboard_service.get_join_cue()
        if cue is not None:
            self._spawn(self._play_clip(cue, "join cue"))

    async def _leave(self, text_channel: Any) -> str:
        if self.connection is None:
            raise StateConflictError(Replies.NOT_CONNECTED)

        self.state = VoiceSessionState.LEAVING
        await self._teardown(play_cue=True)
        if text_channel is not None:
            await self._delete_own_messages(text_channel)
        return Replies.LEFT

    async def _start_recording(self, target: Any, text_channel: Any) -> str:
        if self.state == VoiceSessionState.RECORDING:
            raise StateConflictError(Replies.ALREADY_RECORDING)
        if self.state == VoiceSessionState.PLAYING:
            raise StateConflictError(Replies.RECORD_WHILE_PLAYING)

        joined = False
        if self.connection is None:
            if target is None:
                raise StateConflictError(Replies.RECORD_NEEDS_CHANNEL)
            await self._connect(target)
            joined = True

        self.text_channel = text_channel
        self.registry.start_all(self.connection, text_channel)
        self.state = VoiceSessionState.RECORDING
        await self.services.logging_service.info(f"Recording started in guild {self.guild_id}")

        return Replies.JOINED_AND_RECORDING if joined else Replies.STARTED_RECORDING

    async def _stop_recording_command(self) -> str:
        if self.state != VoiceSessionState.RECORDING:
            raise StateConflictError(Replies.NOT_RECORDING)
        await self._stop_recording()
        return Replies.STOPPED_RECORDING

    async def _start_playback(self, target: Any, query: str) -> str:
        if self.connection is None and target is None:
            raise StateConflictError(Replies.PLAY_NEEDS_CHANNEL)

        await self._stop_recording()
        if self.connection is None:
            await self._connect(target)

        # a join cue still playing gives way to the music
        if self.state != VoiceSessionState.PLAYING and self.connection.is_playing():
            self.connection.stop_playing()

        self.state = VoiceSessionState.PLAYING
        try:
            track = await self.services.media_queue_service.enqueue(
                self.guild_id, self.connection, query, on_idle=self._on_playback_idle
            )
        except Exception as e:
            await self.services.logging_service.error(f"Could not enqueue '{query}': {e}")
            self._sync_playback_state()
            return Replies.PLAY_FAILED.format(query=query)

        self._sync_playback_state()
        return Replies.ENQUEUED.format(title=track.title)

    async def _stop_playback_command(self) -> str:
        if self.connection is None:
            raise StateConflictError(Replies.NOT_CONNECTED)
        await self._stop_playback()
        return Replies.STOPPED_MUSIC

    async def _skip_playback(self) -> str:
        if self.connection is None:
            raise StateConflictError(Replies.NOT_CONNECTED)
        if not await self.services.media_queue_service.skip(self.guild_id):
            raise StateConflictError(Replies.NOTHING_PLAYING)
        return Replies.SKIPPED

    # -------------------------------------------------------------- #
    # Internal Steps
    # -------------------------------------------------------------- #

    async def _stop_recording(self) -> None:
        if not self.registry.is_recording:
            return
        await self.registry.stop_all()
        if self.state == VoiceSessionState.RECORDING:
            self.state = VoiceSessionState.CONNECTED
        await self.services.logging_service.info(f"Recording stopped in guild {self.guild_id}")

    async def _stop_playback(self) -> None:
        await self.services.media_queue_service.stop(self.guild_id)
        if self.state == VoiceSessionState.PLAYING:
            self.state = VoiceSessionState.CONNECTED

    async def _teardown(self, play_cue: bool) -> None:
        """Shared by leave and forced disconnect; always ends DISCONNECTED."""
        await self._stop_recording()
        await self._stop_playback()

        if play_cue:
            cue = self.services.soundboard_service.get_leave_cue()
            if cue is not None:
                try:
                    await asyncio.wait_for(
                        self.connection.play_file(cue),
                        timeout=VoiceSessionConstants.LEAVE_CUE_TIMEOUT_SECONDS,
                    )
                except Exception as e:
                    await self.services.logging_service.warning(f"Leave cue failed: {e}")

        await self._destroy_connection()
        await self._cancel_tasks()

        self.text_channel = None
        self.state = VoiceSessionState.DISCONNECTED
        await self.services.logging_service.info(f"Left voice in guild {self.guild_id}")

        if self.on_closed is not None:
            self.on_closed(self)

    async def _destroy_connection(self) -> None:
        connection, self.connection = self.connection, None
        if connection is None:
            return
        try:
            await connection.destroy()
        except TransportError as e:
            await self.services.logging_service.warning(f"Voice disconnect failed: {e}")

    async def _delete_own_messages(self, text_channel: Any) -> None:
        bot = self.services.context.bot if self.services.context else None
        if bot is None or bot.user is None:
            return

        try:
            async for message in text_channel.history(
                limit=VoiceSessionConstants.MESSAGE_HISTORY_LIMIT
            ):
                if message.author.id == bot.user.id:
                    await message.delete()
        except discord.DiscordException as e:
            await self.services.logging_service.warning(f"Error deleting messages: {e}")

    # -------------------------------------------------------------- #
    # Callbacks
    # -------------------------------------------------------------- #

    async def on_utterance_recognized(self, text: str) -> None:
        """Play the soundboard clip matching a recognized utterance, if any."""
        clip = self.services.soundboard_service.match(text)
        if clip is None:
            await self.services.logging_service.debug(f"No reaction for '{text}'")
            return

        if self.connection is None or self.state == VoiceSessionState.PLAYING:
            await self.services.logging_service.debug(
                f"Skipping reaction for '{text}' (state {self.state.value})"
            )
            return

        await self.services.logging_service.info(f"Reacting to '{text}' with {clip}")
        self._spawn(self._play_clip(clip, "reaction"))

    def _on_playback_idle(self) -> None:
        if self.state == VoiceSessionState.PLAYING:
            self.state = VoiceSessionState.CONNECTED

    def _sync_playback_state(self) -> None:
        if not self.services.media_queue_service.is_playing(self.guild_id):
            self._on_playback_idle()

    async def _play_clip(self, path: str, label: str) -> None:
        connection = self.connection
        # music that started after the clip was scheduled takes precedence
        if connection is None or self.state == VoiceSessionState.PLAYING:
            return
        try:
            await connection.play_file(path)
        except Exception as e:
            await self.services.logging_service.warning(f"Could not play {label} {path}: {e}")

    # -------------------------------------------------------------- #
    # Helpers
    # -------------------------------------------------------------- #

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is current or task.done():
                continue
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def wait_for_reactions(self) -> None:
        """Wait for cue and reaction playback started by this session."""
        pending = [task for task in self._tasks if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def get_session_status(self) -> dict:
        return {
            "guild_id": self.guild_id,
            "state": self.state.value,
            "channel_id": self.connection.channel_id if self.connection else None,
            "recording_participants": self.registry.active_participants,
            "playing": self.services.media_queue_service.is_playing(self.guild_id),
            "recognition_busy": self.recognition_gate.is_busy,
        }


def _channel_id(target: Any) -> int:
    return getattr(target, "id", target)


# -------------------------------------------------------------- #
# Voice Session Manager Service
# -------------------------------------------------------------- #


class VoiceSessionManagerService(BaseVoiceSessionServiceManager):
    """Creates, looks up and discards the per-guild voice sessions."""

    def __init__(
        self,
        context: "Context",
        transport: VoiceTransport,
        capture_options: dict | None = None,
    ):
        super().__init__(context)
        self.transport = transport
        self.capture_options = capture_options or {}
        self.sessions: dict[int, VoiceSession] = {}

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services) -> None:
        await super().on_start(services)
        await self.services.logging_service.info("Voice Session Manager started")

    async def on_close(self) -> None:
        """Leave every guild and wait for pending recordings to reach the gate."""
        sessions = list(self.sessions.values())
        for session in sessions:
            await session.leave()
        for session in sessions:
            await session.registry.wait_for_handoffs()
        self.sessions.clear()
        await self.services.logging_service.info("Voice Session Manager stopped")

    # -------------------------------------------------------------- #
    # Session Management Methods
    # -------------------------------------------------------------- #

    def get_session(self, guild_id: int) -> VoiceSession:
        session = self.sessions.get(guild_id)
        if session is None:
            session = VoiceSession(
                guild_id,
                self.services,
                self.transport,
                self.services.recognition_gate,
                capture_options=self.capture_options,
                on_closed=self._on_session_closed,
            )
            self.sessions[guild_id] = session
        return session

    def find_session(self, guild_id: int) -> VoiceSession | None:
        return self.sessions.get(guild_id)

    def discard_session(self, guild_id: int) -> None:
        self.sessions.pop(guild_id, None)

    async def handle_forced_disconnect(self, guild_id: int, channel_id: int | None = None) -> None:
        session = self.sessions.get(guild_id)
        if session is not None:
            await session.handle_forced_disconnect(channel_id)

    def _on_session_closed(self, session: VoiceSession) -> None:
        # a newer session for the guild stays registered
        if self.sessions.get(session.guild_id) is session:
            del self.sessions[session.guild_id]
