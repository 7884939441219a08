"""
Voice transport interfaces and the py-cord implementation.

The session and capture code only talk to `VoiceTransport`, `VoiceConnection`
and `SpeakingReceiver`; py-cord specifics stay in this module.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from contextlib import suppress
from typing import Any, Callable

import discord

from soundbot.errors import TransportError

logger = logging.getLogger(__name__)

SpeakingStartCallback = Callable[[int, str], None]
SpeakingEndCallback = Callable[[int], None]
PlaybackCallback = Callable[[Exception | None], None]

# reconnect flags for remote media streams
STREAM_BEFORE_OPTIONS = "-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5"


# -------------------------------------------------------------- #
# Frame Stream
# -------------------------------------------------------------- #


class FrameStream:
    """
    Bounded async iterator over one participant's audio packets.

    The receiver pushes packets, the capture channel consumes them. The
    receiver cannot be paused, so packets pushed while the buffer is full are
    dropped and counted instead of growing memory without bound.
    """

    def __init__(self, participant_id: int, max_frames: int = 500):
        self.participant_id = participant_id
        self.max_frames = max_frames
        self.dropped = 0
        self._frames: deque[bytes] = deque()
        self._closed = False
        self._signal = asyncio.Event()

    def push(self, frame: bytes) -> bool:
        if self._closed:
            return False
        if len(self._frames) >= self.max_frames:
            self.dropped += 1
            return False
        self._frames.append(frame)
        self._signal.set()
        return True

    def close(self) -> None:
        """End the stream; buffered frames are still delivered."""
        self._closed = True
        self._signal.set()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._frames)

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        while not self._frames:
            if self._closed:
                raise StopAsyncIteration
            self._signal.clear()
            await self._signal.wait()
        return self._frames.popleft()


class ReceiverSubscription:
    """Handle for speaking listeners; `cancel()` detaches them exactly once."""

    def __init__(self, on_cancel: Callable[[], None]):
        self._on_cancel = on_cancel
        self.cancelled = False

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self._on_cancel()


# -------------------------------------------------------------- #
# Interfaces
# -------------------------------------------------------------- #


class SpeakingReceiver(ABC):
    """Per-participant speaking signals and audio for one connection."""

    @abstractmethod
    def listen(
        self, on_start: SpeakingStartCallback, on_end: SpeakingEndCallback
    ) -> ReceiverSubscription:
        """Register speaking start / end callbacks until the subscription is cancelled."""
        pass

    @abstractmethod
    def subscribe(self, participant_id: int, silence_ms: int) -> FrameStream:
        """Open a frame stream that ends after `silence_ms` of silence."""
        pass


class VoiceConnection(ABC):
    """One live voice connection, owned by exactly one session."""

    @property
    @abstractmethod
    def channel_id(self) -> int:
        pass

    @property
    @abstractmethod
    def receiver(self) -> SpeakingReceiver:
        pass

    @abstractmethod
    async def destroy(self) -> None:
        """Stop receiving and disconnect."""
        pass

    @abstractmethod
    def play(self, source: str, after: PlaybackCallback, stream: bool = False) -> None:
        """Start playing a file or URL; `after` runs on the event loop when it ends."""
        pass

    @abstractmethod
    def stop_playing(self) -> None:
        pass

    @abstractmethod
    def is_playing(self) -> bool:
        pass

    async def play_file(self, path: str) -> None:
        """Play a local audio file and wait until it finishes."""
        loop = asyncio.get_running_loop()
        finished: asyncio.Future = loop.create_future()

        def _after(error: Exception | None) -> None:
            if finished.done():
                return
            if error is not None:
                finished.set_exception(error)
            else:
                finished.set_result(None)

        if self.is_playing():
            self.stop_playing()
        self.play(path, _after)
        await finished


class VoiceTransport(ABC):
    @abstractmethod
    async def connect(self, channel: Any) -> VoiceConnection:
        """
        Connect to a voice channel.

        Raises:
            TransportError: If the connection could not be established
        """
        pass


# -------------------------------------------------------------- #
# py-cord Implementation
# -------------------------------------------------------------- #


class _ReceiverSink(discord.sinks.Sink):
    """Hands decoded packets from py-cord's receive thread to the event loop."""

    def __init__(self, receiver: "PycordSpeakingReceiver", *, filters=None):
        super().__init__(filters=filters)
        self.receiver = receiver

    @discord.sinks.Filters.container
    def write(self, data, user):
        self.receiver.on_packet_threadsafe(user, data)

    def cleanup(self):
        self.finished = True


class PycordSpeakingReceiver(SpeakingReceiver):
    """
    Speaking detection on top of py-cord's recording sink.

    The first packet from a participant signals speaking-start; a watchdog
    signals speaking-end once no packet has arrived for the participant's
    silence threshold.
    """

    def __init__(
        self,
        voice_client: discord.VoiceClient,
        loop: asyncio.AbstractEventLoop,
        silence_ms: int = 100,
        check_interval: float = 0.02,
    ):
        self.voice_client = voice_client
        self.loop = loop
        self.default_silence_ms = silence_ms
        self.check_interval = check_interval

        self._listeners: dict[int, tuple[SpeakingStartCallback, SpeakingEndCallback]] = {}
        self._next_token = 0
        self._streams: dict[int, FrameStream] = {}
        self._silence_ms: dict[int, int] = {}
        self._last_packet: dict[int, float] = {}
        self._sink: _ReceiverSink | None = None
        self._watchdog_task: asyncio.Task | None = None

    # -------------------------------------------------------------- #
    # SpeakingReceiver
    # -------------------------------------------------------------- #

    def listen(
        self, on_start: SpeakingStartCallback, on_end: SpeakingEndCallback
    ) -> ReceiverSubscription:
        token = self._next_token
        self._next_token += 1
        self._listeners[token] = (on_start, on_end)

        if self._sink is None:
            self._start_sink()

        return ReceiverSubscription(lambda: self._unlisten(token))

    def subscribe(self, participant_id: int, silence_ms: int) -> FrameStream:
        previous = self._streams.pop(participant_id, None)
        if previous is not None:
            previous.close()

        stream = FrameStream(participant_id)
        self._streams[participant_id] = stream
        self._silence_ms[participant_id] = silence_ms
        return stream

    def shutdown(self) -> None:
        """Detach every listener, end every stream and stop the sink."""
        self._listeners.clear()
        self._stop_sink()

    # -------------------------------------------------------------- #
    # Packet Handling
    # -------------------------------------------------------------- #

    def on_packet_threadsafe(self, user_id: int, data: bytes) -> None:
        """Called from py-cord's receive thread."""
        with suppress(RuntimeError):  # loop already closed during shutdown
            self.loop.call_soon_threadsafe(self._on_packet, user_id, data)

    def _on_packet(self, user_id: int, data: bytes) -> None:
        if self._sink is None:
            return

        is_new_speaker = user_id not in self._last_packet
        self._last_packet[user_id] = self.loop.time()

        if is_new_speaker:
            display_name = self._resolve_display_name(user_id)
            for on_start, _ in list(self._listeners.values()):
                try:
                    on_start(user_id, display_name)
                except Exception as e:
                    logger.error(f"Speaking start handler failed for {user_id}: {e}")

        stream = self._streams.get(user_id)
        if stream is not None and not stream.push(data) and not stream.closed:
            logger.debug(f"Dropped packet for {user_id} (buffer full, {stream.dropped} total)")

    def _resolve_display_name(self, user_id: int) -> str:
        guild = getattr(self.voice_client, "guild", None)
        member = guild.get_member(user_id) if guild else None
        return member.display_name if member else str(user_id)

    async def _watch_silence(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            now = self.loop.time()
            for user_id, last in list(self._last_packet.items()):
                silence_ms = self._silence_ms.get(user_id, self.default_silence_ms)
                if (now - last) * 1000 >= silence_ms:
                    self._end_speaking(user_id)

    def _end_speaking(self, user_id: int) -> None:
        self._last_packet.pop(user_id, None)
        self._silence_ms.pop(user_id, None)
        stream = self._streams.pop(user_id, None)
        if stream is not None:
            stream.close()

        for _, on_end in list(self._listeners.values()):
            try:
                on_end(user_id)
            except Exception as e:
                logger.error(f"Speaking end handler failed for {user_id}: {e}")

    # -------------------------------------------------------------- #
    # Sink Lifecycle
    # -------------------------------------------------------------- #

    def _unlisten(self, token: int) -> None:
        self._listeners.pop(token, None)
        if not self._listeners:
            self._stop_sink()

    def _start_sink(self) -> None:
        self._sink = _ReceiverSink(self)
        try:
            self.voice_client.start_recording(self._sink, self._on_sink_finished, sync_start=False)
        except discord.DiscordException as e:
            self._sink = None
            raise TransportError(f"Could not start receiving audio: {e}") from e
        self._watchdog_task = self.loop.create_task(self._watch_silence())

    def _stop_sink(self) -> None:
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            self._watchdog_task = None

        for stream in self._streams.values():
            stream.close()
        self._streams.clear()
        self._silence_ms.clear()
        self._last_packet.clear()

        if self._sink is not None:
            self._sink = None
            if getattr(self.voice_client, "recording", False):
                try:
                    self.voice_client.stop_recording()
                except discord.DiscordException as e:
                    logger.warning(f"Failed to stop receiving audio: {e}")

    async def _on_sink_finished(self, sink: discord.sinks.Sink, *args) -> None:
        logger.debug("Voice receive sink finished")


class PycordVoiceConnection(VoiceConnection):
    def __init__(
        self,
        voice_client: discord.VoiceClient,
        loop: asyncio.AbstractEventLoop,
        ffmpeg_path: str = "ffmpeg",
        silence_ms: int = 100,
    ):
        self.voice_client = voice_client
        self.loop = loop
        self.ffmpeg_path = ffmpeg_path
        self._receiver = PycordSpeakingReceiver(voice_client, loop, silence_ms=silence_ms)

    @property
    def channel_id(self) -> int:
        return self.voice_client.channel.id

    @property
    def receiver(self) -> PycordSpeakingReceiver:
        return self._receiver

    async def destroy(self) -> None:
        self._receiver.shutdown()
        try:
            if self.voice_client.is_connected():
                await self.voice_client.disconnect(force=True)
        except discord.DiscordException as e:
            raise TransportError(f"Failed to disconnect: {e}") from e

    def play(self, source: str, after: PlaybackCallback, stream: bool = False) -> None:
        audio = discord.FFmpegPCMAudio(
            source,
            executable=self.ffmpeg_path,
            before_options=STREAM_BEFORE_OPTIONS if stream else None,
            options="-vn",
        )

        def _after(error: Exception | None) -> None:
            # runs on the player thread
            with suppress(RuntimeError):
                self.loop.call_soon_threadsafe(after, error)

        try:
            self.voice_client.play(audio, after=_after)
        except discord.DiscordException as e:
            audio.cleanup()
            raise TransportError(f"Failed to start playback: {e}") from e

    def stop_playing(self) -> None:
        if self.voice_client.is_playing() or self.voice_client.is_paused():
            self.voice_client.stop()

    def is_playing(self) -> bool:
        return self.voice_client.is_playing()


class PycordVoiceTransport(VoiceTransport):
    """Connects through py-cord's `VoiceChannel.connect`."""

    def __init__(
        self, ffmpeg_path: str = "ffmpeg", connect_timeout: float = 10.0, silence_ms: int = 100
    ):
        self.ffmpeg_path = ffmpeg_path
        self.connect_timeout = connect_timeout
        self.silence_ms = silence_ms

    async def connect(self, channel: discord.VoiceChannel) -> PycordVoiceConnection:
        # a stale client left behind by a dropped session blocks a new connect
        stale = channel.guild.voice_client
        if stale is not None:
            with suppress(discord.DiscordException):
                await stale.disconnect(force=True)

        try:
            voice_client = await channel.connect(timeout=self.connect_timeout, reconnect=True)
        except (discord.DiscordException, asyncio.TimeoutError) as e:
            raise TransportError(f"Failed to connect to {channel.name}: {e}") from e

        return PycordVoiceConnection(
            voice_client,
            asyncio.get_running_loop(),
            ffmpeg_path=self.ffmpeg_path,
            silence_ms=self.silence_ms,
        )
