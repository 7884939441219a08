"""
In-memory voice transport for tests.

Tests drive speaking activity directly (`speak`, `push`, `stop_speaking`)
and inspect `events` to check the order in which a session acted on its
connection.
"""

import asyncio
from typing import Any

from soundbot.errors import TransportError
from soundbot.services.voice_session.transport import (
    FrameStream,
    PlaybackCallback,
    ReceiverSubscription,
    SpeakingEndCallback,
    SpeakingReceiver,
    SpeakingStartCallback,
    VoiceConnection,
    VoiceTransport,
)


class FakeSpeakingReceiver(SpeakingReceiver):
    def __init__(self, events: list[str]):
        self.events = events
        self.listeners: dict[int, tuple[SpeakingStartCallback, SpeakingEndCallback]] = {}
        self.streams: dict[int, FrameStream] = {}
        self._next_token = 0

    def listen(
        self, on_start: SpeakingStartCallback, on_end: SpeakingEndCallback
    ) -> ReceiverSubscription:
        token = self._next_token
        self._next_token += 1
        self.listeners[token] = (on_start, on_end)
        self.events.append("listen")

        def _cancel() -> None:
            self.listeners.pop(token, None)
            self.events.append("unlisten")

        return ReceiverSubscription(_cancel)

    def subscribe(self, participant_id: int, silence_ms: int) -> FrameStream:
        stream = FrameStream(participant_id)
        self.streams[participant_id] = stream
        return stream

    # -------------------------------------------------------------- #
    # Test Drivers
    # -------------------------------------------------------------- #

    def speak(self, participant_id: int, name: str, frames: list[bytes] | None = None) -> None:
        """Signal speaking-start and push frames."""
        for on_start, _ in list(self.listeners.values()):
            on_start(participant_id, name)
        for frame in frames or []:
            self.push(participant_id, frame)

    def push(self, participant_id: int, frame: bytes) -> None:
        stream = self.streams.get(participant_id)
        if stream is not None:
            stream.push(frame)

    def stop_speaking(self, participant_id: int) -> None:
        """End the participant's stream and signal speaking-end."""
        stream = self.streams.pop(participant_id, None)
        if stream is not None:
            stream.close()
        for _, on_end in list(self.listeners.values()):
            on_end(participant_id)


class FakeVoiceConnection(VoiceConnection):
    def __init__(
        self, channel_id: int, events: list[str], playback_seconds: float | None = 0.0
    ):
        self._channel_id = channel_id
        self.events = events
        self.playback_seconds = playback_seconds
        self._receiver = FakeSpeakingReceiver(events)
        self.destroyed = False
        self.played: list[str] = []
        self._after: PlaybackCallback | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def channel_id(self) -> int:
        return self._channel_id

    @property
    def receiver(self) -> FakeSpeakingReceiver:
        return self._receiver

    async def destroy(self) -> None:
        self.stop_playing()
        self.destroyed = True
        self.events.append(f"destroy:{self._channel_id}")

    def play(self, source: str, after: PlaybackCallback, stream: bool = False) -> None:
        if self._after is not None:
            raise TransportError("Already playing audio.")
        self.played.append(source)
        self.events.append(f"play:{source}")
        self._after = after
        loop = asyncio.get_running_loop()
        if self.playback_seconds is not None:
            self._timer = loop.call_later(self.playback_seconds, self.finish_playing)

    def finish_playing(self, error: Exception | None = None) -> None:
        """End the current track as if it ran out."""
        after, self._after = self._after, None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if after is not None:
            after(error)

    def stop_playing(self) -> None:
        if self._after is not None:
            self.events.append("stop_playing")
            self.finish_playing()

    def is_playing(self) -> bool:
        return self._after is not None


class FakeVoiceTransport(VoiceTransport):
    def __init__(
        self, fail_with: Exception | None = None, playback_seconds: float | None = 0.0
    ):
        self.fail_with = fail_with
        self.playback_seconds = playback_seconds
        self.events: list[str] = []
        self.connections: list[FakeVoiceConnection] = []

    async def connect(self, channel: Any) -> FakeVoiceConnection:
        channel_id = getattr(channel, "id", channel)
        self.events.append(f"connect:{channel_id}")
        if self.fail_with is not None:
            raise TransportError(str(self.fail_with)) from self.fail_with

        connection = FakeVoiceConnection(channel_id, self.events, self.playback_seconds)
        self.connections.append(connection)
        return connection
