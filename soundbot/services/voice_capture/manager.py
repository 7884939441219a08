import asyncio
from contextlib import suppress
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Coroutine

from soundbot.errors import FileAccessError, ProcessError
from soundbot.services.ffmpeg_manager.manager import TranscoderOutcome, TranscoderProcess
from soundbot.services.voice_capture.pcm import PCMFrameDecoder, calculate_pcm_duration_ms
from soundbot.services.voice_session.transport import (
    FrameStream,
    ReceiverSubscription,
    VoiceConnection,
)
from soundbot.utils import build_recording_path, get_current_timestamp_est, get_epoch_ms

if TYPE_CHECKING:
    from soundbot.services.manager import BaseRecognitionGateServiceManager, ServicesManager

TranscoderFactory = Callable[[str, str], TranscoderProcess]
UtteranceCallback = Callable[[str], Awaitable[None]]

# -------------------------------------------------------------- #
# Constants
# -------------------------------------------------------------- #


class CaptureConstants:
    """Timing for per-participant capture."""

    # Transcoder gets this long to exit after its input is closed
    GRACE_PERIOD_SECONDS = 3.0

    # Delay between the file being finalized and recognition starting
    RECOGNITION_HANDOFF_DELAY_SECONDS = 1.0

    # A participant's stream ends after this much silence
    END_OF_STREAM_SILENCE_MS = 100


# -------------------------------------------------------------- #
# Capture Channel
# -------------------------------------------------------------- #


class CaptureChannel:
    """
    One speaking participant's pipeline:
    frame stream -> PCM frame decoder -> transcoder stdin -> WAV file.

    The channel owns its transcoder. `close()` runs the teardown once no
    matter how many triggers fire, and hands a finished file to the
    recognition gate after a short delay.
    """

    def __init__(
        self,
        participant_id: int,
        display_name: str,
        output_path: str,
        frame_stream: FrameStream,
        transcoder: TranscoderProcess,
        services: "ServicesManager",
        recognition_gate: "BaseRecognitionGateServiceManager",
        on_recognized: UtteranceCallback,
        notify_target: Any = None,
        handoff_delay: float = CaptureConstants.RECOGNITION_HANDOFF_DELAY_SECONDS,
    ):
        self.participant_id = participant_id
        self.display_name = display_name
        self.output_path = output_path
        self.frame_stream = frame_stream
        self.transcoder = transcoder
        self.services = services
        self.recognition_gate = recognition_gate
        self.on_recognized = on_recognized
        self.notify_target = notify_target
        self.handoff_delay = handoff_delay

        self.decoder = PCMFrameDecoder()
        self.created_at = get_current_timestamp_est()
        self.handoff_task: asyncio.Task | None = None

        self._start_task: asyncio.Task | None = None
        self._pump_task: asyncio.Task | None = None
        self._close_task: asyncio.Task | None = None

    # -------------------------------------------------------------- #
    # Lifecycle
    # -------------------------------------------------------------- #

    def begin(self) -> asyncio.Task:
        """Spawn the transcoder and start pumping frames in the background."""
        if self._start_task is None:
            self._start_task = asyncio.create_task(self._start())
        return self._start_task

    async def _start(self) -> bool:
        try:
            await self.services.file_service_manager.ensure_parent_dir(self.output_path)
            await self.transcoder.start()
        except (ProcessError, OSError) as e:
            await self.services.logging_service.error(
                f"Capture for {self.display_name} could not start: {e}"
            )
            return False

        self._pump_task = asyncio.create_task(self._pump())
        return True

    async def _pump(self) -> None:
        """Write frames in arrival order; `write` suspends while the transcoder is behind."""
        try:
            async for packet in self.frame_stream:
                for frame in self.decoder.decode(packet):
                    await self.transcoder.write(frame)

            tail = self.decoder.flush()
            if tail is not None:
                await self.transcoder.write(tail)
        except ProcessError as e:
            await self.services.logging_service.error(
                f"Transcoder for {self.display_name} stopped accepting audio: {e}"
            )
        finally:
            self.transcoder.close_input()

    async def close(self, grace: float = CaptureConstants.GRACE_PERIOD_SECONDS) -> bool:
        """
        Tear the channel down. Repeated calls share the first call's result.

        Args:
            grace: Seconds the whole teardown may take before the transcoder is killed

        Returns:
            True if a recording was handed to the recognition gate
        """
        if self._close_task is None:
            self._close_task = asyncio.create_task(self._close(grace))
        return await asyncio.shield(self._close_task)

    async def _close(self, grace: float) -> bool:
        try:
            return await self._teardown(grace)
        except Exception as e:
            await self.services.logging_service.error(
                f"Capture teardown for {self.display_name} failed: {e}"
            )
            return False

    async def _teardown(self, grace: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + grace

        def remaining() -> float:
            return max(0.0, deadline - loop.time())

        self.frame_stream.close()

        if self._start_task is not None:
            await self._settle(self._start_task, remaining())
        if self._pump_task is not None:
            await self._settle(self._pump_task, remaining())

        outcome = await self.transcoder.terminate(grace=remaining())
        await self._log_outcome(outcome)

        if self.frame_stream.dropped:
            await self.services.logging_service.warning(
                f"Dropped {self.frame_stream.dropped} packets for {self.display_name} "
                "while the transcoder was behind"
            )

        return await self._handoff(remaining())

    async def _settle(self, task: asyncio.Task, timeout: float) -> None:
        """Wait for a task up to timeout, then cancel it."""
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _log_outcome(self, outcome: TranscoderOutcome) -> None:
        logger = self.services.logging_service
        if outcome.succeeded:
            await logger.debug(
                f"Transcoder for {self.display_name} finished "
                f"({calculate_pcm_duration_ms(self.transcoder.bytes_written)} ms captured)"
            )
        elif outcome.killed:
            await logger.warning(f"Transcoder for {self.display_name} was killed")
        else:
            await logger.error(f"Transcoder for {self.display_name} failed: {outcome.error}")

    async def _handoff(self, file_wait: float) -> bool:
        exists = await self.services.file_service_manager.wait_for_file(
            self.output_path, timeout=file_wait
        )
        if not exists:
            error = FileAccessError(f"Recording output missing: {self.output_path}")
            await self.services.logging_service.error(str(error))
            await self._notify(f"Recording for {self.display_name} failed!")
            return False

        self.handoff_task = asyncio.create_task(self._submit_after_delay())
        return True

    async def _submit_after_delay(self) -> None:
        await asyncio.sleep(self.handoff_delay)
        await self.recognition_gate.submit(self.output_path, self.on_recognized)

    async def _notify(self, message: str) -> None:
        if self.notify_target is None:
            return
        try:
            await self.notify_target.send(message)
        except Exception as e:
            await self.services.logging_service.warning(f"Could not send '{message}': {e}")

    @property
    def is_closed(self) -> bool:
        return self._close_task is not None


# -------------------------------------------------------------- #
# Capture Registry
# -------------------------------------------------------------- #


class CaptureRegistry:
    """
    The live capture channels of one voice session, keyed by participant id.

    Speaking signals arrive as plain callbacks from the receiver; everything
    slower than a dict update is pushed into tasks the registry keeps track of.
    """

    def __init__(
        self,
        services: "ServicesManager",
        recognition_gate: "BaseRecognitionGateServiceManager",
        on_recognized: UtteranceCallback,
        transcoder_factory: TranscoderFactory | None = None,
        grace_period: float = CaptureConstants.GRACE_PERIOD_SECONDS,
        silence_ms: int = CaptureConstants.END_OF_STREAM_SILENCE_MS,
        handoff_delay: float = CaptureConstants.RECOGNITION_HANDOFF_DELAY_SECONDS,
    ):
        self.services = services
        self.recognition_gate = recognition_gate
        self.on_recognized = on_recognized
        self.transcoder_factory = transcoder_factory or (
            lambda path, name: services.ffmpeg_service_manager.create_transcoder(path, name=name)
        )
        self.grace_period = grace_period
        self.silence_ms = silence_ms
        self.handoff_delay = handoff_delay

        self._channels: dict[int, CaptureChannel] = {}
        self._closing: set[asyncio.Task] = set()
        self._tasks: set[asyncio.Task] = set()
        self._subscription: ReceiverSubscription | None = None
        self._connection: VoiceConnection | None = None
        self._notify_target: Any = None
        self._accepting = False
        self._last_epoch_ms = 0

    # -------------------------------------------------------------- #
    # Subscription
    # -------------------------------------------------------------- #

    def start_all(self, connection: VoiceConnection, notify_target: Any) -> ReceiverSubscription:
        """
        Create channels as participants start speaking on `connection`.

        Args:
            connection: Connection whose receiver provides speaking signals
            notify_target: Text channel failures are reported to

        Returns:
            The speaking subscription; `stop_all()` cancels it
        """
        if self._subscription is not None:
            return self._subscription

        self._connection = connection
        self._notify_target = notify_target
        self._accepting = True
        self._subscription = connection.receiver.listen(
            self._on_speaking_start, self._on_speaking_end
        )
        return self._subscription

    def _on_speaking_start(self, participant_id: int, display_name: str) -> None:
        if not self._accepting or participant_id in self._channels:
            return

        frame_stream = self._connection.receiver.subscribe(participant_id, self.silence_ms)
        output_path = build_recording_path(
            self.services.file_service_manager.get_storage_path(),
            display_name,
            participant_id,
            epoch_ms=self._next_epoch_ms(),
        )
        channel = CaptureChannel(
            participant_id=participant_id,
            display_name=display_name,
            output_path=output_path,
            frame_stream=frame_stream,
            transcoder=self.transcoder_factory(output_path, f"transcoder:{display_name}"),
            services=self.services,
            recognition_gate=self.recognition_gate,
            on_recognized=self.on_recognized,
            notify_target=self._notify_target,
            handoff_delay=self.handoff_delay,
        )
        self._channels[participant_id] = channel

        channel.transcoder.add_exit_callback(
            lambda _outcome: self._detach_and_close(participant_id, "transcoder exited", channel)
        )
        # the start task must exist before any teardown can run
        self._spawn(self._begin_channel(channel, channel.begin()))

    def _on_speaking_end(self, participant_id: int) -> None:
        self._detach_and_close(participant_id, "speaking ended")

    def _detach_and_close(
        self, participant_id: int, reason: str, channel: CaptureChannel | None = None
    ) -> None:
        # detached before returning so a speaking-start in the same tick gets a new channel
        detached = self._detach(participant_id, channel)
        if detached is not None:
            self._spawn(self._close_channel(detached, reason, self._start_close(detached)))

    async def _begin_channel(self, channel: CaptureChannel, start_task: asyncio.Task) -> None:
        await self.services.logging_service.info(
            f"Capturing {channel.display_name} -> {channel.output_path}"
        )
        if not await start_task:
            await self.destroy_channel(channel.participant_id, "transcoder failed", channel)

    # -------------------------------------------------------------- #
    # Teardown
    # -------------------------------------------------------------- #

    async def destroy_channel(
        self, participant_id: int, reason: str, channel: CaptureChannel | None = None
    ) -> bool:
        """
        Remove and close a participant's channel.

        Safe to call from every trigger; only the first call for a channel acts.

        Args:
            participant_id: Participant whose channel to tear down
            reason: Logged trigger
            channel: When given, only this exact channel instance is torn down

        Returns:
            True if this call tore the channel down
        """
        current = self._detach(participant_id, channel)
        if current is None:
            await self.services.logging_service.debug(
                f"Capture for {participant_id} already torn down ({reason})"
            )
            return False
        return await self._close_channel(current, reason)

    def _detach(
        self, participant_id: int, channel: CaptureChannel | None = None
    ) -> CaptureChannel | None:
        """Remove the participant's channel from the registry; None if it is already gone."""
        current = self._channels.get(participant_id)
        if current is None or (channel is not None and current is not channel):
            return None
        del self._channels[participant_id]
        return current

    def _start_close(self, channel: CaptureChannel) -> asyncio.Task:
        # registered in _closing right away so stop_all waits for it
        task = asyncio.create_task(channel.close(self.grace_period))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
        return task

    async def _close_channel(
        self, current: CaptureChannel, reason: str, task: asyncio.Task | None = None
    ) -> bool:
        if task is None:
            task = self._start_close(current)

        await self.services.logging_service.info(
            f"Stopping capture for {current.display_name} ({reason})"
        )
        handed_off = await asyncio.shield(task)
        if current.handoff_task is not None:
            self._track(current.handoff_task)
        return handed_off

    async def stop_all(self, grace: float | None = None) -> None:
        """
        Tear down every channel concurrently and detach from the receiver.

        No channel can be created once this starts. Resolves when every channel,
        including ones already closing, has finished its teardown.
        """
        self._accepting = False
        if grace is not None:
            self.grace_period = grace

        teardowns = [
            self.destroy_channel(participant_id, "recording stopped")
            for participant_id in list(self._channels)
        ]
        in_flight = list(self._closing)
        if teardowns or in_flight:
            results = await asyncio.gather(*teardowns, *in_flight, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    await self.services.logging_service.error(f"Capture teardown failed: {result}")

        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self._connection = None

    async def wait_for_handoffs(self) -> None:
        """Wait for scheduled recognition submissions (used on shutdown and in tests)."""
        # finishing teardowns register their handoff tasks while we wait
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # -------------------------------------------------------------- #
    # Helpers
    # -------------------------------------------------------------- #

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._track(task)
        return task

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _next_epoch_ms(self) -> int:
        # strictly increasing, so a participant resuming within the same ms gets a new file
        self._last_epoch_ms = max(get_epoch_ms(), self._last_epoch_ms + 1)
        return self._last_epoch_ms

    def get_channel(self, participant_id: int) -> CaptureChannel | None:
        return self._channels.get(participant_id)

    @property
    def active_participants(self) -> list[int]:
        return list(self._channels)

    @property
    def is_recording(self) -> bool:
        return self._subscription is not None
