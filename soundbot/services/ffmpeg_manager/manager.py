import asyncio
import logging
import subprocess
from contextlib import suppress
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from soundbot.context import Context

from soundbot.errors import ProcessError
from soundbot.services.manager import BaseFFmpegServiceManager

logger = logging.getLogger(__name__)

# -------------------------------------------------------------- #
# Constants
# -------------------------------------------------------------- #


class TranscoderConstants:
    # Decoded Discord PCM fed to stdin
    INPUT_FORMAT = "s16le"
    INPUT_SAMPLE_RATE = 48000
    INPUT_CHANNELS = 2

    # WAV written for the recognition service (short-audio REST wants 16 kHz mono)
    OUTPUT_CODEC = "pcm_s16le"
    OUTPUT_SAMPLE_RATE = 16000
    OUTPUT_CHANNELS = 1

    GRACE_PERIOD_SECONDS = 3.0
    STDIN_HIGH_WATER_BYTES = 64 * 1024
    STDERR_MAX_LINES = 20


@dataclass
class TranscoderOutcome:
    """How a transcoder process ended."""

    returncode: int | None = None
    error: str | None = None
    killed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0 and not self.killed and self.error is None


# -------------------------------------------------------------- #
# FFmpeg Handler
# -------------------------------------------------------------- #


class FFmpegHandler:
    def __init__(self, ffmpeg_service_manager: BaseFFmpegServiceManager, ffmpeg_path: str):
        self.ffmpeg_service_manager = ffmpeg_service_manager
        self.ffmpeg_path = ffmpeg_path

    async def validate_ffmpeg(self) -> bool:
        """Validate that FFmpeg is installed and accessible."""
        try:
            loop = asyncio.get_running_loop()
            result = await asyncio.wait_for(
                loop.run_in_executor(
                    None,
                    lambda: subprocess.run(
                        [self.ffmpeg_path, "-version"],
                        capture_output=True,
                        timeout=5,
                        text=True,
                    ),
                ),
                timeout=6.0,  # Slightly longer than subprocess timeout
            )
            return result.returncode == 0
        except (OSError, subprocess.TimeoutExpired, asyncio.TimeoutError):
            return False

    def build_pcm_to_wav_command(self, output_path: str) -> list[str]:
        """
        Build the FFmpeg command that reads raw PCM on stdin and writes a WAV file.

        Args:
            output_path: Destination WAV file

        Returns:
            Argument list for create_subprocess_exec
        """
        # Format options MUST come BEFORE -i for raw input
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-f",
            TranscoderConstants.INPUT_FORMAT,
            "-ar",
            str(TranscoderConstants.INPUT_SAMPLE_RATE),
            "-ac",
            str(TranscoderConstants.INPUT_CHANNELS),
            "-i",
            "pipe:0",
            "-acodec",
            TranscoderConstants.OUTPUT_CODEC,
            "-ar",
            str(TranscoderConstants.OUTPUT_SAMPLE_RATE),
            "-ac",
            str(TranscoderConstants.OUTPUT_CHANNELS),
            "-f",
            "wav",
            "-y",
            output_path,
        ]


# -------------------------------------------------------------- #
# Transcoder Process
# -------------------------------------------------------------- #


class TranscoderProcess:
    """
    One external transcoder process fed through stdin.

    The process is spawned once by ``start()`` and terminated exactly once by
    ``terminate()``: stdin is closed, the process gets a grace period to exit on
    its own, and is killed if it has not. Instances are never reused.
    """

    def __init__(
        self,
        command: list[str],
        output_path: str,
        name: str = "transcoder",
        high_water: int = TranscoderConstants.STDIN_HIGH_WATER_BYTES,
    ):
        self.command = command
        self.output_path = output_path
        self.name = name
        self.high_water = high_water

        self.outcome: TranscoderOutcome | None = None
        self.bytes_written = 0
        self.stderr_lines: list[str] = []

        self._process: asyncio.subprocess.Process | None = None
        self._started = False
        self._input_closed = False
        self._killed = False
        self._stderr_task: asyncio.Task | None = None
        self._wait_task: asyncio.Task | None = None
        self._terminate_task: asyncio.Task | None = None
        self._exit_callbacks: list[Callable[[TranscoderOutcome], None]] = []

    # -------------------------------------------------------------- #
    # Lifecycle
    # -------------------------------------------------------------- #

    async def start(self) -> None:
        """
        Spawn the process.

        Raises:
            ProcessError: If the process was already started or failed to spawn
        """
        if self._started:
            raise ProcessError(f"[{self.name}] Transcoder processes cannot be restarted")
        self._started = True

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            self._set_outcome(TranscoderOutcome(error=f"spawn failed: {e}"))
            raise ProcessError(f"[{self.name}] Failed to spawn transcoder: {e}") from e

        # Bound the stdin buffer so drain() applies backpressure early
        self._process.stdin.transport.set_write_buffer_limits(high=self.high_water)

        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._wait_task = asyncio.create_task(self._wait_for_exit())
        logger.debug(f"[{self.name}] Transcoder started (pid={self._process.pid})")

    async def write(self, data: bytes) -> None:
        """
        Write PCM to stdin, suspending while the pipe buffer is above its high-water mark.

        Raises:
            ProcessError: If the process is not accepting input
        """
        if not self.is_running or self._input_closed:
            raise ProcessError(f"[{self.name}] Transcoder is not accepting input")

        try:
            self._process.stdin.write(data)
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ProcessError(f"[{self.name}] Transcoder input pipe closed: {e}") from e

        self.bytes_written += len(data)

    def close_input(self) -> None:
        """Signal end of input; FFmpeg finalizes the file and exits."""
        if self._input_closed or self._process is None:
            return
        self._input_closed = True
        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

    async def terminate(
        self, grace: float = TranscoderConstants.GRACE_PERIOD_SECONDS
    ) -> TranscoderOutcome:
        """
        Close input, wait up to `grace` seconds for exit, then kill.

        Safe to call repeatedly and concurrently; only the first call acts and
        every caller receives the same outcome.
        """
        if self._terminate_task is None:
            self._terminate_task = asyncio.create_task(self._terminate(grace))
        return await asyncio.shield(self._terminate_task)

    async def _terminate(self, grace: float) -> TranscoderOutcome:
        if self._process is None:
            if self.outcome is None:
                self._set_outcome(TranscoderOutcome(error="never started"))
            return self.outcome

        self.close_input()

        try:
            await asyncio.wait_for(asyncio.shield(self._wait_task), timeout=max(grace, 0.0))
        except asyncio.TimeoutError:
            logger.warning(
                f"[{self.name}] Transcoder did not exit within {grace:.1f}s, killing it"
            )
            self._killed = True
            with suppress(ProcessLookupError):
                self._process.kill()
            await self._wait_task

        return self.outcome

    # -------------------------------------------------------------- #
    # Exit Signalling
    # -------------------------------------------------------------- #

    def add_exit_callback(self, callback: Callable[[TranscoderOutcome], None]) -> None:
        """Call `callback(outcome)` once the process has exited (immediately if it has)."""
        if self.outcome is not None:
            callback(self.outcome)
            return
        self._exit_callbacks.append(callback)

    async def wait(self) -> TranscoderOutcome | None:
        """Wait for the process to exit without terminating it."""
        if self._wait_task is not None:
            await asyncio.shield(self._wait_task)
        return self.outcome

    @property
    def is_running(self) -> bool:
        return self._process is not None and self.outcome is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    # -------------------------------------------------------------- #
    # Private Methods
    # -------------------------------------------------------------- #

    async def _drain_stderr(self) -> None:
        """Read stderr so the pipe never fills; keep the last lines for diagnostics."""
        stream = self._process.stderr
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self.stderr_lines.append(text)
                del self.stderr_lines[: -TranscoderConstants.STDERR_MAX_LINES]
                logger.warning(f"[{self.name}] stderr: {text}")

    async def _wait_for_exit(self) -> None:
        returncode = await self._process.wait()
        if self._stderr_task is not None:
            with suppress(asyncio.CancelledError):
                await self._stderr_task

        error = None
        if returncode != 0 and not self._killed:
            error = self.stderr_lines[-1] if self.stderr_lines else f"exit code {returncode}"
        self._set_outcome(
            TranscoderOutcome(returncode=returncode, error=error, killed=self._killed)
        )
        logger.debug(f"[{self.name}] Transcoder exited with {self.outcome}")

    def _set_outcome(self, outcome: TranscoderOutcome) -> None:
        self.outcome = outcome
        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            try:
                callback(outcome)
            except Exception as e:
                logger.error(f"[{self.name}] Exit callback failed: {e}")


# -------------------------------------------------------------- #
# FFmpeg Manager Service
# -------------------------------------------------------------- #


class FFmpegManagerService(BaseFFmpegServiceManager):
    """Service for managing FFmpeg operations."""

    def __init__(self, context: "Context", ffmpeg_path: str):
        super().__init__(context)

        self.ffmpeg_path = ffmpeg_path
        self.handler = FFmpegHandler(self, ffmpeg_path)
        self.is_valid = False

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services):
        await super().on_start(services)

        self.is_valid = await self.handler.validate_ffmpeg()
        if self.is_valid:
            await self.services.logging_service.info(
                f"FFmpeg validated at path: {self.ffmpeg_path}"
            )
        else:
            await self.services.logging_service.warning(
                f"FFmpeg validation failed at path: {self.ffmpeg_path}"
            )

    # -------------------------------------------------------------- #
    # Transcoders
    # -------------------------------------------------------------- #

    def get_ffmpeg_path(self) -> str:
        return self.ffmpeg_path

    def create_transcoder(self, output_path: str, name: str = "transcoder") -> TranscoderProcess:
        """Create an unstarted PCM to WAV transcoder writing to output_path."""
        return TranscoderProcess(
            command=self.handler.build_pcm_to_wav_command(output_path),
            output_path=output_path,
            name=name,
        )
