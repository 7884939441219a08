import asyncio
from typing import TYPE_CHECKING, Awaitable, Callable

from soundbot.errors import FileAccessError, RecognitionError
from soundbot.server.services import (
    RecognitionOutcome,
    RecognitionResult,
    SpeechRecognitionHandler,
)
from soundbot.services.manager import BaseRecognitionGateServiceManager

if TYPE_CHECKING:
    from soundbot.context import Context

UtteranceCallback = Callable[[str], Awaitable[None]]

# -------------------------------------------------------------- #
# Constants
# -------------------------------------------------------------- #


class RecognitionGateConstants:
    # Quota errors are retried once after this delay
    RETRY_DELAY_SECONDS = 5.0
    MAX_RETRIES = 1


# -------------------------------------------------------------- #
# Recognition Gate Service
# -------------------------------------------------------------- #


class RecognitionGateService(BaseRecognitionGateServiceManager):
    """
    Process-wide single-flight access to the speech recognition service.

    At most one recording is being recognized at any time. A submission that
    arrives while a recognition is running is dropped (and its file deleted)
    instead of queued; the service's free tier rate limit makes a backlog
    useless. Every accepted file is deleted exactly once, whatever the outcome.
    """

    def __init__(
        self,
        context: "Context",
        speech_client: SpeechRecognitionHandler | None = None,
        retry_delay: float = RecognitionGateConstants.RETRY_DELAY_SECONDS,
    ):
        super().__init__(context)
        self._speech_client = speech_client
        self.retry_delay = retry_delay

        self._busy = False
        self._current: asyncio.Task | None = None
        self.dropped = 0

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services) -> None:
        await super().on_start(services)
        if self._speech_client is None and self.context.server_manager is not None:
            self._speech_client = self.context.server_manager.speech_client
        await self.services.logging_service.info(
            f"RecognitionGateService ready (client: {self.speech_client.name})"
        )

    async def on_close(self) -> None:
        """Let a running recognition finish so its file is cleaned up."""
        if self._current is not None and not self._current.done():
            await asyncio.shield(self._current)

    # -------------------------------------------------------------- #
    # Properties
    # -------------------------------------------------------------- #

    @property
    def speech_client(self) -> SpeechRecognitionHandler:
        if self._speech_client is None:
            raise RuntimeError("RecognitionGateService has no speech client configured")
        return self._speech_client

    @property
    def is_busy(self) -> bool:
        return self._busy

    # -------------------------------------------------------------- #
    # Submission
    # -------------------------------------------------------------- #

    async def submit(self, file_path: str, on_recognized: UtteranceCallback) -> bool:
        """
        Hand a finished recording to the recognition service.

        Returns immediately; recognition runs in the background.

        Args:
            file_path: WAV file to recognize (deleted once recognition ends)
            on_recognized: Awaited with the text of a successful recognition

        Returns:
            True if the file was accepted, False if it was dropped because a
            recognition is already in flight
        """
        # check-and-set before the first await keeps the gate single-flight
        if self._busy:
            self.dropped += 1
            await self.services.logging_service.info(
                f"Recognition busy, dropping {file_path} ({self.dropped} dropped so far)"
            )
            await self.services.file_service_manager.delete_file(file_path)
            return False

        self._busy = True
        self._current = asyncio.create_task(self._run(file_path, on_recognized))
        return True

    async def wait_idle(self) -> None:
        """Wait for the in-flight recognition, if any, to finish."""
        if self._current is not None and not self._current.done():
            await asyncio.shield(self._current)

    async def _run(self, file_path: str, on_recognized: UtteranceCallback) -> None:
        logger = self.services.logging_service
        try:
            try:
                audio = await self.services.file_service_manager.read_file(file_path)
            except OSError as e:
                raise FileAccessError(f"Could not read recording {file_path}: {e}") from e

            result = await self._recognize_with_retry(audio, file_path)

            if result.outcome == RecognitionOutcome.RECOGNIZED:
                await logger.info(f"Recognized: {result.text}")
                await on_recognized(result.text)
            elif result.outcome == RecognitionOutcome.NO_MATCH:
                await logger.info(f"Speech could not be recognized ({result.detail})")
            else:
                raise RecognitionError(
                    f"Recognition failed: {result.outcome.value} {result.detail}"
                )

        except (FileAccessError, RecognitionError) as e:
            await logger.error(str(e))
        except Exception as e:
            await logger.error(f"Recognition of {file_path} failed: {e}")
        finally:
            try:
                await self.services.file_service_manager.delete_file(file_path)
            except OSError as e:
                await logger.error(f"Could not delete {file_path}: {e}")
            self._busy = False

    async def _recognize_with_retry(self, audio: bytes, file_path: str) -> RecognitionResult:
        """One call, plus exactly one retry if the first call hit the quota."""
        attempt = 0
        while True:
            try:
                result = await self.speech_client.recognize_once(audio)
            except Exception as e:
                result = RecognitionResult.error(str(e))

            if (
                result.outcome != RecognitionOutcome.QUOTA_EXCEEDED
                or attempt >= RecognitionGateConstants.MAX_RETRIES
            ):
                return result

            attempt += 1
            await self.services.logging_service.warning(
                f"Recognition quota exceeded for {file_path}, "
                f"retrying in {self.retry_delay:.1f}s"
            )
            await asyncio.sleep(self.retry_delay)
