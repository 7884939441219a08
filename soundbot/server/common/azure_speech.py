"""Azure Speech short-audio REST client."""

import asyncio
import logging
from typing import Any

import aiohttp

from soundbot.server.services import RecognitionResult, SpeechRecognitionHandler

logger = logging.getLogger(__name__)

AZURE_STT_PATH = "/speech/recognition/conversation/cognitiveservices/v1"
NO_MATCH_STATUSES = ("NoMatch", "InitialSilenceTimeout", "BabbleTimeout")
QUOTA_MARKER = "quota exceeded"


class AzureSpeechClient(SpeechRecognitionHandler):
    """Client for the Azure Speech-to-Text REST API for short audio."""

    def __init__(
        self,
        subscription_key: str,
        region: str,
        name: str = "azure_speech",
        language: str = "en-US",
        request_timeout: float = 30.0,
    ):
        """
        Initialize the Azure speech client.

        Args:
            subscription_key: Speech resource key
            region: Speech resource region, e.g. "eastus"
            name: Name of the client
            language: Recognition language
            request_timeout: Total timeout for one recognition request in seconds
        """
        endpoint = f"https://{region}.stt.speech.microsoft.com{AZURE_STT_PATH}"
        super().__init__(name, endpoint, language=language)
        self.subscription_key = subscription_key
        self.region = region
        self.request_timeout = request_timeout
        self.session: aiohttp.ClientSession | None = None

    # -------------------------------------------------------------- #
    # Server Management
    # -------------------------------------------------------------- #

    async def connect(self) -> None:
        """Create the HTTP session used for recognition requests."""
        self.session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.request_timeout)
        )
        self._connected = True
        logger.info(f"Azure speech client ready for region '{self.region}'")

    async def disconnect(self) -> None:
        if self.session:
            await self.session.close()
            self.session = None
        self._connected = False
        logger.info("Azure speech client closed")

    async def health_check(self) -> bool:
        # Short-audio endpoint has no health route; a live session with a key is healthy
        return self.session is not None and not self.session.closed and bool(self.subscription_key)

    # -------------------------------------------------------------- #
    # Recognition
    # -------------------------------------------------------------- #

    async def recognize_once(self, audio_bytes: bytes) -> RecognitionResult:
        if not self.session:
            return RecognitionResult.error("Not connected to Azure speech service")

        params = {"language": self.language, "profanity": "raw", "format": "simple"}
        headers = {
            "Ocp-Apim-Subscription-Key": self.subscription_key,
            "Content-Type": "audio/wav; codecs=audio/pcm; samplerate=16000",
            "Accept": "application/json",
        }

        try:
            async with self.session.post(
                self.endpoint, params=params, headers=headers, data=audio_bytes
            ) as response:
                body = await response.text()

                if response.status == 429 or QUOTA_MARKER in body.lower():
                    return RecognitionResult.quota_exceeded(body or f"HTTP {response.status}")

                if response.status != 200:
                    return RecognitionResult.error(f"HTTP {response.status}: {body}")

                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return RecognitionResult.error(f"Request failed: {e}")
        except ValueError as e:
            return RecognitionResult.error(f"Invalid response body: {e}")

        return parse_recognition_payload(payload)


def parse_recognition_payload(payload: Any) -> RecognitionResult:
    """
    Map an Azure "simple" format response to a RecognitionResult.

    Args:
        payload: Decoded JSON response

    Returns:
        RecognitionResult for the payload's RecognitionStatus
    """
    if not isinstance(payload, dict):
        return RecognitionResult.error(f"Unexpected response body: {payload!r}")

    status = payload.get("RecognitionStatus")
    if status == "Success":
        text = payload.get("DisplayText")
        if not isinstance(text, str) or not text.strip():
            return RecognitionResult.no_match("Empty transcription")
        return RecognitionResult.recognized(text.strip())
    if status in NO_MATCH_STATUSES:
        return RecognitionResult.no_match(status)
    if isinstance(status, str) and QUOTA_MARKER in status.lower():
        return RecognitionResult.quota_exceeded(status)
    return RecognitionResult.error(f"Recognition status: {status}")


def construct_azure_speech_client(
    subscription_key: str, region: str, language: str = "en-US"
) -> AzureSpeechClient:
    """Construct and return an Azure speech client instance."""
    return AzureSpeechClient(subscription_key=subscription_key, region=region, language=language)
