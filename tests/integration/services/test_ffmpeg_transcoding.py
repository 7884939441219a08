"""
Integration tests for PCM to WAV transcoding with a real FFmpeg binary.

Skipped when ffmpeg is not on PATH.
"""

import asyncio
import io
import math
import struct
import wave

import pytest

from soundbot.server.services import RecognitionResult
from soundbot.services.ffmpeg_manager.manager import TranscoderConstants
from soundbot.services.voice_capture.pcm import PCMFormat
from soundbot.services.voice_session.manager import VoiceSessionState


def tone(seconds: float, frequency: float = 440.0) -> bytes:
    """48 kHz stereo s16le sine wave, the format Discord audio decodes to."""
    rate = TranscoderConstants.INPUT_SAMPLE_RATE
    samples = []
    for i in range(int(rate * seconds)):
        value = int(8000 * math.sin(2 * math.pi * frequency * i / rate))
        samples.append(struct.pack("<hh", value, value))
    return b"".join(samples)


@pytest.fixture
def capture_options() -> dict:
    # real transcoder from the FFmpeg service
    return {"grace_period": 10.0, "handoff_delay": 0.0}


@pytest.mark.integration
@pytest.mark.asyncio
class TestFFmpegTranscoder:
    """Transcoders created by the FFmpeg service against the real binary."""

    async def test_ffmpeg_is_validated_on_start(self, ffmpeg_path, services_manager):
        assert services_manager.ffmpeg_service_manager.is_valid

    async def test_pcm_is_written_as_16k_mono_wav(self, ffmpeg_path, services_manager, tmp_path):
        output = str(tmp_path / "tone.wav")
        transcoder = services_manager.ffmpeg_service_manager.create_transcoder(output, "tone")

        await transcoder.start()
        audio = tone(1.0)
        for offset in range(0, len(audio), PCMFormat.FRAME_BYTES):
            await transcoder.write(audio[offset : offset + PCMFormat.FRAME_BYTES])
        outcome = await transcoder.terminate(grace=10.0)

        assert outcome.succeeded, outcome
        with wave.open(output, "rb") as wav:
            assert wav.getnchannels() == TranscoderConstants.OUTPUT_CHANNELS
            assert wav.getframerate() == TranscoderConstants.OUTPUT_SAMPLE_RATE
            assert wav.getsampwidth() == 2
            # resampling may shave a few samples off the end
            assert abs(wav.getnframes() - 16000) < 400

    async def test_recorded_speech_reaches_recognition_as_wav(
        self, ffmpeg_path, services_manager, fake_transport, mock_speech_client, mock_voice_channel
    ):
        mock_speech_client.queue_result(RecognitionResult.recognized("hello"))
        session = services_manager.voice_session_manager.get_session(1)
        await session.start_recording(mock_voice_channel)

        audio = tone(0.5)
        frames = [
            audio[offset : offset + PCMFormat.FRAME_BYTES]
            for offset in range(0, len(audio), PCMFormat.FRAME_BYTES)
        ]
        session.connection.receiver.speak(7, "alice", frames)
        session.connection.receiver.stop_speaking(7)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + 15.0
        while not mock_speech_client.calls and loop.time() < deadline:
            await asyncio.sleep(0.05)
        await services_manager.recognition_gate.wait_idle()

        assert len(mock_speech_client.calls) == 1
        with wave.open(io.BytesIO(mock_speech_client.calls[0]), "rb") as wav:
            assert wav.getframerate() == TranscoderConstants.OUTPUT_SAMPLE_RATE
            assert wav.getnframes() > 0

        await session.leave()
        assert session.state == VoiceSessionState.DISCONNECTED
