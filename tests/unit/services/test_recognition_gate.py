"""
Unit tests for the RecognitionGate.

The gate talks to the scripted MockSpeechClient; recordings are small files
in the test's recordings directory.
"""

import asyncio
import os

import pytest

from soundbot.server.services import RecognitionResult

# -------------------------------------------------------------- #
# Helpers
# -------------------------------------------------------------- #


def make_recording(services_manager, name: str, content: bytes = b"RIFFfakewav") -> str:
    path = os.path.join(services_manager.file_service_manager.get_storage_path(), name)
    with open(path, "wb") as f:
        f.write(content)
    return path


class Collector:
    def __init__(self):
        self.texts: list[str] = []

    async def __call__(self, text: str) -> None:
        self.texts.append(text)


# -------------------------------------------------------------- #
# Tests
# -------------------------------------------------------------- #


@pytest.mark.unit
@pytest.mark.asyncio
async def test_recognized_text_reaches_callback_and_file_is_deleted(
    services_manager, mock_speech_client
):
    gate = services_manager.recognition_gate
    mock_speech_client.queue_result(RecognitionResult.recognized("bruh moment"))
    path = make_recording(services_manager, "a.wav", b"audio-bytes")
    collector = Collector()

    assert await gate.submit(path, collector) is True
    assert gate.is_busy
    await gate.wait_idle()

    assert collector.texts == ["bruh moment"]
    assert mock_speech_client.calls == [b"audio-bytes"]
    assert not os.path.exists(path)
    assert not gate.is_busy


@pytest.mark.unit
@pytest.mark.asyncio
async def test_submission_while_busy_is_dropped_not_queued(services_manager, mock_speech_client):
    gate = services_manager.recognition_gate
    mock_speech_client.delay = 0.2
    mock_speech_client.queue_result(RecognitionResult.recognized("first"))
    first = make_recording(services_manager, "first.wav")
    second = make_recording(services_manager, "second.wav")
    collector = Collector()

    accepted = await asyncio.gather(gate.submit(first, collector), gate.submit(second, collector))
    await gate.wait_idle()

    assert accepted == [True, False]
    assert len(mock_speech_client.calls) == 1
    assert mock_speech_client.max_in_flight == 1
    assert gate.dropped == 1
    assert collector.texts == ["first"]
    assert not os.path.exists(first)
    assert not os.path.exists(second)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_gate_accepts_again_once_idle(services_manager, mock_speech_client):
    gate = services_manager.recognition_gate
    collector = Collector()

    assert await gate.submit(make_recording(services_manager, "1.wav"), collector)
    await gate.wait_idle()
    assert await gate.submit(make_recording(services_manager, "2.wav"), collector)
    await gate.wait_idle()

    assert len(mock_speech_client.calls) == 2
    assert gate.dropped == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_quota_exceeded_is_retried_exactly_once(services_manager, mock_speech_client):
    gate = services_manager.recognition_gate
    mock_speech_client.queue_result(RecognitionResult.quota_exceeded("429"))
    mock_speech_client.queue_result(RecognitionResult.recognized("fifty"))
    path = make_recording(services_manager, "q.wav")
    collector = Collector()

    await gate.submit(path, collector)
    await gate.wait_idle()

    assert len(mock_speech_client.calls) == 2
    assert collector.texts == ["fifty"]
    assert not os.path.exists(path)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_second_quota_error_is_terminal(services_manager, mock_speech_client):
    gate = services_manager.recognition_gate
    mock_speech_client.queue_result(RecognitionResult.quota_exceeded("429"))
    mock_speech_client.queue_result(RecognitionResult.quota_exceeded("429"))
    mock_speech_client.queue_result(RecognitionResult.recognized("never used"))
    path = make_recording(services_manager, "qq.wav")
    collector = Collector()

    await gate.submit(path, collector)
    await gate.wait_idle()

    assert len(mock_speech_client.calls) == 2
    assert collector.texts == []
    assert not os.path.exists(path)
    assert not gate.is_busy


@pytest.mark.unit
@pytest.mark.asyncio
async def test_no_match_and_error_outcomes_clean_up(services_manager, mock_speech_client):
    gate = services_manager.recognition_gate
    mock_speech_client.queue_result(RecognitionResult.no_match("NoMatch"))
    mock_speech_client.queue_result(RecognitionResult.error("HTTP 500"))
    collector = Collector()

    for name in ("nm.wav", "err.wav"):
        path = make_recording(services_manager, name)
        await gate.submit(path, collector)
        await gate.wait_idle()
        assert not os.path.exists(path)

    assert collector.texts == []
    assert len(mock_speech_client.calls) == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_client_exception_is_contained(services_manager, mock_speech_client):
    gate = services_manager.recognition_gate

    async def explode(audio_bytes):
        raise RuntimeError("socket closed")

    mock_speech_client.recognize_once = explode
    path = make_recording(services_manager, "boom.wav")

    assert await gate.submit(path, Collector())
    await gate.wait_idle()

    assert not os.path.exists(path)
    assert not gate.is_busy


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_file_is_not_sent(services_manager, mock_speech_client):
    gate = services_manager.recognition_gate
    path = os.path.join(services_manager.file_service_manager.get_storage_path(), "gone.wav")

    assert await gate.submit(path, Collector())
    await gate.wait_idle()

    assert mock_speech_client.calls == []
    assert not gate.is_busy


@pytest.mark.unit
@pytest.mark.asyncio
async def test_callback_failure_still_deletes_file(services_manager, mock_speech_client):
    gate = services_manager.recognition_gate
    mock_speech_client.queue_result(RecognitionResult.recognized("oof"))
    path = make_recording(services_manager, "cb.wav")

    async def broken(text):
        raise ValueError("reaction failed")

    await gate.submit(path, broken)
    await gate.wait_idle()

    assert not os.path.exists(path)
    assert not gate.is_busy
