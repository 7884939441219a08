"""
Unit tests for TranscoderProcess.

A small Python script stands in for FFmpeg so the process lifecycle can be
tested without FFmpeg installed; the real FFmpeg command is covered by the
integration tests.
"""

import asyncio
import os

import pytest

from soundbot.errors import ProcessError
from soundbot.services.ffmpeg_manager.manager import (
    FFmpegHandler,
    TranscoderConstants,
    TranscoderProcess,
)

# ============================================================================
# Command Building
# ============================================================================


@pytest.mark.unit
def test_pcm_to_wav_command_reads_stdin_and_writes_output():
    command = FFmpegHandler(None, "/opt/ffmpeg").build_pcm_to_wav_command("/tmp/out.wav")

    assert command[0] == "/opt/ffmpeg"
    assert command[-1] == "/tmp/out.wav"
    # raw input format options come before -i
    input_index = command.index("-i")
    assert command[input_index + 1] == "pipe:0"
    assert command[command.index("-f") + 1] == "s16le"
    assert command.index("-f") < input_index
    assert str(TranscoderConstants.OUTPUT_SAMPLE_RATE) in command[input_index:]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_validate_ffmpeg_not_found():
    handler = FFmpegHandler(None, "/nonexistent/path/to/ffmpeg")

    assert await handler.validate_ffmpeg() is False


# ============================================================================
# Process Lifecycle
# ============================================================================


@pytest.mark.unit
@pytest.mark.asyncio
async def test_written_bytes_reach_the_output(tmp_path, copy_transcoder_factory):
    output = str(tmp_path / "out.raw")
    transcoder = copy_transcoder_factory(output, "copy")

    await transcoder.start()
    await transcoder.write(b"\x01\x02" * 1000)
    await transcoder.write(b"\x03\x04" * 1000)
    outcome = await transcoder.terminate(grace=5.0)

    assert outcome.succeeded
    assert outcome.returncode == 0
    assert not outcome.killed
    assert transcoder.bytes_written == 4000
    with open(output, "rb") as f:
        assert f.read() == b"\x01\x02" * 1000 + b"\x03\x04" * 1000


@pytest.mark.unit
@pytest.mark.asyncio
async def test_write_waits_while_the_process_is_not_reading(tmp_path, gated_transcoder_factory):
    output = str(tmp_path / "out.raw")
    transcoder = gated_transcoder_factory(output, "gated")
    chunks = [bytes([i]) * 16384 for i in range(64)]

    async def feed():
        for chunk in chunks:
            await transcoder.write(chunk)

    await transcoder.start()
    writer = asyncio.create_task(feed())
    await asyncio.sleep(0.3)

    # stuck on drain(): the pipe and the stdin buffer are full
    assert not writer.done()
    assert transcoder.bytes_written < len(chunks) * 16384

    gated_transcoder_factory.release()
    await asyncio.wait_for(writer, timeout=10.0)
    outcome = await transcoder.terminate(grace=5.0)

    assert outcome.succeeded
    assert transcoder.bytes_written == len(chunks) * 16384
    with open(output, "rb") as f:
        assert f.read() == b"".join(chunks)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_process_ignoring_eof_is_killed_after_grace(tmp_path, hang_transcoder_factory):
    transcoder = hang_transcoder_factory(str(tmp_path / "x.wav"), "hang")
    await transcoder.start()

    loop = asyncio.get_running_loop()
    started = loop.time()
    outcome = await transcoder.terminate(grace=0.5)
    elapsed = loop.time() - started

    assert outcome.killed
    assert not outcome.succeeded
    assert elapsed < 0.5 + 2.0
    assert not transcoder.is_running


@pytest.mark.unit
@pytest.mark.asyncio
async def test_terminate_is_idempotent_and_concurrent_safe(tmp_path, hang_transcoder_factory):
    transcoder = hang_transcoder_factory(str(tmp_path / "x.wav"), "hang")
    await transcoder.start()

    first, second = await asyncio.gather(
        transcoder.terminate(grace=0.2), transcoder.terminate(grace=0.2)
    )
    third = await transcoder.terminate(grace=0.2)

    assert first is second is third


@pytest.mark.unit
@pytest.mark.asyncio
async def test_failed_process_reports_stderr_and_fires_callbacks(tmp_path, fail_transcoder_factory):
    transcoder = fail_transcoder_factory(str(tmp_path / "x.wav"), "fail")
    outcomes = []
    transcoder.add_exit_callback(outcomes.append)

    await transcoder.start()
    outcome = await transcoder.wait()

    assert outcome.returncode == 3
    assert outcome.error == "boom"
    assert outcomes == [outcome]

    # late registrations fire immediately
    late = []
    transcoder.add_exit_callback(late.append)
    assert late == [outcome]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_write_after_exit_raises_process_error(tmp_path, fail_transcoder_factory):
    transcoder = fail_transcoder_factory(str(tmp_path / "x.wav"), "fail")
    await transcoder.start()
    await transcoder.wait()

    with pytest.raises(ProcessError):
        await transcoder.write(b"\x00" * 16)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_spawn_failure_raises_process_error(tmp_path):
    transcoder = TranscoderProcess(["/nonexistent/transcoder"], str(tmp_path / "x.wav"))

    with pytest.raises(ProcessError):
        await transcoder.start()

    assert transcoder.outcome is not None
    assert not transcoder.outcome.succeeded
    # terminate after a failed spawn still resolves
    assert (await transcoder.terminate(grace=0.1)) is transcoder.outcome


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transcoder_cannot_be_restarted(tmp_path, copy_transcoder_factory):
    output = str(tmp_path / "out.raw")
    transcoder = copy_transcoder_factory(output, "copy")
    await transcoder.start()
    await transcoder.terminate(grace=5.0)

    with pytest.raises(ProcessError):
        await transcoder.start()
    assert os.path.exists(output)
