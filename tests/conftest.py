"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides
fixtures and configuration that can be used across all tests.
"""

import shutil
import sys
from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest

# Configure pytest-asyncio
pytest_plugins = ("pytest_asyncio",)


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (need ffmpeg)")
    config.addinivalue_line("markers", "slow: Slow running tests")


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Apply a timeout to all tests except those marked as slow."""
    for item in items:
        if "slow" not in item.keywords:
            item.add_marker(pytest.mark.timeout(30))


@pytest.fixture(scope="session")
def shared_test_log_file(tmp_path_factory) -> str:
    """
    Create a single shared log file for all tests in the session.

    Returns:
        str: Path to the shared log file
    """
    from datetime import datetime

    logs_dir = tmp_path_factory.mktemp("logs")
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return str(logs_dir / f"test_run_{timestamp}.log")


@pytest.fixture(scope="session")
def ffmpeg_path() -> str:
    """Path of a real ffmpeg binary; skips the test if none is installed."""
    path = shutil.which("ffmpeg")
    if path is None:
        pytest.skip("ffmpeg is not installed")
    return path


# ============================================================================
# Mock Discord Fixtures
# ============================================================================


@pytest.fixture
def mock_discord_bot() -> MagicMock:
    """Create a mock Discord bot instance."""
    bot = MagicMock()
    bot.user = MagicMock()
    bot.user.name = "TestBot"
    bot.user.id = 123456789
    bot.guilds = []
    return bot


@pytest.fixture
def mock_discord_context() -> MagicMock:
    """Create a mock Discord application context (py-cord)."""
    ctx = MagicMock()
    ctx.author = MagicMock()
    ctx.author.name = "TestUser"
    ctx.author.id = 987654321
    ctx.author.voice = None
    ctx.guild = MagicMock()
    ctx.guild.id = 111222333
    ctx.guild_id = 111222333
    ctx.guild.name = "Test Guild"
    ctx.channel = MagicMock()
    ctx.channel.send = AsyncMock()
    ctx.defer = AsyncMock()
    ctx.respond = AsyncMock()
    ctx.edit = AsyncMock()
    ctx.followup = MagicMock()
    ctx.followup.send = AsyncMock()
    return ctx


@pytest.fixture
def mock_voice_channel() -> MagicMock:
    """Create a mock Discord voice channel."""
    channel = MagicMock()
    channel.id = 444555666
    channel.name = "Test Voice Channel"
    channel.guild = MagicMock()
    channel.connect = AsyncMock()
    return channel


@pytest.fixture
def other_voice_channel() -> MagicMock:
    """A second voice channel in the same guild."""
    channel = MagicMock()
    channel.id = 777888999
    channel.name = "Other Voice Channel"
    channel.guild = MagicMock()
    channel.connect = AsyncMock()
    return channel


@pytest.fixture
def mock_text_channel() -> MagicMock:
    """Create a mock text channel that records sent messages."""
    channel = MagicMock()
    channel.id = 121212121
    channel.send = AsyncMock()
    return channel


@pytest.fixture
def mock_discord_user_in_voice(
    mock_discord_context: MagicMock,
    mock_voice_channel: MagicMock,
) -> MagicMock:
    """Create a mock Discord user in a voice channel."""
    mock_discord_context.author.voice = MagicMock()
    mock_discord_context.author.voice.channel = mock_voice_channel
    return mock_discord_context


# ============================================================================
# Transcoder Stand-ins
# ============================================================================

# Copies stdin to the file named in argv[1], like ffmpeg writing its output
COPY_STDIN_SCRIPT = (
    "import sys, shutil\n"
    "with open(sys.argv[1], 'wb') as out:\n"
    "    shutil.copyfileobj(sys.stdin.buffer, out)\n"
)

# Never reads stdin and never exits on its own
HANG_SCRIPT = "import time\nwhile True:\n    time.sleep(1)\n"

# Exits immediately with an error, without creating the output
FAIL_SCRIPT = "import sys\nsys.stderr.write('boom\\n')\nsys.exit(3)\n"


@pytest.fixture
def copy_transcoder_factory():
    """Transcoder factory whose process copies raw input into the output file."""
    from soundbot.services.ffmpeg_manager.manager import TranscoderProcess

    def factory(output_path: str, name: str) -> TranscoderProcess:
        return TranscoderProcess(
            [sys.executable, "-c", COPY_STDIN_SCRIPT, output_path], output_path, name=name
        )

    return factory


@pytest.fixture
def hang_transcoder_factory():
    """Transcoder factory whose process ignores its input and never exits."""
    from soundbot.services.ffmpeg_manager.manager import TranscoderProcess

    def factory(output_path: str, name: str) -> TranscoderProcess:
        return TranscoderProcess([sys.executable, "-c", HANG_SCRIPT], output_path, name=name)

    return factory


@pytest.fixture
def fail_transcoder_factory():
    """Transcoder factory whose process fails straight away."""
    from soundbot.services.ffmpeg_manager.manager import TranscoderProcess

    def factory(output_path: str, name: str) -> TranscoderProcess:
        return TranscoderProcess([sys.executable, "-c", FAIL_SCRIPT], output_path, name=name)

    return factory


# Reads nothing until the file named in argv[2] exists, then copies stdin to argv[1]
GATED_COPY_SCRIPT = (
    "import os, sys, time, shutil\n"
    "while not os.path.exists(sys.argv[2]):\n"
    "    time.sleep(0.01)\n"
    "with open(sys.argv[1], 'wb') as out:\n"
    "    shutil.copyfileobj(sys.stdin.buffer, out)\n"
)


@pytest.fixture
def gated_transcoder_factory(tmp_path):
    """
    Transcoder factory whose process stalls on its input until ``factory.release()``.

    The stdin high-water mark is small so writers feel backpressure quickly.
    """
    from soundbot.services.ffmpeg_manager.manager import TranscoderProcess

    release_path = tmp_path / "release"

    def factory(output_path: str, name: str) -> TranscoderProcess:
        return TranscoderProcess(
            [sys.executable, "-c", GATED_COPY_SCRIPT, output_path, str(release_path)],
            output_path,
            name=name,
            high_water=1024,
        )

    factory.release = release_path.touch
    return factory


# ============================================================================
# Testing Environment Fixtures
# ============================================================================


@pytest.fixture
def test_settings(tmp_path):
    """Settings pointing every path into the test's temp directory."""
    from soundbot.config import Settings

    clips = tmp_path / "audio_files"
    clips.mkdir()
    return Settings(
        speech_key="test-key",
        speech_region="testregion",
        ffmpeg_path=shutil.which("ffmpeg") or "ffmpeg",
        audio_files_path=str(clips),
        recording_storage_path=str(tmp_path / "recordings"),
        soundboard_config_path=str(tmp_path / "soundboard.json"),
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
async def test_context(test_settings):
    """
    Create a test context instance.

    Yields:
        Context: Test context instance
    """
    from soundbot.context import Context

    context = Context(test_settings)
    yield context


@pytest.fixture
def mock_speech_client():
    """Scripted speech client; queue results with `queue_result`."""
    from soundbot.server.testing.speech_server import MockSpeechClient

    return MockSpeechClient()


@pytest.fixture
async def test_server_manager(test_context, mock_speech_client):
    """
    Create and connect a test server manager backed by the mock speech client.

    Yields:
        ServerManager: Connected test server manager instance
    """
    from soundbot.constructor import ServerManagerType
    from soundbot.server.constructor import construct_server_manager

    server = construct_server_manager(
        ServerManagerType.TESTING, test_context, speech_client=mock_speech_client
    )
    test_context.set_server_manager(server)
    await server.connect_all()

    yield server

    await server.disconnect_all()


@pytest.fixture
def capture_options(copy_transcoder_factory) -> dict:
    """Fast capture timings for tests; override in a test module to change the transcoder."""
    return {
        "transcoder_factory": copy_transcoder_factory,
        "grace_period": 2.0,
        "handoff_delay": 0.0,
    }


@pytest.fixture
async def services_manager(test_server_manager, capture_options, shared_test_log_file):
    """
    Create and initialize a services manager in testing mode.

    Uses the in-memory voice transport, the scripted speech client and temp
    directories for recordings and logs.

    Yields:
        ServicesManager: Initialized services manager instance
    """
    from soundbot.constructor import ServerManagerType
    from soundbot.services.constructor import construct_services_manager

    context = test_server_manager.context
    services = construct_services_manager(
        ServerManagerType.TESTING,
        context=context,
        capture_options=capture_options,
        log_file=shared_test_log_file,
        use_timestamp_logs=False,
        console_output=False,
    )
    context.set_services_manager(services)
    services.recognition_gate.retry_delay = 0.01
    await services.initialize_all()

    yield services

    await services.logging_service.on_close()


@pytest.fixture
def fake_transport(services_manager):
    """The in-memory transport the voice sessions connect through."""
    return services_manager.voice_session_manager.transport


@pytest.fixture(autouse=True)
def cleanup_after_test() -> Generator[None, None, None]:
    """Automatically cleanup after each test."""
    yield
